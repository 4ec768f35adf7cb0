"""Stand-ins for the Ghidra side of the retyper: types, variable store, memory."""
from dataclasses import dataclass
from typing import Optional, Tuple

from EfiProtocolRetyper import TypeDatabase


@dataclass(frozen=True)
class DummyType:
    kind: str
    name: str = ""
    target: Optional["DummyType"] = None
    count: int = 0
    members: Tuple[Tuple[str, int], ...] = ()


INT = DummyType("int", "int")
CHAR = DummyType("char", "char")
STRING = DummyType("string", "string")
VOID = DummyType("void", "void")


def struct(name, members=()):
    return DummyType("struct", name, members=tuple(members))


def typedef(name, target):
    return DummyType("typedef", name, target=target)


def ptr(target):
    return DummyType("ptr", target=target)


def arr(target, count):
    return DummyType("array", target=target, count=count)


def _resolve(t):
    while t is not None and t.kind == "typedef":
        t = t.target
    return t


class DummyTypeDatabase(TypeDatabase):
    def __init__(self, *types):
        self.named = {t.name: t for t in types}

    def lookup(self, name):
        return self.named.get(name)

    def type_name(self, t):
        if t is None:
            return "void"
        if t.kind == "ptr":
            return self.type_name(t.target) + " *"
        if t.kind == "array":
            return f"{self.type_name(t.target)} [{t.count}]"
        return t.name

    def udt_members(self, t):
        base = _resolve(t)
        if base is None or base.kind != "struct":
            return None
        return list(base.members)

    def is_array(self, t):
        base = _resolve(t)
        return base is not None and base.kind == "array"

    def array_details(self, t):
        base = _resolve(t)
        if base is None or base.kind != "array":
            return None
        return base.target, base.count

    def is_pointer(self, t):
        base = _resolve(t)
        return base is not None and base.kind == "ptr"

    def pointee(self, t):
        base = _resolve(t)
        return base.target if base is not None and base.kind == "ptr" else None

    def pointer_to(self, t):
        return ptr(t)

    def array_of(self, t, count):
        return arr(t, count)

    def is_scalar_realtype(self, t):
        base = _resolve(t)
        return base is not None and base.kind in ("int", "char")

    def is_scalar_decl(self, t):
        return t is not None and t.kind in ("int", "char", "string", "void")


class DummyVariableStore:
    def __init__(self, reject=(), explode=()):
        self.reject = set(reject)
        self.explode = set(explode)
        self.calls = []
        self.globals = []

    def set_type(self, function_address, variable, data_type):
        if variable.name in self.explode:
            raise RuntimeError("store is read-only")
        if variable.name in self.reject:
            return False
        self.calls.append((function_address, variable.name, data_type))
        return True

    def set_global_type(self, address, data_type, name=None):
        self.globals.append((address, name, data_type))
        return True

    def type_of(self, name):
        for _, var_name, data_type in reversed(self.calls):
            if var_name == name:
                return data_type
        return None


class DummyMemory:
    def __init__(self, blobs=None):
        self.blobs = dict(blobs or {})

    def read_bytes(self, address, size):
        blob = self.blobs.get(address)
        if blob is None or len(blob) < size:
            return None
        return bytes(blob[:size])
