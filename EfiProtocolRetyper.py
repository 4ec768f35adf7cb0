# coding: utf-8
"""
EfiProtocolRetyper (PyGhidra / Python 3.x)

Applies UEFI protocol interface types to decompiled variables. The script
targets **Ghidra 11/12** through the **PyGhidra CPython bridge**; it is not a
Jython script and does not subclass ``GhidraScript``. Example invocation:

py -3.11 -m pyghidra ^
  --project-path "C:\\GhidraProjects\\Firmware" ^
  --project-name "DxeCore" ^
  "C:\\path\\to\\module.efi" ^
  "C:\\path\\to\\EfiProtocolRetyper.py" ^
  protocols=C:\\reports\\module.json debug=true

Arguments (key=value):
  protocols         : JSON report of protocol usage sites (efiXplorer format).
  guids             : optional GUID dictionary ({"NAME": [d1, d2, d3, b0..b7]}).
  debug             : verbose summaries (true/false/1/0/yes/no/on/off).
  trace             : per-step traces (true/false/1/0/yes/no/on/off).
  dry_run           : compute every retype decision without writing it.
  decompile_timeout : per-function decompiler timeout in seconds.

Every usage record names the address of a call that obtains a protocol
interface. The owning function is decompiled, its high p-code is lifted into
a small expression tree, and two retypers walk that tree: one for
EFI_BOOT_SERVICES (HandleProtocol/LocateProtocol/OpenProtocol) and one for
_EFI_SMM_SYSTEM_TABLE2 (SmmHandleProtocol/SmmLocateProtocol). When a matched
call passes a literal GUID whose protocol is known, the variable receiving
the interface pointer is retyped to ``<PROTOCOL> *``.

Results are printed to stdout as NDJSON; diagnostics go to stderr.
"""
from __future__ import annotations

import enum
import json
import os
import struct
import sys
import traceback
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

try:  # pragma: no cover - executed inside Ghidra
    from ghidra.app.decompiler import DecompInterface
    from ghidra.program.flatapi import FlatProgramAPI
    from ghidra.program.model.data import (
        AbstractFloatDataType,
        AbstractIntegerDataType,
        Array,
        ArrayDataType,
        BooleanDataType,
        BuiltInDataType,
        Composite,
        DataUtilities,
        Pointer,
        PointerDataType,
        TypeDef,
        Undefined,
    )
    from ghidra.program.model.pcode import HighFunctionDBUtil, PcodeOp
    from ghidra.program.model.symbol import SourceType
    from ghidra.util.task import TaskMonitor
except Exception:  # pragma: no cover
    DecompInterface = None
    FlatProgramAPI = None
    AbstractFloatDataType = None
    AbstractIntegerDataType = None
    Array = None
    ArrayDataType = None
    BooleanDataType = None
    BuiltInDataType = None
    Composite = None
    DataUtilities = None
    Pointer = None
    PointerDataType = None
    TypeDef = None
    Undefined = None
    HighFunctionDBUtil = None
    PcodeOp = None
    SourceType = None
    TaskMonitor = None

try:  # pragma: no cover - ensure currentProgram exists in PyGhidra
    currentProgram  # type: ignore[name-defined]
except NameError:  # pragma: no cover
    currentProgram = None

# ---------------------------------------------------------------------------
# Argument parsing and logging
# ---------------------------------------------------------------------------

DEFAULT_DECOMPILE_TIMEOUT = 60


def _parse_bool(val: Optional[str]) -> bool:
    if val is None:
        return False
    val = str(val).strip().lower()
    return val in {"1", "true", "yes", "on"}


def _parse_int(parsed: Dict[str, Any], key: str, default: int) -> int:
    raw = parsed.get(key)
    if raw is None:
        return default
    try:
        return int(str(raw), 0)
    except ValueError:
        print(f"[warn] {key} is not an integer; using default {default}", file=sys.stderr)
        return default


def _get_script_args() -> List[str]:
    try:
        getter = globals().get("getScriptArgs")
        if getter:
            return list(getter() or [])
    except Exception:
        return []
    return []


def parse_args(raw_args: List[str], context_hint: str) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for arg in raw_args:
        if "=" not in arg:
            continue
        k, v = arg.split("=", 1)
        parsed[k.strip().lower()] = v.strip()
    if context_hint == "headless" and not parsed.get("protocols"):
        print("[error] protocols=<path to usage report JSON> is required", file=sys.stderr)
        sys.exit(1)
    parsed["debug"] = _parse_bool(parsed.get("debug", "false"))
    parsed["trace"] = _parse_bool(parsed.get("trace", "false"))
    parsed["dry_run"] = _parse_bool(parsed.get("dry_run", "false"))
    parsed["decompile_timeout"] = max(1, _parse_int(parsed, "decompile_timeout", DEFAULT_DECOMPILE_TIMEOUT))
    return parsed


def _ensure_environment(context_hint: str) -> bool:
    if FlatProgramAPI is None or DecompInterface is None or HighFunctionDBUtil is None:
        print(
            "EfiProtocolRetyper must be run inside Ghidra with the PyGhidra CPython bridge (decompiler APIs required).",
            file=sys.stderr,
        )
        if context_hint == "headless":
            sys.exit(1)
        return False
    if currentProgram is None:
        print("[error] currentProgram is not available; open a program before running the script.", file=sys.stderr)
        if context_hint == "headless":
            sys.exit(1)
        return False
    return True


try:
    _SYS_RAW_ARGS = list(sys.argv[1:])
except Exception:
    _SYS_RAW_ARGS = []


def _filter_kv_args(arg_list: List[str]) -> List[str]:
    return [a for a in arg_list if isinstance(a, str) and "=" in a]


def _has_protocols(arg_list: List[str]) -> bool:
    return any(a.strip().lower().startswith("protocols=") for a in arg_list)


script_manager_args = _filter_kv_args(_get_script_args())
cli_args = _filter_kv_args(_SYS_RAW_ARGS)

if script_manager_args:
    INVOCATION_CONTEXT = "script_manager"
    args = parse_args(script_manager_args, INVOCATION_CONTEXT)
elif __name__ == "__main__" or _has_protocols(cli_args):
    INVOCATION_CONTEXT = "headless"
    args = parse_args(cli_args, INVOCATION_CONTEXT)
else:
    INVOCATION_CONTEXT = "script_manager"
    args = parse_args([], INVOCATION_CONTEXT)
DEBUG_ENABLED = args.get("debug", False)
TRACE_ENABLED = args.get("trace", False)


def _resolve_active_monitor():
    if TaskMonitor is not None:
        for accessor in ("getActiveMonitor", "current"):
            try:
                getter = getattr(TaskMonitor, accessor, None)
                if getter:
                    current = getter()
                    if current is not None:
                        return current
            except Exception:
                continue
        return getattr(TaskMonitor, "DUMMY", None)
    cand = globals().get("monitor")
    if cand is not None and hasattr(cand, "isCancelled"):
        return cand
    return None


ACTIVE_MONITOR = _resolve_active_monitor()


def log_info(msg: str) -> None:
    print(msg, file=sys.stderr)


def log_debug(msg: str) -> None:
    if DEBUG_ENABLED:
        print(msg, file=sys.stderr)


def log_trace(msg: str) -> None:
    if TRACE_ENABLED:
        print(msg, file=sys.stderr)


def _hex(value: Optional[int]) -> str:
    return "?" if value is None else hex(value)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RetyperError(Exception):
    """Base class for failures that are reported and skipped, never fatal."""


class LayoutError(RetyperError):
    """The member layout of a type could not be retrieved."""


class FieldNotFound(RetyperError):
    """A structure has no member with the requested name."""


class UnresolvedGuid(RetyperError):
    """The GUID argument is not a compile-time constant reference."""


class UnknownProtocol(RetyperError):
    """No protocol (or no interface type) is known for a GUID at a call site."""


class UnsupportedDestinationShape(RetyperError):
    """The interface argument is not one of the recognized destination shapes."""


class RetypeError(RetyperError):
    """The variable store rejected a type change."""


class DecompilationFailed(RetyperError):
    pass


class FunctionNotFound(RetyperError):
    pass


# ---------------------------------------------------------------------------
# Service table catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallDescriptor:
    """A function pointer inside a firmware service table.

    ``table_offset`` is the byte offset of the pointer inside the table
    structure. ``array_pointer_depth`` is how many pointer layers the
    destination may carry when the decompiler turned it into a stack array.
    """

    name: str
    table_offset: int
    arg_count: int
    guid_arg_index: int
    interface_arg_index: int
    array_pointer_depth: int = 1

    def __post_init__(self) -> None:
        if not 0 <= self.guid_arg_index < self.arg_count:
            raise ValueError(f"{self.name}: GUID argument {self.guid_arg_index} outside {self.arg_count} arguments")
        if not 0 <= self.interface_arg_index < self.arg_count:
            raise ValueError(
                f"{self.name}: interface argument {self.interface_arg_index} outside {self.arg_count} arguments"
            )
        if self.array_pointer_depth < 0:
            raise ValueError(f"{self.name}: negative array pointer depth")


@dataclass(frozen=True)
class ServiceTable:
    name: str
    entries: Tuple[CallDescriptor, ...] = ()

    @classmethod
    def initialize(
        cls, name: str, descriptors: Iterable[CallDescriptor], layout: Optional["TypeLayoutResolver"] = None
    ) -> "ServiceTable":
        """Build a table; with a layout, offsets follow the table structure in the type database."""
        entries = tuple(descriptors)
        if layout is not None:
            table_type = layout.type_db.lookup(name)
            if table_type is not None:
                entries = tuple(_relocate_descriptor(d, table_type, layout) for d in entries)
            else:
                log_debug(f"[debug] {name} is not in the type database; keeping static offsets")
        return cls(name, entries)

    def by_offset(self, offset: int) -> Optional[CallDescriptor]:
        for entry in self.entries:
            if entry.table_offset == offset:
                return entry
        return None


def _relocate_descriptor(descriptor: CallDescriptor, table_type: Any, layout: "TypeLayoutResolver") -> CallDescriptor:
    try:
        offset = layout.offset_of_field(table_type, descriptor.name)
    except (LayoutError, FieldNotFound):
        return descriptor
    if offset != descriptor.table_offset:
        log_debug(f"[debug] {descriptor.name}: table offset {descriptor.table_offset:#x} -> {offset:#x} from layout")
        return replace(descriptor, table_offset=offset)
    return descriptor


class ServiceTableRegistry:
    """Read-only name -> ServiceTable mapping; ``register`` returns a new registry."""

    def __init__(self, tables: Iterable[ServiceTable] = ()):
        self._tables = MappingProxyType({t.name: t for t in tables})

    def register(self, table: ServiceTable) -> "ServiceTableRegistry":
        return ServiceTableRegistry(list(self._tables.values()) + [table])

    def get(self, name: str) -> Optional[ServiceTable]:
        return self._tables.get(name)

    def names(self) -> List[str]:
        return list(self._tables)

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def __iter__(self) -> Iterator[ServiceTable]:
        return iter(self._tables.values())

    def __len__(self) -> int:
        return len(self._tables)


BOOT_SERVICES_TABLE = "EFI_BOOT_SERVICES"
SMM_SERVICES_TABLE = "_EFI_SMM_SYSTEM_TABLE2"

# x64 offsets; 32-bit images get theirs from the type database when present.
BOOT_SERVICES_CALLS = (
    CallDescriptor("HandleProtocol", 0x98, 3, 1, 2),
    CallDescriptor("LocateProtocol", 0x140, 3, 0, 2),
    CallDescriptor("OpenProtocol", 0x118, 6, 1, 2, array_pointer_depth=2),
)

SMM_SERVICES_CALLS = (
    CallDescriptor("SmmHandleProtocol", 0xB8, 3, 1, 2),
    CallDescriptor("SmmLocateProtocol", 0xD0, 3, 0, 2),
)


def build_service_registries(
    layout: Optional["TypeLayoutResolver"] = None,
) -> Tuple[ServiceTableRegistry, ServiceTableRegistry]:
    boot = ServiceTable.initialize(BOOT_SERVICES_TABLE, BOOT_SERVICES_CALLS, layout)
    smm = ServiceTable.initialize(SMM_SERVICES_TABLE, SMM_SERVICES_CALLS, layout)
    return ServiceTableRegistry().register(boot), ServiceTableRegistry().register(smm)


# ---------------------------------------------------------------------------
# Protocol GUIDs and usage records
# ---------------------------------------------------------------------------

GUID_SIZE = 16


def guid_from_bytes(raw: bytes) -> uuid.UUID:
    # EFI_GUID: little-endian Data1..Data3, Data4 as bytes
    return uuid.UUID(bytes_le=bytes(raw))


def parse_guid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        return uuid.UUID(value.strip().strip("{}"))
    if isinstance(value, (bytes, bytearray)):
        if len(value) != GUID_SIZE:
            raise ValueError(f"GUID literal must be {GUID_SIZE} bytes, got {len(value)}")
        return guid_from_bytes(value)
    if isinstance(value, (list, tuple)):
        if len(value) == 11:
            try:
                return guid_from_bytes(struct.pack("<IHH8B", *value))
            except struct.error as exc:
                raise ValueError(f"bad GUID components {value!r}: {exc}") from exc
        if len(value) == GUID_SIZE:
            return guid_from_bytes(bytes(value))
    raise ValueError(f"unrecognized GUID value {value!r}")


def interface_type_for(protocol_name: str) -> str:
    if protocol_name.endswith("_GUID"):
        return protocol_name[: -len("_GUID")]
    return protocol_name


def _parse_address(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"bad address {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        # report addresses are hex, with or without 0x
        return int(value.strip(), 16)
    raise ValueError(f"bad address {value!r}")


@dataclass(frozen=True)
class ProtocolUsageRecord:
    code_address: int
    function_address: Optional[int] = None
    service: Optional[str] = None
    guid: Optional[uuid.UUID] = None
    protocol_name: Optional[str] = None
    interface_type: Optional[str] = None

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "ProtocolUsageRecord":
        address = raw.get("ea", raw.get("address"))
        if address is None:
            raise KeyError("record has neither 'ea' nor 'address'")
        func = raw.get("func_ea", raw.get("function"))
        guid = raw.get("guid")
        return cls(
            code_address=_parse_address(address),
            function_address=_parse_address(func) if func is not None else None,
            service=raw.get("service"),
            guid=parse_guid(guid) if guid is not None else None,
            protocol_name=raw.get("prot_name") or raw.get("name"),
            interface_type=raw.get("interface_type"),
        )


@dataclass(frozen=True)
class ProtocolRegistryEntry:
    guid: uuid.UUID
    protocol_name: str
    interface_type_name: str


class ProtocolRegistry:
    """Maps (GUID, call site) to a protocol and its interface type name.

    Only usage records at the call site's own address are considered, so a
    function calling the same service twice with different GUIDs resolves
    each call separately. Names missing from the records come from the
    optional GUID dictionary.
    """

    def __init__(
        self, records: Iterable[ProtocolUsageRecord], guid_names: Optional[Dict[uuid.UUID, str]] = None
    ):
        self.guid_names = dict(guid_names or {})
        self._by_address: Dict[int, List[ProtocolUsageRecord]] = defaultdict(list)
        for record in records:
            self._by_address[record.code_address].append(record)

    def records_at(self, address: Optional[int]) -> List[ProtocolUsageRecord]:
        if address is None:
            return []
        return list(self._by_address.get(address, ()))

    def resolve(self, guid: uuid.UUID, address: Optional[int]) -> ProtocolRegistryEntry:
        candidates = self.records_at(address)
        if not candidates:
            raise UnknownProtocol(f"{_hex(address)}: no protocol usage recorded at this address")
        for record in candidates:
            if record.guid is None:
                # without a recorded GUID the dictionary must vouch for the literal
                name = self.guid_names.get(guid)
                if not name or (record.protocol_name and record.protocol_name != name):
                    continue
            elif record.guid != guid:
                continue
            else:
                name = record.protocol_name or self.guid_names.get(guid)
            if not name:
                continue
            return ProtocolRegistryEntry(guid, name, record.interface_type or interface_type_for(name))
        raise UnknownProtocol(f"{_hex(address)}: GUID {guid} is not a known protocol here")


def load_protocol_records(path: str) -> List[ProtocolUsageRecord]:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("protocols", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of protocol records")
    records: List[ProtocolUsageRecord] = []
    for idx, raw in enumerate(data):
        try:
            records.append(ProtocolUsageRecord.from_json(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            log_info(f"[warn] skipping protocol record #{idx} in {path}: {exc}")
    return records


def load_guid_dictionary(path: str) -> Dict[uuid.UUID, str]:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected an object of NAME -> GUID")
    names: Dict[uuid.UUID, str] = {}
    for name, value in data.items():
        try:
            names[parse_guid(value)] = name
        except ValueError as exc:
            log_debug(f"[debug] ignoring GUID {name}: {exc}")
    return names


# ---------------------------------------------------------------------------
# Decompiled expression tree
# ---------------------------------------------------------------------------


def _type_label(data_type: Any) -> str:
    if data_type is None:
        return "?"
    for accessor in ("getDisplayName", "getName"):
        getter = getattr(data_type, accessor, None)
        if callable(getter):
            try:
                return str(getter())
            except Exception:
                break
    return str(getattr(data_type, "name", None) or data_type)


class Expr:
    type: Any = None

    def children(self) -> Sequence["Expr"]:
        return ()

    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(eq=False)
class LocalVar:
    name: str
    type: Any = None
    storage: Any = field(default=None, repr=False)


@dataclass(eq=False)
class VarExpr(Expr):
    var: LocalVar

    @property
    def type(self) -> Any:
        return self.var.type

    def render(self) -> str:
        return self.var.name


@dataclass(eq=False)
class ObjExpr(Expr):
    address: int
    name: Optional[str] = None
    type: Any = None

    def render(self) -> str:
        return self.name or f"obj_{self.address:x}"


@dataclass(eq=False)
class NumExpr(Expr):
    value: int
    type: Any = None

    def render(self) -> str:
        return hex(self.value)


@dataclass(eq=False)
class RefExpr(Expr):
    inner: Expr
    type: Any = None

    def children(self) -> Sequence[Expr]:
        return (self.inner,)

    def render(self) -> str:
        return "&" + self.inner.render()


@dataclass(eq=False)
class CastExpr(Expr):
    inner: Expr
    type: Any = None

    def children(self) -> Sequence[Expr]:
        return (self.inner,)

    def render(self) -> str:
        return f"({_type_label(self.type)}){self.inner.render()}"


@dataclass(eq=False)
class MemPtrExpr(Expr):
    """Value loaded from ``base + offset``; ``gBS->field_98`` in decompiler terms."""

    base: Expr
    offset: int
    type: Any = None

    def children(self) -> Sequence[Expr]:
        return (self.base,)

    def render(self) -> str:
        return f"{self.base.render()}->field_{self.offset:x}"


@dataclass(eq=False)
class CallExpr(Expr):
    target: Expr
    args: List[Expr] = field(default_factory=list)
    ea: Optional[int] = None
    type: Any = None

    def children(self) -> Sequence[Expr]:
        return [self.target] + list(self.args)

    def render(self) -> str:
        return f"{self.target.render()}({', '.join(a.render() for a in self.args)})"


@dataclass(eq=False)
class OpaqueExpr(Expr):
    text: str
    operands: List[Expr] = field(default_factory=list)
    type: Any = None

    def children(self) -> Sequence[Expr]:
        return self.operands

    def render(self) -> str:
        if not self.operands:
            return self.text
        return f"{self.text}({', '.join(o.render() for o in self.operands)})"


@dataclass(eq=False)
class BlockStmt(Expr):
    items: List[Expr] = field(default_factory=list)

    def children(self) -> Sequence[Expr]:
        return self.items

    def render(self) -> str:
        return "; ".join(i.render() for i in self.items)


def walk(root: Optional[Expr]) -> Iterator[Expr]:
    """Depth-first, pre-order, left to right; every node is yielded once."""
    stack: List[Expr] = [root] if root is not None else []
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed([c for c in node.children() if c is not None]))


def strip_casts(expr: Expr) -> Expr:
    while isinstance(expr, CastExpr):
        expr = expr.inner
    return expr


# ---------------------------------------------------------------------------
# Type database, layout and classification
# ---------------------------------------------------------------------------


class TypeDatabase:
    """Host type system seen by the retyper.

    Types are opaque handles. ``udt_members`` reports member offsets in bits
    and returns None when the type has no member layout. The two scalar
    predicates are independent classifications: ``is_scalar_realtype``
    resolves typedefs first, ``is_scalar_decl`` looks at the declared type
    only.
    """

    def lookup(self, name: str) -> Any:
        raise NotImplementedError

    def type_name(self, data_type: Any) -> str:
        raise NotImplementedError

    def udt_members(self, data_type: Any) -> Optional[List[Tuple[str, int]]]:
        raise NotImplementedError

    def is_array(self, data_type: Any) -> bool:
        raise NotImplementedError

    def array_details(self, data_type: Any) -> Optional[Tuple[Any, int]]:
        raise NotImplementedError

    def is_pointer(self, data_type: Any) -> bool:
        raise NotImplementedError

    def pointee(self, data_type: Any) -> Any:
        raise NotImplementedError

    def pointer_to(self, data_type: Any) -> Any:
        raise NotImplementedError

    def array_of(self, data_type: Any, count: int) -> Any:
        raise NotImplementedError

    def is_scalar_realtype(self, data_type: Any) -> bool:
        raise NotImplementedError

    def is_scalar_decl(self, data_type: Any) -> bool:
        raise NotImplementedError


class TypeLayoutResolver:
    def __init__(self, type_db: TypeDatabase):
        self.type_db = type_db

    def offset_of_field(self, data_type: Any, field_name: str) -> int:
        """Byte offset of ``field_name`` inside ``data_type``."""
        type_name = self.type_db.type_name(data_type)
        members = self.type_db.udt_members(data_type)
        if members is None:
            log_debug(f"[debug] could not retrieve member layout for {type_name}")
            raise LayoutError(f"no member layout for {type_name}")
        for name, bit_offset in members:
            if name == field_name:
                return bit_offset >> 3
        log_debug(f"[debug] could not find member {type_name}::{field_name}")
        raise FieldNotFound(f"{type_name}::{field_name}")


class ScalarVerdict(enum.Flag):
    """Which classification considers a type primitive-like.

    The resolved-type and declared-type classifications disagree on some
    synthesized types (typedef'd integers, built-in strings), so either one
    passing is enough.
    """

    NONE = 0
    REAL_TYPE = enum.auto()
    DECL_LAST = enum.auto()

    @classmethod
    def any_of(cls, *verdicts: "ScalarVerdict") -> "ScalarVerdict":
        combined = cls.NONE
        for verdict in verdicts:
            combined |= verdict
        return combined


class PodArrayClassifier:
    def __init__(self, type_db: TypeDatabase):
        self.type_db = type_db

    def classify_scalar(self, data_type: Any) -> ScalarVerdict:
        if data_type is None:
            return ScalarVerdict.NONE
        return ScalarVerdict.any_of(
            ScalarVerdict.REAL_TYPE if self.type_db.is_scalar_realtype(data_type) else ScalarVerdict.NONE,
            ScalarVerdict.DECL_LAST if self.type_db.is_scalar_decl(data_type) else ScalarVerdict.NONE,
        )

    def is_pod_array(self, data_type: Any, max_pointer_depth: int = 0) -> bool:
        """True for arrays of scalars, or of pointers to scalars up to ``max_pointer_depth`` layers.

        At depth 1 ``int *[10]`` qualifies, at depth 2 ``int **[10]`` does too.
        """
        if data_type is None or not self.type_db.is_array(data_type):
            return False
        details = self.type_db.array_details(data_type)
        if details is None:
            log_info(f"[warn] {self.type_db.type_name(data_type)}: array without array details")
            return False
        element = details[0]
        remaining = max_pointer_depth + 1
        while remaining > 0:
            verdict = self.classify_scalar(element)
            log_trace(f"[trace] is_pod_array[{remaining}]: element={self._name(element)} verdict={verdict}")
            if verdict:
                return True
            remaining -= 1
            if remaining > 0:
                if element is not None and self.type_db.is_pointer(element):
                    element = self.type_db.pointee(element)
                else:
                    return False
        return False

    def pointer_layers(self, data_type: Any, limit: int) -> int:
        layers = 0
        while layers < limit and data_type is not None and self.type_db.is_pointer(data_type):
            data_type = self.type_db.pointee(data_type)
            layers += 1
        return layers

    def _name(self, data_type: Any) -> str:
        return "void" if data_type is None else self.type_db.type_name(data_type)


# ---------------------------------------------------------------------------
# Variable typing
# ---------------------------------------------------------------------------


class VariableTyper:
    """Every type change goes through here."""

    def __init__(self, store: Any):
        self.store = store

    def set_variable_type(self, function_address: Optional[int], variable: LocalVar, data_type: Any) -> None:
        try:
            ok = self.store.set_type(function_address, variable, data_type)
        except Exception as exc:
            raise RetypeError(
                f"{_hex(function_address)}: could not modify type of {variable.name}: {exc}"
            ) from exc
        if not ok:
            raise RetypeError(f"{_hex(function_address)}: could not modify type of {variable.name}")

    def set_global_type(self, address: int, data_type: Any, name: Optional[str] = None) -> None:
        label = name or _hex(address)
        try:
            ok = self.store.set_global_type(address, data_type, name)
        except Exception as exc:
            raise RetypeError(f"{_hex(address)}: could not apply type to global {label}: {exc}") from exc
        if not ok:
            raise RetypeError(f"{_hex(address)}: could not apply type to global {label}")


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@dataclass
class RetypeReport:
    applied: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def bump(self, key: str, amount: int = 1) -> None:
        self.stats[key] += amount

    def record_applied(self, entry: Dict[str, Any]) -> None:
        self.applied.append(dict(entry, type="retype"))
        self.bump("retyped")

    def record_failure(
        self, address: Optional[int], function: Optional[int], service: Optional[str], exc: Exception
    ) -> None:
        self.failures.append(
            {
                "type": "retype_failure",
                "address": _hex(address),
                "function": _hex(function),
                "service": service,
                "error": type(exc).__name__,
                "detail": str(exc),
            }
        )
        self.bump(type(exc).__name__)

    def summary(self) -> Dict[str, Any]:
        return {
            "type": "retype_summary",
            "retyped": len(self.applied),
            "failures": len(self.failures),
            "stats": dict(sorted(self.stats.items())),
        }


def emit_ndjson(report: RetypeReport) -> None:
    for rec in report.applied:
        print(json.dumps(rec))
    for rec in report.failures:
        print(json.dumps(rec))
    print(json.dumps(report.summary()))


# ---------------------------------------------------------------------------
# GUID retyper
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlainPointerSlot:
    var: LocalVar
    kind = "plain_pointer"


@dataclass(frozen=True)
class StackArraySlot:
    var: LocalVar
    element_count: int
    pointer_depth: int = 1
    kind = "stack_array"


@dataclass(frozen=True)
class PointerToPointerSlot:
    var: LocalVar
    kind = "pointer_to_pointer"


@dataclass(frozen=True)
class GlobalSlot:
    address: int
    name: Optional[str] = None
    kind = "global"


@dataclass(frozen=True)
class UnsupportedShape:
    text: str
    kind = "unsupported"


class GuidRetyper:
    """Retypes interface destinations of service calls in one function body.

    One instance serves one service table registry. The protocol registry and
    the current code/function addresses are set before each traversal.
    """

    def __init__(
        self,
        services: ServiceTableRegistry,
        type_db: TypeDatabase,
        typer: VariableTyper,
        read_bytes: Callable[[int, int], Optional[bytes]],
        report: Optional[RetypeReport] = None,
    ):
        self.services = services
        self.type_db = type_db
        self.typer = typer
        self.read_bytes = read_bytes
        self.report = report if report is not None else RetypeReport()
        self.classifier = PodArrayClassifier(type_db)
        self.protocols = ProtocolRegistry(())
        self.code_ea: Optional[int] = None
        self.func_ea: Optional[int] = None

    def set_protocols(self, protocols: Any) -> None:
        if not isinstance(protocols, ProtocolRegistry):
            protocols = ProtocolRegistry(protocols)
        self.protocols = protocols

    def set_code_ea(self, ea: Optional[int]) -> None:
        self.code_ea = ea

    def set_func_ea(self, ea: Optional[int]) -> None:
        self.func_ea = ea

    def apply(self, tree: Expr) -> None:
        for node in walk(tree):
            if not isinstance(node, CallExpr):
                continue
            try:
                self.visit_call(node)
            except Exception as exc:
                site = node.ea if node.ea is not None else self.code_ea
                self.report.record_failure(site, self.func_ea, None, exc)
                self.report.bump("unexpected_error")
                log_info(f"[warn] {_hex(site)}: unexpected error while retyping call: {exc!r}")
                if DEBUG_ENABLED:
                    traceback.print_exc(file=sys.stderr)

    def visit_call(self, call: CallExpr) -> bool:
        match = self.match_call(call)
        if match is None:
            return False
        table, descriptor = match
        site = call.ea if call.ea is not None else self.code_ea
        if len(call.args) != descriptor.arg_count:
            log_debug(
                f"[debug] {_hex(site)}: {table.name}.{descriptor.name} called with {len(call.args)} arguments,"
                f" expected {descriptor.arg_count}"
            )
            self.report.bump("arg_count_mismatch")
            return False
        log_trace(f"[trace] {_hex(site)}: {descriptor.name} call {call.render()}")
        try:
            guid = self.extract_guid(call.args[descriptor.guid_arg_index])
            entry = self.protocols.resolve(guid, site)
            interface_type = self.type_db.lookup(entry.interface_type_name)
            if interface_type is None:
                raise UnknownProtocol(f"{entry.protocol_name}: interface type {entry.interface_type_name} not found")
            shape = self.classify_destination(call.args[descriptor.interface_arg_index], descriptor)
            target, new_type = self.retype_destination(shape, interface_type)
        except RetypeError as exc:
            self.report.record_failure(site, self.func_ea, descriptor.name, exc)
            log_info(f"[warn] {exc}")
            return False
        except RetyperError as exc:
            self.report.record_failure(site, self.func_ea, descriptor.name, exc)
            log_debug(f"[debug] {_hex(site)}: {descriptor.name} skipped ({type(exc).__name__}): {exc}")
            return False
        type_name = self.type_db.type_name(new_type)
        self.report.record_applied(
            {
                "address": _hex(site),
                "function": _hex(self.func_ea),
                "table": table.name,
                "service": descriptor.name,
                "protocol": entry.protocol_name,
                "guid": str(guid),
                "interface_type": entry.interface_type_name,
                "shape": shape.kind,
                "target": target,
                "new_type": type_name,
            }
        )
        log_info(f"[info] {_hex(site)}: {descriptor.name}({entry.protocol_name}) -> {target} : {type_name}")
        return True

    def match_call(self, call: CallExpr) -> Optional[Tuple[ServiceTable, CallDescriptor]]:
        target = strip_casts(call.target)
        if not isinstance(target, MemPtrExpr):
            return None
        base_type = target.base.type
        if base_type is None or not self.type_db.is_pointer(base_type):
            return None
        struct_name = self._pointee_struct_name(base_type)
        for table in self.services:
            if struct_name is not None and struct_name != table.name.lstrip("_"):
                continue
            descriptor = table.by_offset(target.offset)
            if descriptor is not None:
                return table, descriptor
        return None

    def _pointee_struct_name(self, pointer_type: Any) -> Optional[str]:
        pointee = self.type_db.pointee(pointer_type)
        if pointee is None or self.type_db.udt_members(pointee) is None:
            return None
        return self.type_db.type_name(pointee).lstrip("_")

    def extract_guid(self, expr: Expr) -> uuid.UUID:
        stripped = strip_casts(expr)
        referent = strip_casts(stripped.inner) if isinstance(stripped, RefExpr) else None
        if not isinstance(referent, ObjExpr):
            raise UnresolvedGuid(f"GUID argument is not a constant reference: {expr.render()}")
        raw = self.read_bytes(referent.address, GUID_SIZE)
        if raw is None or len(raw) != GUID_SIZE:
            raise UnresolvedGuid(f"could not read a GUID at {referent.address:#x}")
        return guid_from_bytes(raw)

    def classify_destination(self, expr: Expr, descriptor: CallDescriptor) -> Any:
        stripped = strip_casts(expr)
        if isinstance(stripped, RefExpr):
            referent = strip_casts(stripped.inner)
            if isinstance(referent, VarExpr):
                var = referent.var
                if self.classifier.is_pod_array(var.type, descriptor.array_pointer_depth):
                    element, count = self.type_db.array_details(var.type)
                    depth = max(1, self.classifier.pointer_layers(element, descriptor.array_pointer_depth))
                    return StackArraySlot(var, count, depth)
                if var.type is not None and self.type_db.is_array(var.type):
                    return UnsupportedShape(f"{expr.render()} (array of non-scalar elements)")
                return PlainPointerSlot(var)
            if isinstance(referent, ObjExpr):
                return GlobalSlot(referent.address, referent.name)
        elif isinstance(stripped, VarExpr) and self._is_pointer_to_pointer(stripped.var.type):
            return PointerToPointerSlot(stripped.var)
        return UnsupportedShape(expr.render())

    def _is_pointer_to_pointer(self, data_type: Any) -> bool:
        return self.classifier.pointer_layers(data_type, 2) == 2

    def retype_destination(self, shape: Any, interface_type: Any) -> Tuple[str, Any]:
        pointer = self.type_db.pointer_to(interface_type)
        if isinstance(shape, PlainPointerSlot):
            self.typer.set_variable_type(self.func_ea, shape.var, pointer)
            return shape.var.name, pointer
        if isinstance(shape, StackArraySlot):
            element = interface_type
            for _ in range(shape.pointer_depth):
                element = self.type_db.pointer_to(element)
            new_type = self.type_db.array_of(element, shape.element_count)
            self.typer.set_variable_type(self.func_ea, shape.var, new_type)
            return shape.var.name, new_type
        if isinstance(shape, PointerToPointerSlot):
            new_type = self.type_db.pointer_to(pointer)
            self.typer.set_variable_type(self.func_ea, shape.var, new_type)
            return shape.var.name, new_type
        if isinstance(shape, GlobalSlot):
            self.typer.set_global_type(shape.address, pointer, shape.name)
            return shape.name or _hex(shape.address), pointer
        if isinstance(shape, UnsupportedShape):
            raise UnsupportedDestinationShape(f"unrecognized interface destination {shape.text}")
        raise UnsupportedDestinationShape(f"unhandled destination shape {shape!r}")


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class RetypeDriver:
    """Runs every retyper over the function owning each usage record.

    ``host`` provides ``function_containing(address)`` and
    ``decompile(function_address)``; both raise RetyperError subclasses when
    a record cannot be processed.
    """

    def __init__(self, host: Any, retypers: Sequence[GuidRetyper], report: Optional[RetypeReport] = None, monitor=None):
        self.host = host
        self.retypers = list(retypers)
        self.report = report if report is not None else RetypeReport()
        self.monitor = monitor

    def _cancelled(self) -> bool:
        try:
            return bool(self.monitor is not None and self.monitor.isCancelled())
        except Exception:
            return False

    def retype_all(
        self, records: Iterable[ProtocolUsageRecord], guid_names: Optional[Dict[uuid.UUID, str]] = None
    ) -> RetypeReport:
        records = list(records)
        registry = ProtocolRegistry(records, guid_names)
        for retyper in self.retypers:
            retyper.set_protocols(registry)
        visited: set = set()
        for record in records:
            if self._cancelled():
                log_info("[info] retyping cancelled by user")
                self.report.bump("cancelled")
                break
            try:
                self._retype_record(record, visited)
            except (FunctionNotFound, DecompilationFailed) as exc:
                self.report.bump(type(exc).__name__)
                log_debug(f"[debug] {record.code_address:#x}: skipped ({type(exc).__name__}): {exc}")
            except Exception as exc:
                self.report.bump("unexpected_error")
                log_info(f"[warn] {record.code_address:#x}: unexpected error while retyping: {exc!r}")
                if DEBUG_ENABLED:
                    traceback.print_exc(file=sys.stderr)
        return self.report

    def _retype_record(self, record: ProtocolUsageRecord, visited: set) -> None:
        func_ea = self.host.function_containing(record.code_address)
        if func_ea in visited:
            log_trace(f"[trace] {record.code_address:#x}: function {func_ea:#x} already retyped")
            return
        visited.add(func_ea)
        tree = self.host.decompile(func_ea)
        for retyper in self.retypers:
            retyper.set_code_ea(record.code_address)
            retyper.set_func_ea(func_ea)
            retyper.apply(tree)
        self.report.bump("functions_processed")


# ---------------------------------------------------------------------------
# Ghidra host adapters
# ---------------------------------------------------------------------------


def _detect_pointer_size(program) -> int:
    try:
        size = program.getDefaultPointerSize()
        if size:
            return int(size)
    except Exception:
        pass
    return 8


def _signed(value: int, size: int) -> int:
    bits = size * 8
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


class GhidraTypeDatabase(TypeDatabase):
    def __init__(self, program):
        self.program = program
        self.dtm = program.getDataTypeManager()
        self._by_name: Optional[Dict[str, Any]] = None

    def lookup(self, name: str) -> Any:
        if self._by_name is None:
            self._by_name = {}
            for dt in self.dtm.getAllDataTypes():
                key = str(dt.getName())
                existing = self._by_name.get(key)
                # prefer the structure over same-named typedefs and pointers
                if existing is None or (not isinstance(existing, Composite) and isinstance(dt, Composite)):
                    self._by_name[key] = dt
        return self._by_name.get(name)

    def type_name(self, data_type: Any) -> str:
        return _type_label(data_type)

    def _strip_typedefs(self, data_type: Any) -> Any:
        if isinstance(data_type, TypeDef):
            return data_type.getBaseDataType()
        return data_type

    def udt_members(self, data_type: Any) -> Optional[List[Tuple[str, int]]]:
        base = self._strip_typedefs(data_type)
        if base is None or not isinstance(base, Composite):
            return None
        members: List[Tuple[str, int]] = []
        for comp in base.getDefinedComponents():
            bit_offset = int(comp.getOffset()) * 8
            if comp.isBitFieldComponent():
                bit_offset += int(comp.getDataType().getBitOffset())
            name = comp.getFieldName() or comp.getDefaultFieldName()
            members.append((str(name), bit_offset))
        return members

    def is_array(self, data_type: Any) -> bool:
        return isinstance(self._strip_typedefs(data_type), Array)

    def array_details(self, data_type: Any) -> Optional[Tuple[Any, int]]:
        base = self._strip_typedefs(data_type)
        if not isinstance(base, Array):
            return None
        return base.getDataType(), int(base.getNumElements())

    def is_pointer(self, data_type: Any) -> bool:
        return isinstance(self._strip_typedefs(data_type), Pointer)

    def pointee(self, data_type: Any) -> Any:
        base = self._strip_typedefs(data_type)
        return base.getDataType() if isinstance(base, Pointer) else None

    def pointer_to(self, data_type: Any) -> Any:
        return PointerDataType(data_type, self.dtm)

    def array_of(self, data_type: Any, count: int) -> Any:
        return ArrayDataType(data_type, count, data_type.getLength(), self.dtm)

    def is_scalar_realtype(self, data_type: Any) -> bool:
        base = self._strip_typedefs(data_type)
        return isinstance(base, (AbstractIntegerDataType, AbstractFloatDataType, BooleanDataType, Undefined))

    def is_scalar_decl(self, data_type: Any) -> bool:
        return isinstance(data_type, BuiltInDataType) and not isinstance(data_type, (Pointer, Array))


class GhidraVariableStore:
    """Writes types through HighFunctionDBUtil; ``dry_run`` only reports success."""

    def __init__(self, program, dry_run: bool = False):
        self.program = program
        self.dry_run = dry_run

    def _in_transaction(self, label: str, action: Callable[[], bool]) -> bool:
        tx = self.program.startTransaction(label)
        ok = False
        try:
            ok = bool(action())
        finally:
            self.program.endTransaction(tx, ok)
        return ok

    def set_type(self, function_address: Optional[int], variable: LocalVar, data_type: Any) -> bool:
        symbol = variable.storage
        if symbol is None:
            return False
        if self.dry_run:
            return True

        def _update() -> bool:
            HighFunctionDBUtil.updateDBVariable(symbol, None, data_type, SourceType.USER_DEFINED)
            return True

        return self._in_transaction(f"Retype {variable.name}", _update)

    def set_global_type(self, address: int, data_type: Any, name: Optional[str] = None) -> bool:
        if self.dry_run:
            return True
        addr = self.program.getAddressFactory().getDefaultAddressSpace().getAddress(address)

        def _create() -> bool:
            DataUtilities.createData(
                self.program, addr, data_type, -1, DataUtilities.ClearDataMode.CLEAR_ALL_CONFLICT_DATA
            )
            return True

        return self._in_transaction(f"Retype {name or hex(address)}", _create)


class PcodeTreeBuilder:
    """Lifts the high p-code of one function into an expression tree.

    Only call sites become top-level items. Arguments are lifted through
    casts, copies, loads and PTRSUB address computations; anything else is
    kept as an opaque node so diagnostics can still print it.
    """

    MAX_DEPTH = 12

    def __init__(self, program, high_function, pointer_size: int = 8):
        self.program = program
        self.high_function = high_function
        self.pointer_size = pointer_size

    def build(self) -> BlockStmt:
        items: List[Expr] = []
        for op in self.high_function.getPcodeOps():
            if op.getOpcode() in (PcodeOp.CALL, PcodeOp.CALLIND):
                items.append(self.lift_call(op))
        return BlockStmt(items)

    def lift_call(self, op) -> CallExpr:
        target = self.lift(op.getInput(0))
        call_args = [self.lift(op.getInput(i)) for i in range(1, op.getNumInputs())]
        ea = None
        try:
            ea = int(op.getSeqnum().getTarget().getOffset())
        except Exception:
            pass
        return CallExpr(target, call_args, ea=ea)

    def _varnode_type(self, vn) -> Any:
        try:
            high = vn.getHigh()
            return high.getDataType() if high is not None else None
        except Exception:
            return None

    def _named_variable(self, vn) -> Optional[Expr]:
        try:
            high = vn.getHigh()
            symbol = high.getSymbol() if high is not None else None
        except Exception:
            return None
        if symbol is None:
            return None
        if symbol.isGlobal():
            address = int(symbol.getStorage().getMinAddress().getOffset())
            return ObjExpr(address, name=str(symbol.getName()), type=symbol.getDataType())
        return VarExpr(LocalVar(str(symbol.getName()), symbol.getDataType(), symbol))

    def lift(self, vn, depth: int = 0) -> Expr:
        if vn is None:
            return OpaqueExpr("<none>")
        if vn.isConstant():
            value = int(vn.getOffset())
            obj = self.global_object(value) if vn.getSize() == self.pointer_size and value else None
            if obj is not None:
                return RefExpr(obj, type=self._varnode_type(vn))
            return NumExpr(value, type=self._varnode_type(vn))
        named = self._named_variable(vn)
        if named is not None:
            return named
        def_op = vn.getDef()
        if def_op is None or depth >= self.MAX_DEPTH:
            if vn.isAddress():
                return ObjExpr(int(vn.getOffset()), type=self._varnode_type(vn))
            return OpaqueExpr(str(vn), type=self._varnode_type(vn))
        opcode = def_op.getOpcode()
        if opcode == PcodeOp.CAST:
            return CastExpr(self.lift(def_op.getInput(0), depth + 1), type=self._varnode_type(vn))
        if opcode in (PcodeOp.COPY, PcodeOp.INT_ZEXT, PcodeOp.INT_SEXT):
            return self.lift(def_op.getInput(0), depth + 1)
        if opcode == PcodeOp.LOAD:
            return self._lift_load(vn, def_op, depth)
        if opcode == PcodeOp.PTRSUB:
            return self._lift_ptrsub(vn, def_op, depth)
        if opcode in (PcodeOp.CALL, PcodeOp.CALLIND):
            # nested calls are top-level items already
            return OpaqueExpr(f"call@{def_op.getSeqnum().getTarget()}", type=self._varnode_type(vn))
        operands = [self.lift(def_op.getInput(i), depth + 1) for i in range(def_op.getNumInputs())]
        return OpaqueExpr(str(def_op.getMnemonic()), operands, type=self._varnode_type(vn))

    def _lift_load(self, vn, def_op, depth: int) -> Expr:
        addr_vn = def_op.getInput(1)
        addr_def = addr_vn.getDef() if addr_vn is not None and not addr_vn.isConstant() else None
        if addr_def is not None and addr_def.getOpcode() in (PcodeOp.PTRSUB, PcodeOp.INT_ADD):
            base_vn = addr_def.getInput(0)
            off_vn = addr_def.getInput(1)
            if off_vn is not None and off_vn.isConstant():
                offset = int(off_vn.getOffset())
                if base_vn.isConstant() and base_vn.getOffset() == 0:
                    # LOAD(&global) is the global itself
                    obj = self.global_object(offset)
                    if obj is not None:
                        return obj
                else:
                    return MemPtrExpr(self.lift(base_vn, depth + 1), offset, type=self._varnode_type(vn))
        return MemPtrExpr(self.lift(addr_vn, depth + 1), 0, type=self._varnode_type(vn))

    def _lift_ptrsub(self, vn, def_op, depth: int) -> Expr:
        base_vn = def_op.getInput(0)
        off_vn = def_op.getInput(1)
        if off_vn is not None and off_vn.isConstant():
            offset = int(off_vn.getOffset())
            if base_vn.isConstant() and base_vn.getOffset() == 0:
                obj = self.global_object(offset)
                if obj is not None:
                    return RefExpr(obj, type=self._varnode_type(vn))
            elif self.is_stack_base(base_vn):
                local = self.stack_local(_signed(offset, self.pointer_size))
                if local is not None:
                    return RefExpr(VarExpr(local), type=self._varnode_type(vn))
        operands = [self.lift(base_vn, depth + 1), self.lift(off_vn, depth + 1)]
        return OpaqueExpr("PTRSUB", operands, type=self._varnode_type(vn))

    def is_stack_base(self, vn) -> bool:
        try:
            if not (vn.isRegister() and vn.isInput()):
                return False
            sp = self.program.getCompilerSpec().getStackPointer()
            return sp is not None and vn.getAddress().equals(sp.getAddress())
        except Exception:
            return False

    def stack_local(self, offset: int) -> Optional[LocalVar]:
        try:
            stack = self.program.getAddressFactory().getStackSpace()
            symbol = self.high_function.getLocalSymbolMap().findLocal(stack.getAddress(offset), None)
        except Exception:
            return None
        if symbol is None:
            return None
        return LocalVar(str(symbol.getName()), symbol.getDataType(), symbol)

    def global_object(self, address: int) -> Optional[ObjExpr]:
        try:
            addr = self.program.getAddressFactory().getDefaultAddressSpace().getAddress(address)
            if not self.program.getMemory().contains(addr):
                return None
            symbol = self.program.getSymbolTable().getPrimarySymbol(addr)
            data = self.program.getListing().getDataAt(addr)
        except Exception:
            return None
        return ObjExpr(
            address,
            name=str(symbol.getName()) if symbol is not None else None,
            type=data.getDataType() if data is not None else None,
        )


class GhidraDecompiler:
    """Function lookup, decompilation and memory reads for the driver."""

    def __init__(self, program, timeout: int = DEFAULT_DECOMPILE_TIMEOUT, monitor=None):
        self.program = program
        self.timeout = timeout
        self.monitor = monitor if monitor is not None else getattr(TaskMonitor, "DUMMY", None)
        self.api = FlatProgramAPI(program)
        self.pointer_size = _detect_pointer_size(program)
        self._iface = DecompInterface()
        self._iface.openProgram(program)

    def function_containing(self, address: int) -> int:
        func = self.program.getFunctionManager().getFunctionContaining(self.api.toAddr(address))
        if func is None:
            raise FunctionNotFound(f"no function contains {address:#x}")
        return int(func.getEntryPoint().getOffset())

    def decompile(self, function_address: int) -> BlockStmt:
        func = self.program.getFunctionManager().getFunctionAt(self.api.toAddr(function_address))
        if func is None:
            raise FunctionNotFound(f"no function at {function_address:#x}")
        results = self._iface.decompileFunction(func, self.timeout, self.monitor)
        high = results.getHighFunction() if results is not None else None
        if high is None:
            detail = results.getErrorMessage() if results is not None else "no result"
            raise DecompilationFailed(f"{func.getName()} at {function_address:#x}: {detail}")
        return PcodeTreeBuilder(self.program, high, self.pointer_size).build()

    def read_bytes(self, address: int, size: int) -> Optional[bytes]:
        try:
            raw = self.api.getBytes(self.api.toAddr(address), size)
        except Exception as exc:
            log_debug(f"[debug] could not read {size} bytes at {address:#x}: {exc!r}")
            return None
        return bytes(b & 0xFF for b in raw)

    def dispose(self) -> None:
        self._iface.dispose()


# ---------------------------------------------------------------------------
# Main driver
# ---------------------------------------------------------------------------


def main():
    print("=== EfiProtocolRetyper (PyGhidra) ===", file=sys.stderr)
    print(
        f"debug={str(DEBUG_ENABLED).lower()} trace={str(TRACE_ENABLED).lower()} "
        f"dry_run={str(args.get('dry_run', False)).lower()} context={INVOCATION_CONTEXT}",
        file=sys.stderr,
    )
    if not _ensure_environment(INVOCATION_CONTEXT):
        return
    protocols_path = args.get("protocols")
    if not protocols_path:
        log_info("[error] protocols=<path to usage report JSON> is required")
        return
    try:
        records = load_protocol_records(protocols_path)
        guid_names = load_guid_dictionary(args["guids"]) if args.get("guids") else {}
    except (OSError, ValueError) as exc:
        log_info(f"[error] could not load protocol inputs: {exc}")
        if INVOCATION_CONTEXT == "headless":
            sys.exit(1)
        return
    log_info(f"[info] {len(records)} protocol usage records, {len(guid_names)} named GUIDs")

    program = currentProgram
    type_db = GhidraTypeDatabase(program)
    registries = build_service_registries(TypeLayoutResolver(type_db))
    decompiler = GhidraDecompiler(program, timeout=args["decompile_timeout"], monitor=ACTIVE_MONITOR)
    typer = VariableTyper(GhidraVariableStore(program, dry_run=args.get("dry_run", False)))
    report = RetypeReport()
    retypers = [GuidRetyper(registry, type_db, typer, decompiler.read_bytes, report) for registry in registries]
    driver = RetypeDriver(decompiler, retypers, report, monitor=ACTIVE_MONITOR)
    try:
        driver.retype_all(records, guid_names)
    finally:
        decompiler.dispose()
    emit_ndjson(report)
    print(
        f"=== Retyping complete: {len(report.applied)} retyped, {len(report.failures)} sites skipped ===",
        file=sys.stderr,
    )


_EFIPROTOCOLRETYPER_RAN = False


def _maybe_run_main_from_script_manager():
    """
    Ghidra's Script Manager may execute this module without setting __name__
    to "__main__". Run main() once in that case; plain imports (tests, other
    tools) have no currentProgram and do nothing.
    """

    global _EFIPROTOCOLRETYPER_RAN
    if currentProgram is not None and not _EFIPROTOCOLRETYPER_RAN:
        _EFIPROTOCOLRETYPER_RAN = True
        main()


def _launch_via_pyghidra_bridge() -> None:
    try:
        from pyghidra import ghidra_script, open_project
    except Exception as exc:  # pragma: no cover - bridge only
        print(f"[error] pyghidra is required to launch this script headlessly: {exc!r}", file=sys.stderr)
        sys.exit(1)

    project_path = os.environ.get("GHIDRA_PROJECT_PATH") or os.environ.get("PYGHIDRA_PROJECT_PATH")
    project_name = os.environ.get("GHIDRA_PROJECT_NAME") or os.environ.get("PYGHIDRA_PROJECT_NAME")
    target_binary = os.environ.get("GHIDRA_TARGET_BINARY") or os.environ.get("PYGHIDRA_TARGET_BINARY")

    if not project_path or not project_name or not target_binary:
        print(
            "[error] When running outside Ghidra, set GHIDRA_PROJECT_PATH, GHIDRA_PROJECT_NAME, and GHIDRA_TARGET_BINARY.",
            file=sys.stderr,
        )
        sys.exit(1)

    with open_project(project_path, project_name) as proj:
        with ghidra_script(proj, target_binary) as gh:
            gh.run_script(__file__, args=_filter_kv_args(_SYS_RAW_ARGS))


if __name__ == "__main__":
    _EFIPROTOCOLRETYPER_RAN = True
    if currentProgram is None:
        _launch_via_pyghidra_bridge()
    else:
        main()
else:
    _maybe_run_main_from_script_manager()
