# coding: utf-8
"""
drive_retype.py

Headless launcher for EfiProtocolRetyper.py.

- Opens (or imports) a firmware module into a Ghidra project through pyghidra
- Optionally runs auto-analysis with the analyzer options below
- Runs EfiProtocolRetyper.py in-process so it sees currentProgram/getScriptArgs
- Saves the NDJSON retype report and a stderr log next to each other
"""

from __future__ import annotations

import argparse
import inspect
import io
import os
import runpy
import sys
import traceback
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

# Stack and parameter recovery give the decompiler the locals the retyper
# needs; the rest are the usual defaults for PE32+ firmware modules.
DEFAULT_ANALYSIS_OPTIONS: dict[str, str] = {
    "Decompiler Parameter ID": "true",
    "Stack": "true",
    "Data Reference": "true",
    "Reference": "true",
    "Windows x86 PE Exception Handling": "false",
}

SCRIPT_NAME = "EfiProtocolRetyper.py"


def _bool_option(raw: str) -> str:
    s = (raw or "").strip().lower()
    if s in {"1", "true", "yes", "on", "enable", "enabled"}:
        return "true"
    if s in {"0", "false", "no", "off", "disable", "disabled"}:
        return "false"
    raise ValueError(f"Bad boolean value: {raw!r} (use true/false)")


def _parse_analysis_option(raw: str) -> tuple[str, str]:
    name, sep, val = raw.partition("=")
    name = name.strip()
    if not sep or not name:
        raise ValueError(f'Bad --analysis value {raw!r}. Expected: "Option Name=true|false"')
    return name, _bool_option(val)


def _resolve(p: str) -> Path:
    path = Path(p).expanduser()
    if path.is_absolute():
        return path
    return (Path(__file__).resolve().parent / path).resolve()


class _Tee(io.TextIOBase):
    def __init__(self, *streams):
        super().__init__()
        self._streams = streams

    def write(self, s: str) -> int:
        for stream in self._streams:
            stream.write(s)
        return len(s)

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


def _open_program(pyghidra_mod, target: str, project_path: str, project_name: str, analyze: bool, options: dict[str, str]):
    """Call pyghidra.open_program with whichever keyword names this pyghidra version accepts."""
    open_program = pyghidra_mod.open_program
    params = inspect.signature(open_program).parameters
    kwargs = {}
    for key in ("project_location", "project_path", "project"):
        if key in params:
            kwargs[key] = project_path
            break
    if "project_name" in params:
        kwargs["project_name"] = project_name
    if "analyze" in params:
        kwargs["analyze"] = analyze
    if options:
        for key in ("options", "analysis_options"):
            if key in params:
                kwargs[key] = options
                break
    return open_program(target, **kwargs)


def _run_retyper(script_path: Path, program, script_args: list[str], out_ndjson: Path, log_path: Path) -> int:
    out_ndjson.parent.mkdir(parents=True, exist_ok=True)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    with out_ndjson.open("w", encoding="utf-8", newline="\n") as f_out, log_path.open(
        "w", encoding="utf-8", buffering=1
    ) as f_log:
        err = _Tee(sys.stderr, f_log)
        init_globals = {
            "currentProgram": program,
            "getScriptArgs": (lambda: list(script_args)),
        }
        try:
            with redirect_stdout(f_out), redirect_stderr(err):
                runpy.run_path(str(script_path), run_name="__main__", init_globals=init_globals)
            return 0
        except SystemExit as e:
            if e.code is None:
                return 0
            return e.code if isinstance(e.code, int) else 1
        except Exception:
            traceback.print_exc(file=err)
            return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drive_retype.py",
        description="Open a firmware module in Ghidra, run EfiProtocolRetyper.py over it and save the NDJSON report.",
    )
    parser.add_argument("--target", default=os.environ.get("GHIDRA_TARGET_BINARY"), help="module to analyze")
    parser.add_argument("--project-path", default=os.environ.get("GHIDRA_PROJECT_PATH") or "ghidra_projects")
    parser.add_argument("--project-name", default=os.environ.get("GHIDRA_PROJECT_NAME") or "efi_retype")
    parser.add_argument("--script", default=os.environ.get("EFI_RETYPER_SCRIPT") or SCRIPT_NAME)
    parser.add_argument("--protocols", help="protocol usage report JSON (forwarded as protocols=...)")
    parser.add_argument("--guids", help="GUID dictionary JSON (forwarded as guids=...)")
    parser.add_argument("--analysis", action="append", default=[], help='Repeatable. Example: --analysis "Stack=true"')
    parser.add_argument("--no-analyze", action="store_true", help="Skip Ghidra auto-analysis")
    parser.add_argument("--out", default="", help="NDJSON output path (default: <cwd>/<target>.retype.ndjson)")
    parser.add_argument("--log", default="", help="stderr log path (default: <out>.log)")
    return parser


def retype_target(argv: list[str]) -> int:
    parser = build_parser()
    ns, script_kv = parser.parse_known_args(argv)
    if not ns.target:
        parser.error("--target is required (or set GHIDRA_TARGET_BINARY)")

    if ns.protocols:
        script_kv.append(f"protocols={_resolve(ns.protocols)}")
    if ns.guids:
        script_kv.append(f"guids={_resolve(ns.guids)}")
    if not any(kv.startswith("protocols=") for kv in script_kv):
        parser.error("--protocols (or protocols=<path>) is required")

    target = str(_resolve(ns.target))
    project_path = str(_resolve(ns.project_path))
    script_path = _resolve(ns.script)
    out_ndjson = _resolve(ns.out) if ns.out else Path.cwd() / (Path(target).stem + ".retype.ndjson")
    log_path = _resolve(ns.log) if ns.log else Path(str(out_ndjson) + ".log")

    options = dict(DEFAULT_ANALYSIS_OPTIONS)
    for raw in ns.analysis:
        try:
            name, val = _parse_analysis_option(raw)
        except ValueError as exc:
            parser.error(str(exc))
        options[name] = val

    print(f"[+] Target: {target}")
    print(f"[+] Project: {Path(project_path) / ns.project_name}")
    print(f"[+] Script: {script_path} {' '.join(script_kv)}")

    import pyghidra  # import only when needed

    try:
        ctx = _open_program(pyghidra, target, project_path, ns.project_name, not ns.no_analyze, options)
    except TypeError as e:
        print(f"[!] open_program rejected analysis options; retrying without them: {e}", file=sys.stderr)
        ctx = _open_program(pyghidra, target, project_path, ns.project_name, not ns.no_analyze, {})

    with ctx as flat_api:
        program = flat_api.getCurrentProgram()
        print(f"[+] Program Mounted: {program.getName()}")
        if not ns.no_analyze:
            try:
                flat_api.analyzeAll(program)
            except Exception:
                print("[!] analyzeAll() failed (continuing):", file=sys.stderr)
                traceback.print_exc()

        print(f"[+] Running EfiProtocolRetyper -> {out_ndjson}")
        rc = _run_retyper(script_path, program, script_kv, out_ndjson, log_path)
        if rc != 0:
            print(f"[!] Retyper exited with code {rc}. Stderr log: {log_path}", file=sys.stderr)
            return rc

    print(f"[+] Done. NDJSON: {out_ndjson} | log: {log_path}")
    return 0


def main() -> int:
    return retype_target(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
