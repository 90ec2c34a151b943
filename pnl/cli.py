#!/usr/bin/env python
import sys
import json
import argparse
from pathlib import Path
from typing import Any, Dict, List

from . import ast
from .domains import DomainRegistry
from .errors import CompileError, PNLError
from .graph import IRGraph
from .runtime import CompiledProgram, Runtime
from .trace import JsonlTraceSink


def _parse_arg(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text


def _parse_args(pairs: List[str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--arg expects NAME=VALUE, got '{pair}'")
        values[key.strip()] = _parse_arg(raw)
    return values


def _find_source(target: str) -> Path:
    # Heuristic search for the file
    for p in (Path(target), Path(f"{target}.pnl"), Path("examples") / target, Path("examples") / f"{target}.pnl"):
        if p.exists() and p.is_file():
            return p
    raise FileNotFoundError(f"Could not find program file for '{target}'")


def _lint(compiled: CompiledProgram) -> List[str]:
    warnings: List[str] = []
    graph = IRGraph(compiled.ir_program)
    for cycle in graph.recursive_functions():
        warnings.append(f"recursive call cycle: {' -> '.join(cycle)}")
    for name in graph.unused_functions():
        warnings.append(f"function '{name}' is never called")
    for node in ast.walk(compiled.program):
        if isinstance(node, ast.If):
            probs = [arm.probability for arm in node.arms if arm.probability is not None]
            if sum(probs) > 1.0 + 1e-9:
                warnings.append(f"{node.pos}: branch probabilities sum to {sum(probs):.2f} (> 1)")
    return warnings


def _registry(args) -> DomainRegistry:
    registry = DomainRegistry()
    for path in args.domain_file or ():
        registry.load_file(path)
    return registry


def cmd_run(args) -> int:
    source = _find_source(args.file)
    print(f"[CLI] Running: {source}")
    sinks = [JsonlTraceSink(args.trace)] if args.trace else []
    with Runtime(registry=_registry(args), trace_sinks=sinks, dry_run=args.dry_run) as rt:
        rt.load(source, domains=args.domain or None)
        result = rt.run(args.entry, _parse_args(args.arg or []) or None)
        if args.save:
            print(f"[CLI] Saved: {rt.save(result)}")
    if result.ok:
        print(json.dumps(result.to_dict()["value"], indent=2, ensure_ascii=False))
        return 0
    f = result.failure
    print(f"[Error] {f.kind} in {f.function or '?'} at line {f.line}, column {f.column}: {f.message} "
          f"(retries: {f.retries})")
    return 1


def cmd_check(args) -> int:
    source = _find_source(args.file)
    rt = Runtime(registry=_registry(args), dry_run=True)
    compiled = rt.load(source, domains=args.domain or None)
    print(f"[CLI] OK: {source} ({len(compiled.program.functions)} function(s), domains={compiled.domains})")
    if args.dump_ir:
        print(json.dumps(compiled.ir_program.to_dict(), indent=2, default=str))
    if args.lint:
        warnings = _lint(compiled)
        for w in warnings:
            print(f"[lint] {w}")
        if not warnings:
            print("[lint] no warnings")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="pnl", description="PNL - probabilistic, parallel programs over domain packs")
    subparsers = parser.add_subparsers(dest="command")

    def _domain_opts(p):
        p.add_argument("--domain", action="append", help="Activate a registered domain pack (repeatable)")
        p.add_argument("--domain-file", action="append", help="Load domain packs from a JSON file (repeatable)")

    # 'run' command
    run_parser = subparsers.add_parser("run", help="Run a .pnl program")
    run_parser.add_argument("file", help="Path of the program (e.g. examples/review.pnl)")
    run_parser.add_argument("--entry", help="Run this DEF function instead of the top-level statements")
    run_parser.add_argument("--arg", action="append", help="Entry argument NAME=VALUE (VALUE parsed as JSON when possible)")
    run_parser.add_argument("--dry-run", action="store_true", help="Run in simulation mode (no external calls)")
    run_parser.add_argument("--save", action="store_true", help="Persist the run result as JSON")
    run_parser.add_argument("--trace", help="Append trace records to this JSONL file")
    _domain_opts(run_parser)

    # 'check' command
    check_parser = subparsers.add_parser("check", help="Compile a .pnl program without running it")
    check_parser.add_argument("file")
    check_parser.add_argument("--dump-ir", action="store_true", help="Print the lowered IR as JSON")
    check_parser.add_argument("--lint", action="store_true", help="Report recursion, unused functions and probability sums")
    _domain_opts(check_parser)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2
    handler = cmd_run if args.command == "run" else cmd_check
    try:
        return handler(args)
    except CompileError as e:
        print(f"[Error] {type(e).__name__}: {e}")
    except (PNLError, FileNotFoundError, ValueError) as e:
        print(f"[Error] {str(e)}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
