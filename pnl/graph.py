"""
IRGraph: networkx views over lowered PNL programs.

Each function becomes a directed graph of basic blocks (edges follow
terminators, checkpoint recovery and gate abort targets). A second graph
links functions by the calls they make. The engine uses these graphs to
verify lowering invariants, prune unreachable blocks and report loops and
recursion.
"""

from __future__ import annotations
from typing import Any, Dict, List, Set

import networkx as nx

from . import ir
from .corelib import BUILTINS
from .errors import LowerError


class IRGraph:
    def __init__(self, program: ir.ProgramIR):
        self.program = program
        self.cfgs: Dict[str, nx.DiGraph] = {}
        self.call_graph: nx.DiGraph = nx.DiGraph()
        for fn in program.all_functions():
            self.cfgs[fn.name] = self._build_cfg(fn)
            self.call_graph.add_node(fn.name)
        for fn in program.all_functions():
            for instr in fn.instructions():
                for target in self._call_targets(instr):
                    if target.kind == ir.TargetKind.FUNCTION:
                        self.call_graph.add_edge(fn.name, target.name)

    # ─── Construction ────────────────────────────────────────────

    @staticmethod
    def _build_cfg(fn: ir.FunctionIR) -> nx.DiGraph:
        g = nx.DiGraph()
        for block in fn.blocks.values():
            g.add_node(block.block_id, label=block.label, size=len(block.instrs))
        for src, dst in fn.edges():
            g.add_edge(src, dst)
        return g

    @staticmethod
    def _call_targets(instr: ir.Instr) -> List[ir.CallTarget]:
        if isinstance(instr, (ir.CallOp, ir.Dispatch, ir.Join)):
            return [instr.callee]
        if isinstance(instr, ir.Fork):
            return [b.callee for b in instr.branches]
        return []

    # ─── Verification ────────────────────────────────────────────

    def verify(self) -> None:
        """Raise LowerError on any structural inconsistency."""
        for fn in self.program.all_functions():
            if fn.entry not in fn.blocks:
                raise LowerError(f"{fn.name}: entry block {fn.entry} missing")
            for block in fn.blocks.values():
                if block.terminator is None:
                    raise LowerError(f"{fn.name}: block {block.block_id} ({block.label}) has no terminator")
                for instr in block.instrs[:-1]:
                    if instr.terminator:
                        raise LowerError(f"{fn.name}: terminator in the middle of block {block.block_id}")
            for src, dst in fn.edges():
                if dst not in fn.blocks:
                    raise LowerError(f"{fn.name}: block {src} jumps to missing block {dst}")
            self._verify_calls(fn)
            self._verify_forks(fn)

    def _verify_calls(self, fn: ir.FunctionIR) -> None:
        domains = set(self.program.domains)
        for instr in fn.instructions():
            for target in self._call_targets(instr):
                if target.kind == ir.TargetKind.FUNCTION and target.name not in self.program.functions:
                    raise LowerError(f"{fn.name}: call to unknown function '{target.name}'")
                if target.kind == ir.TargetKind.BUILTIN and target.name not in BUILTINS:
                    raise LowerError(f"{fn.name}: call to unknown builtin '{target.name}'")
                if target.kind == ir.TargetKind.DOMAIN and target.domain not in domains:
                    raise LowerError(f"{fn.name}: call into inactive domain '{target.domain}'")

    def _verify_forks(self, fn: ir.FunctionIR) -> None:
        forks: Set[int] = set()
        for block in fn.blocks.values():
            for instr in block.instrs:
                if isinstance(instr, ir.Fork):
                    forks.add(instr.fork_id)
                elif isinstance(instr, ir.Join) and instr.fork_id not in forks:
                    raise LowerError(f"{fn.name}: join for fork {instr.fork_id} precedes its fork")

    # ─── Analysis ────────────────────────────────────────────────

    def reachable(self, name: str) -> Set[int]:
        fn = self.program.function(name)
        g = self.cfgs[name]
        return {fn.entry} | nx.descendants(g, fn.entry)

    def unreachable_blocks(self, name: str) -> Set[int]:
        return set(self.cfgs[name].nodes) - self.reachable(name)

    def prune_unreachable(self) -> int:
        removed = 0
        for fn in self.program.all_functions():
            dead = self.unreachable_blocks(fn.name)
            for block_id in dead:
                del fn.blocks[block_id]
            self.cfgs[fn.name].remove_nodes_from(dead)
            removed += len(dead)
        return removed

    def loop_heads(self, name: str) -> List[int]:
        """Blocks that start a cycle in the CFG (WHILE/FOR heads)."""
        heads = set()
        for cycle in nx.simple_cycles(self.cfgs[name]):
            heads.add(min(cycle))
        return sorted(heads)

    def recursive_functions(self) -> List[List[str]]:
        return [sorted(c) for c in nx.simple_cycles(self.call_graph)]

    def unused_functions(self) -> List[str]:
        """DEF functions never reachable from the top-level program."""
        if self.program.main is None:
            return []
        used = nx.descendants(self.call_graph, self.program.main.name)
        return sorted(name for name in self.program.functions if name not in used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "functions": {
                name: {"blocks": g.number_of_nodes(), "edges": g.number_of_edges()}
                for name, g in self.cfgs.items()
            },
            "calls": [list(e) for e in self.call_graph.edges],
        }
