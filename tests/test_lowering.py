"""Tests for AST -> IR lowering and the IR graph checks."""

import json

import pytest

from pnl import ir
from pnl.ast import OnFail, Quantifier
from pnl.binder import MAIN, bind
from pnl.domains import DomainPack
from pnl.errors import LowerError
from pnl.graph import IRGraph
from pnl.lowering import lower
from pnl.parser import parse

PACK = DomainPack.of("svc", ["fetch", "slow", "fast", "check", "store"])


def compile_ir(source, packs=(PACK,)):
    return lower(bind(parse(source), list(packs)))


def ops(fn):
    return [type(i).__name__ for i in fn.instructions()]


class TestStructure:
    """Lowered functions are well-formed control-flow graphs."""

    def test_every_block_ends_with_terminator(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        for fn in program.all_functions():
            assert fn.entry in fn.blocks
            for block in fn.blocks.values():
                assert block.terminator is not None
                assert not any(i.terminator for i in block.instrs[:-1])

    def test_functions_and_main(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        assert sorted(program.functions) == ["review", "triage"]
        assert program.main.name == MAIN
        assert program.domains == ["legal", "medical"]
        assert program.settings["RETRIES"] == 2

    def test_unreachable_code_pruned(self):
        program = compile_ir("DEF f() {\n RETURN 1\n x = 2\n}")
        assert "Assign" not in ops(program.function("f"))

    def test_to_dict_is_json(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        data = json.loads(json.dumps(program.to_dict(), default=str))
        names = [fn["name"] for fn in data["functions"]]
        assert names == ["triage", "review", MAIN]


class TestCalls:

    def test_call_targets(self):
        program = compile_ir("DEF g(): RETURN 1\nx = fetch(g())\nn = len([1])")
        calls = [i for i in program.main.instructions() if isinstance(i, ir.CallOp)]
        assert [c.callee.kind for c in calls] == [ir.TargetKind.FUNCTION, ir.TargetKind.DOMAIN, ir.TargetKind.BUILTIN]
        assert str(calls[1].callee) == "svc.fetch"
        # nested call hoisted into a temporary
        assert calls[0].target.startswith("%t")
        assert calls[1].args[0].id == calls[0].target

    def test_statement_call_captures_value(self):
        program = compile_ir("fetch(1)")
        call = next(i for i in program.main.instructions() if isinstance(i, ir.CallOp))
        assert call.capture and call.target is None

    def test_timeout_annotation(self):
        program = compile_ir("x = fetch(1) @timeout=250ms")
        call = next(i for i in program.main.instructions() if isinstance(i, ir.CallOp))
        assert call.timeout == pytest.approx(0.25)

    def test_binding_timeout_carried_on_target(self):
        pack = DomainPack.of("svc", {"fetch": {"timeout": 5}})
        program = compile_ir("x = fetch()", [pack])
        call = next(i for i in program.main.instructions() if isinstance(i, ir.CallOp))
        assert call.callee.timeout == 5.0
        assert call.timeout is None

    def test_awaits_dispatch_before_suspending(self):
        program = compile_ir("x = AWAIT slow(1) + AWAIT fast(2)")
        assert ops(program.main) == ["Dispatch", "Dispatch", "Suspend", "Suspend", "Assign", "Return"]

    def test_await_result_used_as_argument_is_awaited_first(self):
        program = compile_ir("x = store(AWAIT fetch(1))")
        assert ops(program.main) == ["Dispatch", "Suspend", "CallOp", "Return"]

    def test_short_circuit_branches_around_call(self):
        program = compile_ir("DEF f(x) {\n ok = x > 5 AND check(x)\n RETURN ok\n}")
        fn = program.function("f")
        branches = [i for i in fn.instructions() if isinstance(i, ir.Branch)]
        assert [b.label for b in branches] == ["and"]
        assert len(fn.blocks) == 3


class TestControlFlow:

    def test_if_arms(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        triage = program.function("triage")
        branches = [i for i in triage.instructions() if isinstance(i, ir.Branch)]
        assert [b.label for b in branches] == ["if", "elif"]
        assert branches[0].probability == 0.8
        arms = [i for i in triage.instructions() if isinstance(i, ir.ArmTaken)]
        assert sorted(a.label for a in arms) == ["ELIF", "ELSE", "IF"]

    def test_loops_have_cycles(self):
        program = compile_ir("n = 0\nWHILE n < 3 {\n n = n + 1\n}\nFOR i IN [1, 2] {\n n = n + i\n}")
        kinds = ops(program.main)
        assert kinds.count("StartLoop") == 2
        assert "LoopTest" in kinds and "NextItem" in kinds
        assert len(IRGraph(program).loop_heads(MAIN)) == 2

    def test_break_leaves_checkpoints(self):
        source = "FOR i IN [1] {\n CHECKPOINT {\n  BREAK\n }\n}"
        program = compile_ir(source)
        kinds = ops(program.main)
        assert kinds.count("EnterCheckpoint") == 1
        assert "ExitCheckpoint" in kinds

    def test_abort_loop_gate_targets_exit_path(self):
        program = compile_ir("FOR i IN [1, 2] {\n GATE i < 2 @on_fail=abort_loop\n}")
        gate = next(i for i in program.main.instructions() if isinstance(i, ir.Gate))
        assert gate.on_fail == OnFail.ABORT_LOOP
        assert gate.abort_target in program.main.blocks
        assert program.main.blocks[gate.abort_target].label == "gate.abort"


class TestCheckpoints:

    def test_checkpoint_with_recover(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        review = program.function("review")
        enter = next(i for i in review.instructions() if isinstance(i, ir.EnterCheckpoint))
        assert enter.retries == 2
        assert enter.recover in review.blocks
        assert review.blocks[enter.resume].label == "checkpoint.body"

    def test_statement_retries_become_checkpoint(self):
        program = compile_ir("v = fetch() @retries=2")
        enter = next(i for i in program.main.instructions() if isinstance(i, ir.EnterCheckpoint))
        assert enter.retries == 2
        assert enter.recover is None
        assert ops(program.main).count("ExitCheckpoint") == 1


class TestForkJoin:

    def test_fork_followed_by_join(self, example_program, legal_pack, medical_pack):
        program = compile_ir(example_program, [legal_pack, medical_pack])
        review = program.function("review")
        instrs = list(review.instructions())
        fork_at = next(n for n, i in enumerate(instrs) if isinstance(i, ir.Fork))
        fork, join = instrs[fork_at], instrs[fork_at + 1]
        assert isinstance(join, ir.Join) and join.fork_id == fork.fork_id
        assert fork.quantifier == Quantifier.ALL
        assert fork.timeout == 30.0
        assert [b.name for b in fork.branches] == ["risk", "cost"]
        assert [b.timeout for b in fork.branches] == [20.0, None]
        assert join.target == "verdict" and not join.pass_all

    def test_sync_without_arguments_passes_all(self):
        program = compile_ir("PARALLEL ANY {\n → fast()\n → slow()\n} SYNC collect()")
        join = next(i for i in program.main.instructions() if isinstance(i, ir.Join))
        fork = next(i for i in program.main.instructions() if isinstance(i, ir.Fork))
        assert join.pass_all and join.capture
        assert [b.name for b in fork.branches] == ["%branch0", "%branch1"]


class TestGraph:

    def test_recursion_and_unused(self):
        program = compile_ir("DEF loop(n): RETURN loop(n)\nDEF unused(): RETURN 1\nx = loop(1)")
        graph = IRGraph(program)
        assert graph.recursive_functions() == [["loop"]]
        assert graph.unused_functions() == ["unused"]
        assert sorted(graph.to_dict()["calls"]) == sorted([[MAIN, "loop"], ["loop", "loop"]])

    def test_verify_rejects_missing_terminator(self):
        program = compile_ir("x = 1")
        program.main.blocks[program.main.entry].instrs.pop()
        with pytest.raises(LowerError):
            IRGraph(program).verify()

    def test_verify_rejects_inactive_domain(self):
        program = compile_ir("x = fetch()")
        program.domains = []
        with pytest.raises(LowerError):
            IRGraph(program).verify()
