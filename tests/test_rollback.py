"""Tests for checkpoints, retries, recovery handlers and the RollbackManager."""

import threading
from unittest.mock import MagicMock, call

import pytest

from pnl.errors import InternalInvariantError
from pnl.outcomes import Failure, FailureKind, Propagate, Recover, Retry
from pnl.rollback import RollbackManager, take_checkpoint


def flaky(failures, value="ok"):
    """A callable that raises ``failures`` times, then returns ``value``."""
    calls = {"n": 0}

    def fn(*args):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise RuntimeError(f"attempt {calls['n']} failed")
        return value
    fn.calls = calls
    return fn


class TestRetry:
    """A failing statement is retried from its checkpoint."""

    def test_statement_retries(self, make_runtime, run_program):
        fetch = flaky(2, "data")
        rt = make_runtime({"svc": {"fetch": fetch}})
        result = run_program(rt, "v = fetch() @retries=2\nRETURN v")
        assert result.ok
        assert result.value == "data"
        assert result.retries == 2
        assert fetch.calls["n"] == 3
        rollbacks = [r for r in result.trace if r.kind == "rollback"]
        assert [r.meta["attempt"] for r in rollbacks] == [1, 2]

    def test_budget_exhausted(self, make_runtime, run_program):
        fetch = flaky(10)
        rt = make_runtime({"svc": {"fetch": fetch}})
        result = run_program(rt, "v = fetch() @retries=2\nRETURN v")
        assert not result.ok
        report = result.failure
        assert report.kind == "RetryBudgetExhausted"
        assert report.retries == 2
        assert report.cause.kind == "CallFailure"
        assert "attempt 3 failed" in report.cause.message
        assert report.line == 1
        assert fetch.calls["n"] == 3

    def test_directive_sets_default_budget(self, make_runtime, run_program):
        fetch = flaky(10)
        rt = make_runtime({"svc": {"fetch": fetch}})
        result = run_program(rt, "#RETRIES=1\nCHECKPOINT {\n v = fetch()\n}")
        assert result.failure.kind == "RetryBudgetExhausted"
        assert result.failure.retries == 1
        assert fetch.calls["n"] == 2

    def test_config_default_budget(self, make_runtime, run_program):
        fetch = flaky(3, "late")
        rt = make_runtime({"svc": {"fetch": fetch}})
        result = run_program(rt, "CHECKPOINT {\n v = fetch()\n}\nRETURN v")
        assert result.value == "late"
        assert result.retries == 3

    def test_gate_failure_retries(self, make_runtime, run_program):
        answers = iter(["", "", "filled"])
        rt = make_runtime({"svc": {"draft": lambda: next(answers)}})
        source = "CHECKPOINT @retries=3 {\n s = draft()\n GATE len(s) > 0\n}\nRETURN s"
        result = run_program(rt, source)
        assert result.value == "filled"
        assert result.retries == 2

    def test_evaluation_failure_retries(self, make_runtime, run_program):
        values = iter([0, 2])
        rt = make_runtime({"svc": {"pick": lambda: next(values)}})
        source = "CHECKPOINT @retries=1 {\n d = pick()\n x = 10 / d\n}\nRETURN x"
        result = run_program(rt, source)
        assert result.value == 5
        assert result.retries == 1


class TestRestore:

    def test_bindings_restored_exactly(self, make_runtime, run_program):
        record = MagicMock(return_value=None)
        check = flaky(2)
        rt = make_runtime({"svc": {"record": record, "check": check}})
        source = "xs = [1]\nn = 0\nCHECKPOINT @retries=2 {\n xs = append(xs, 2)\n n = n + 1\n record(xs)\n check()\n}\nRETURN [xs, n]"
        result = run_program(rt, source)
        assert result.value == [[1, 2], 1]
        assert record.call_args_list == [call([1, 2])] * 3


class TestRecover:

    def test_recover_handler(self, make_runtime, run_program):
        fetch = flaky(10)
        rt = make_runtime({"svc": {"fetch": fetch}})
        source = 'CHECKPOINT @retries=1 {\n v = fetch()\n} RECOVER {\n v = "fallback"\n}\nRETURN v'
        result = run_program(rt, source)
        assert result.ok
        assert result.value == "fallback"
        assert result.retries == 1
        recover = next(r for r in result.trace if r.kind == "recover")
        assert recover.meta["retries"] == 1

    def test_recover_sees_checkpoint_state(self, make_runtime, run_program):
        rt = make_runtime({"svc": {"fetch": flaky(10)}})
        source = 'n = 1\nCHECKPOINT @retries=0 {\n n = 99\n v = fetch()\n} RECOVER {\n v = n\n}\nRETURN v'
        assert run_program(rt, source).value == 1

    def test_example_recovers_empty_summary(self, make_runtime, run_program, example_program, legal_pack, medical_pack):
        assess = MagicMock(return_value="high")
        rt = make_runtime({
            "legal": {
                "summarize": lambda doc: "",
                "assess": assess,
                "combine": lambda risk, cost: [risk, cost],
            },
            "medical": {"estimate": lambda text: 0},
        }, packs=[legal_pack, medical_pack])
        result = run_program(rt, example_program, entry="review", args={"doc": "c.txt"})
        assert result.value == ["high", 0]
        assert result.retries == 2
        assess.assert_called_once_with("unavailable")


class TestNesting:

    def test_caller_checkpoint_retries_callee(self, make_runtime, run_program):
        fetch = flaky(1, "fresh")
        rt = make_runtime({"svc": {"fetch": fetch}})
        source = "DEF load(): RETURN fetch()\nCHECKPOINT @retries=1 {\n v = load()\n}\nRETURN v"
        result = run_program(rt, source)
        assert result.value == "fresh"
        assert result.retries == 1

    def test_exhausted_inner_checkpoint_not_retried_by_outer(self, make_runtime, run_program):
        fetch = flaky(10)
        rt = make_runtime({"svc": {"fetch": fetch}})
        source = "CHECKPOINT @retries=3 {\n CHECKPOINT @retries=1 {\n  v = fetch()\n }\n}"
        result = run_program(rt, source)
        assert result.failure.kind == "RetryBudgetExhausted"
        assert result.failure.retries == 1
        assert fetch.calls["n"] == 2

    def test_inner_checkpoint_recovers_first(self, make_runtime, run_program):
        rt = make_runtime({"svc": {"fetch": flaky(10)}})
        source = 'CHECKPOINT @retries=3 {\n CHECKPOINT @retries=0 {\n  v = fetch()\n } RECOVER {\n  v = "inner"\n }\n}\nRETURN v'
        result = run_program(rt, source)
        assert result.value == "inner"
        assert result.retries == 0

    def test_retry_inside_loop(self, make_runtime, run_program):
        fetch = flaky(1, 5)
        rt = make_runtime({"svc": {"fetch": fetch}})
        source = "total = 0\nFOR i IN [1, 2] {\n x = fetch() @retries=1\n total = total + x\n}\nRETURN total"
        assert run_program(rt, source).value == 10


def _failure(kind=FailureKind.CALL_FAILURE, message="boom"):
    return Failure(kind=kind, message=message, node_id=4, function="f")


class TestRollbackManager:

    def test_retry_then_exhaust(self):
        manager = RollbackManager()
        frame = MagicMock(frame_id=7)
        stack = [take_checkpoint(1, 7, {"x": [1]}, block=3, index=0, retries=1)]
        first = manager.on_failure(frame, stack, _failure())
        assert first == Retry(block=3, index=0, checkpoint_id=1, attempt=1)
        second = manager.on_failure(frame, stack, _failure(message="again"))
        assert isinstance(second, Propagate)
        assert second.failure.kind == FailureKind.RETRY_BUDGET_EXHAUSTED
        assert second.failure.retries == 1
        assert second.failure.cause.message == "again"
        assert stack == []
        assert manager.retries == 1

    def test_recover_when_handler_present(self):
        manager = RollbackManager()
        frame = MagicMock(frame_id=7)
        stack = [take_checkpoint(1, 7, {}, block=3, index=0, retries=0, recover=9)]
        decision = manager.on_failure(frame, stack, _failure())
        assert isinstance(decision, Recover)
        assert decision.handler == 9
        assert decision.failure.retries == 0
        assert manager.recoveries == 1

    def test_non_recoverable_propagates(self):
        manager = RollbackManager()
        stack = [take_checkpoint(1, 7, {}, block=3, index=0, retries=5)]
        failure = _failure(kind=FailureKind.RETRY_BUDGET_EXHAUSTED)
        assert manager.on_failure(MagicMock(frame_id=7), stack, failure) == Propagate(failure)
        assert len(stack) == 1

    def test_no_checkpoint_propagates(self):
        failure = _failure()
        assert RollbackManager().on_failure(MagicMock(frame_id=1), [], failure) == Propagate(failure)

    def test_checkpoint_of_another_frame(self):
        stack = [take_checkpoint(1, 7, {}, block=3, index=0, retries=1)]
        with pytest.raises(InternalInvariantError):
            RollbackManager().on_failure(MagicMock(frame_id=8), stack, _failure())

    def test_snapshot_is_private(self):
        bindings = {"xs": [1, 2]}
        active = take_checkpoint(1, 7, bindings, block=3, index=0, retries=1)
        bindings["xs"].append(3)
        restored = active.checkpoint.restore()
        assert restored == {"xs": [1, 2]}
        restored["xs"].append(4)
        assert active.checkpoint.restore() == {"xs": [1, 2]}

    def test_counters_shared_across_threads(self):
        manager = RollbackManager()

        def worker(frame_id):
            frame = MagicMock(frame_id=frame_id)
            stack = [take_checkpoint(1, frame_id, {}, block=3, index=0, retries=200)]
            for _ in range(200):
                manager.on_failure(frame, stack, _failure())

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert manager.retries == 1600
