import json
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from pnl.ast import SourcePos
from pnl.domains import DomainPack, DomainRegistry
from pnl.errors import BindError, PNLError, ProgramFailure
from pnl.outcomes import Failure, FailureKind
from pnl.providers import DryRunProvider, LocalProvider
from pnl.runtime import FailureReport, Runtime

EXAMPLES = Path(__file__).parent.parent / "examples"

REVIEW_FUNCTIONS = {
    "legal": {
        "summarize": lambda doc: f"summary of {doc}",
        "assess": lambda text: "medium",
        "combine": lambda risk, cost: {"risk": risk, "cost": cost},
    },
    "medical": {"estimate": lambda text: 800},
}


@pytest.fixture
def example_registry():
    registry = DomainRegistry()
    registry.load_file(EXAMPLES / "domains.json")
    return registry


def test_run_example_program(example_registry, config):
    with Runtime(provider=LocalProvider(REVIEW_FUNCTIONS), registry=example_registry, config=config) as rt:
        compiled = rt.load(str(EXAMPLES / "review.pnl"))
        assert compiled.name == "review"
        assert compiled.domains == ["legal", "medical"]
        result = rt.run("review", {"doc": "contract.txt"})
    assert result.ok, result.failure
    assert result.value == {"risk": "medium", "cost": 800}
    assert any("[run] review:review" in line for line in rt.console)


def test_dry_run_example(example_registry, config):
    with Runtime(registry=example_registry, config=config, dry_run=True) as rt:
        assert isinstance(rt.provider, DryRunProvider)
        result = rt.run_source(EXAMPLES / "review.pnl", entry="review", args=["c.txt"])
    assert result.ok, result.failure
    assert result.value.startswith("[dry-run] legal.combine(")
    assert rt.metrics["calls"] == 4


def test_restock_example(config):
    registry = DomainRegistry()
    assert [p.name for p in registry.load_dir(EXAMPLES)] == ["legal", "medical", "inventory"]
    orders = []

    def order(item, qty):
        orders.append((item, qty))
        return f"{item}:{qty}"

    stock = {"bolts": 4, "nuts": 20, "washers": 3}

    def lookup(item):
        if item == "bolts":
            time.sleep(0.5)
        return stock[item]

    functions = {"inventory": {"lookup": lookup, "order": order}}
    with Runtime(provider=LocalProvider(functions), registry=registry, config=config) as rt:
        result = rt.run_source(EXAMPLES / "retry_loop.pnl")
        assert result.ok, result.failure
        assert rt.metrics["forks"] == 1
        time.sleep(0.7)
    # the primary branch lost while still looking up bolts
    assert orders == [("washers", 7)]
    assert result.value == ["washers"]
    statuses = [r.meta["status"] for r in result.trace if r.kind == "fork.branch"]
    assert statuses == ["cancelled", "succeeded"]


class TestDomains:
    """Which packs a program is bound against."""

    def test_directive_selects_domains(self, make_runtime):
        rt = make_runtime({"svc": {"f": lambda: 1}, "other": {"f": lambda: 2}})
        # both packs export f, but only svc is active
        result = rt.run_source("#DOMAIN=svc\nRETURN f()")
        assert result.value == 1

    def test_explicit_pack_objects(self, make_runtime):
        rt = make_runtime({"svc": {"f": lambda: 3}}, packs=[])
        result = rt.run_source("RETURN f()", domains=[DomainPack.of("svc", ["f"])])
        assert result.value == 3

    def test_explicit_domains_override_directive(self, make_runtime):
        rt = make_runtime({"svc": {"f": lambda: 1}, "other": {"f": lambda: 2}})
        assert rt.run_source("#DOMAIN=svc\nRETURN f()", domains=["other"]).value == 2

    def test_unknown_domain(self, make_runtime):
        rt = make_runtime({})
        with pytest.raises(BindError) as exc:
            rt.run_source("#DOMAIN=nope\nx = 1")
        assert exc.value.symbol == "nope"

    def test_compile_error_before_any_call(self, make_runtime):
        calls = []
        rt = make_runtime({"svc": {"f": lambda: calls.append(1)}})
        with pytest.raises(BindError):
            rt.run_source("f()\ng()", domains=["svc"])
        assert calls == []


class TestResults:

    def test_run_without_program(self, make_runtime):
        with pytest.raises(PNLError):
            make_runtime({}).run()

    def test_to_dict_is_json(self, make_runtime, run_program):
        rt = make_runtime({})
        result = run_program(rt, "RETURN [1, first_available()]")
        data = result.to_dict()
        assert data["value"] == [1, "UNAVAILABLE"]
        assert json.loads(json.dumps(data))["ok"] is True

    def test_unwrap(self, make_runtime, run_program):
        rt = make_runtime({})
        assert run_program(rt, "RETURN 2 + 2").unwrap() == 4
        with pytest.raises(ProgramFailure) as exc:
            run_program(rt, "x = 1 / 0").unwrap()
        assert exc.value.report.kind == "EvaluationFailure"

    def test_failure_report_from_failure(self):
        cause = Failure(kind=FailureKind.CALL_FAILURE, message="refused", node_id=3,
                        pos=SourcePos(4, 5), function="load")
        failure = Failure(kind=FailureKind.RETRY_BUDGET_EXHAUSTED, message="gave up", node_id=2,
                          pos=SourcePos(3, 1), function="load", retries=2,
                          frames=("load", "<main>"), cause=cause)
        report = FailureReport.from_failure(failure)
        assert report.kind == "RetryBudgetExhausted"
        assert (report.line, report.column) == (3, 1)
        assert report.frames == ["load", "<main>"]
        assert report.retries == 2
        assert report.cause.kind == "CallFailure"
        assert report.cause.cause is None

    def test_failure_logged_to_console(self, make_runtime, run_program):
        rt = make_runtime({})
        run_program(rt, "x = 1\ny = x / 0")
        assert any(line.startswith("[failure] EvaluationFailure in <main> at 2:") for line in rt.console)


class TestLifecycle:

    def test_context_manager_closes_scheduler(self, config):
        with Runtime(provider=LocalProvider(), config=config) as rt:
            scheduler = rt.scheduler
            assert rt.scheduler is scheduler
        with pytest.raises(RuntimeError):
            scheduler.submit(None)

    def test_falls_back_to_local_provider(self, config):
        with patch("pnl.runtime.select_provider", return_value=None):
            rt = Runtime(config=config)
        assert isinstance(rt.provider, LocalProvider)
        rt.close()

    def test_compile_names_program_after_path(self, make_runtime, tmp_path):
        path = tmp_path / "scoring.pnl"
        path.write_text("RETURN 1\n", encoding="utf-8")
        rt = make_runtime({})
        assert rt.compile(path).name == "scoring"
        assert rt.compile("RETURN 1").name == "program"

    def test_metrics_accumulate(self, make_runtime, run_program):
        rt = make_runtime({"svc": {"f": lambda: 1}})
        run_program(rt, "a = f()\nb = f()")
        run_program(rt, "c = f()")
        assert rt.metrics["calls"] == 3
