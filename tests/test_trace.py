"""Tests for trace records and sinks."""

import json
import threading

from pnl.ast import SourcePos
from pnl.trace import JsonlTraceSink, LoguruTraceSink, MemoryTraceSink, TraceRecorder
from pnl.types import UNAVAILABLE, to_jsonable


class TestRecorder:

    def test_sequence_and_fields(self):
        sink = MemoryTraceSink()
        recorder = TraceRecorder([sink])
        first = recorder.record("call", function="<main>", pos=SourcePos(2, 5), inputs=["doc"],
                                output=UNAVAILABLE, target="legal.assess", failure=None)
        recorder.record("branch", p=0.8)
        assert first.seq == 1
        assert (first.line, first.column) == (2, 5)
        assert first.output == "UNAVAILABLE"
        assert first.meta == {"target": "legal.assess"}
        assert [r.seq for r in sink.records] == [1, 2]

    def test_every_sink_sees_every_record(self):
        a, b = MemoryTraceSink(), MemoryTraceSink()
        recorder = TraceRecorder([a])
        recorder.record("frame")
        recorder.add_sink(b)
        recorder.record("gate")
        assert [r.kind for r in a.records] == ["frame", "gate"]
        assert [r.kind for r in b.records] == ["gate"]

    def test_concurrent_records_are_totally_ordered(self):
        sink = MemoryTraceSink()
        recorder = TraceRecorder([sink])

        def work():
            for _ in range(50):
                recorder.record("call")

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert [r.seq for r in sink.records] == list(range(1, 201))


class TestSinks:

    def test_jsonl_sink(self, tmp_path):
        path = tmp_path / "traces" / "run.jsonl"
        sink = JsonlTraceSink(path)
        recorder = TraceRecorder([sink])
        recorder.record("call", inputs={"items": (1, 2)}, target="svc.f")
        recorder.record("join", quantifier="ALL")
        recorder.close()
        lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [r["kind"] for r in lines] == ["call", "join"]
        assert lines[0]["inputs"] == {"items": [1, 2]}
        assert lines[1]["meta"]["quantifier"] == "ALL"
        sink.close()

    def test_loguru_sink(self):
        from loguru import logger
        messages = []
        handler = logger.add(messages.append, level="DEBUG", format="{message}")
        try:
            TraceRecorder([LoguruTraceSink()]).record("call", function="f", pos=SourcePos(1, 2), output=3)
        finally:
            logger.remove(handler)
        assert messages[0].strip() == "[trace] #1 call f@1:2 -> 3"

    def test_run_trace_reaches_extra_sinks(self, make_runtime, run_program):
        sink = MemoryTraceSink()
        rt = make_runtime({"svc": {"f": lambda: 1}}, trace_sinks=[sink])
        result = run_program(rt, "x = f()")
        assert [r.seq for r in sink.records] == [r.seq for r in result.trace]


def test_to_jsonable():
    class Opaque:
        def __repr__(self):
            return "<opaque>"

    value = {1: (UNAVAILABLE, {"x"}), "o": Opaque(), "n": None}
    assert to_jsonable(value) == {"1": ["UNAVAILABLE", ["x"]], "o": "<opaque>", "n": None}
