"""
Execution trace: ordered records of what the interpreter did.

Records are numbered by ``seq`` under a lock, so concurrent branches still
produce one total order. Every sink receives every record in that order.
"""

from __future__ import annotations
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field

from .ast import SourcePos, NO_POS
from .types import to_jsonable


class TraceRecord(BaseModel):
    seq: int
    kind: str
    node_id: Optional[int] = None
    function: Optional[str] = None
    frame_id: Optional[int] = None
    timestamp: float = Field(default_factory=time.time)
    inputs: Any = None
    output: Any = None
    duration_ms: Optional[float] = None
    line: int = 0
    column: int = 0
    meta: Dict[str, Any] = Field(default_factory=dict)


class TraceSink:
    def emit(self, record: TraceRecord) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemoryTraceSink(TraceSink):
    def __init__(self):
        self.records: List[TraceRecord] = []

    def emit(self, record: TraceRecord) -> None:
        self.records.append(record)


class JsonlTraceSink(TraceSink):
    """Append one JSON object per record to a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("a", encoding="utf-8")

    def emit(self, record: TraceRecord) -> None:
        self._fh.write(json.dumps(record.model_dump(mode="json")) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


class LoguruTraceSink(TraceSink):
    def __init__(self, level: str = "DEBUG"):
        self.level = level

    def emit(self, record: TraceRecord) -> None:
        where = f"{record.function or '?'}@{record.line}:{record.column}"
        logger.log(self.level, f"[trace] #{record.seq} {record.kind} {where} -> {record.output!r}")


class TraceRecorder:
    def __init__(self, sinks: Iterable[TraceSink] = ()):
        self.sinks: List[TraceSink] = list(sinks)
        self._lock = threading.Lock()
        self._seq = 0

    def add_sink(self, sink: TraceSink) -> None:
        self.sinks.append(sink)

    def record(
        self,
        kind: str,
        *,
        node_id: Optional[int] = None,
        function: Optional[str] = None,
        frame_id: Optional[int] = None,
        pos: SourcePos = NO_POS,
        inputs: Any = None,
        output: Any = None,
        duration_ms: Optional[float] = None,
        **meta: Any,
    ) -> TraceRecord:
        with self._lock:
            self._seq += 1
            rec = TraceRecord(
                seq=self._seq,
                kind=kind,
                node_id=node_id,
                function=function,
                frame_id=frame_id,
                inputs=to_jsonable(inputs),
                output=to_jsonable(output),
                duration_ms=duration_ms,
                line=pos.line,
                column=pos.column,
                meta={k: to_jsonable(v) for k, v in meta.items() if v is not None},
            )
            for sink in self.sinks:
                sink.emit(rec)
        return rec

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
