from __future__ import annotations
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from loguru import logger
from pydantic import BaseModel, Field

try:
    from opentelemetry import trace as otel_trace
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
except Exception:  # pragma: no cover - optional dependency
    otel_trace = None

from . import ast
from . import ir
from .binder import MAIN, BoundProgram, bind
from .config import EngineConfig
from .domains import DomainPack, DomainRegistry
from .errors import PNLError, ProgramFailure
from .interpreter import Interpreter
from .lowering import lower
from .outcomes import Failure, Returned
from .parser import parse
from .persistence import PersistenceManager
from .policies import CallPolicy
from .providers import CapabilityProvider, DryRunProvider, LocalProvider, select_provider
from .scheduler import Scheduler
from .trace import MemoryTraceSink, TraceRecord, TraceRecorder, TraceSink
from .types import to_jsonable

_console_exporter_installed = False


def _get_tracer(console: bool):
    global _console_exporter_installed
    if otel_trace is None:
        return None
    if console and not _console_exporter_installed:
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        otel_trace.set_tracer_provider(provider)
        _console_exporter_installed = True
    return otel_trace.get_tracer("pnl")


class FailureReport(BaseModel):
    """Structured, user-visible description of an unhandled runtime failure."""
    kind: str
    message: str
    node_id: Optional[int] = None
    line: int = 0
    column: int = 0
    function: Optional[str] = None
    frames: List[str] = Field(default_factory=list)
    retries: int = 0
    cause: Optional["FailureReport"] = None

    @classmethod
    def from_failure(cls, failure: Failure) -> "FailureReport":
        return cls(
            kind=failure.kind.value,
            message=failure.message,
            node_id=failure.node_id,
            line=failure.pos.line,
            column=failure.pos.column,
            function=failure.function,
            frames=list(failure.frames),
            retries=failure.retries,
            cause=cls.from_failure(failure.cause) if failure.cause is not None else None,
        )


class ProgramResult(BaseModel):
    ok: bool
    value: Any = None
    failure: Optional[FailureReport] = None
    retries: int = 0
    duration_ms: float = 0.0
    entry: str = MAIN
    trace: List[TraceRecord] = Field(default_factory=list)

    def unwrap(self) -> Any:
        if not self.ok:
            raise ProgramFailure(self.failure)
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"value"})
        data["value"] = to_jsonable(self.value)
        return data


@dataclass
class CompiledProgram:
    name: str
    program: ast.Program
    bound: BoundProgram
    ir_program: ir.ProgramIR

    @property
    def domains(self) -> List[str]:
        return list(self.bound.domain_names)


class Runtime:
    def __init__(
        self,
        provider: Optional[CapabilityProvider] = None,
        registry: Optional[DomainRegistry] = None,
        config: Optional[EngineConfig] = None,
        trace_sinks: Iterable[TraceSink] = (),
        policies: Sequence[CallPolicy] = (),
        dry_run: bool = False,
    ):
        self.config = config or EngineConfig.from_env()
        self.dry_run = dry_run or self.config.dry_run
        self.registry = registry or DomainRegistry()
        self.console: List[str] = []
        self.metrics: Dict[str, Any] = {
            "calls": 0, "frames": 0, "retries": 0, "rollbacks": 0,
            "recoveries": 0, "forks": 0, "function_ms": {},
        }
        self.trace_sinks: List[TraceSink] = list(trace_sinks)
        self.policies = list(policies)
        self.tracer = _get_tracer(self.config.otel_console)
        if self.dry_run:
            self.provider: CapabilityProvider = DryRunProvider()
        else:
            # Multi-provider selector (OpenAI → Anthropic → Gemini → Mistral → Cohere → Azure → OpenRouter → Ollama)
            self.provider = provider or select_provider() or LocalProvider()
        self.persistence = PersistenceManager(self.config.state_dir)
        self.compiled: Optional[CompiledProgram] = None
        self._scheduler: Optional[Scheduler] = None

    def log(self, msg: str):
        self.console.append(msg)
        logger.info(msg)

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = Scheduler(max_workers=self.config.max_workers)
        return self._scheduler

    # ---------- compilation ----------
    def _active_domains(self, program: ast.Program, domains: Optional[Iterable[Union[str, DomainPack]]]) -> List[DomainPack]:
        if domains is None:
            names = program.directive_map().get("DOMAIN") or ()
            return self.registry.resolve(names)
        packs: List[DomainPack] = []
        for item in domains:
            packs.append(item if isinstance(item, DomainPack) else self.registry.lookup(item))
        return packs

    def compile(self, source: Union[str, Path], domains: Optional[Iterable[Union[str, DomainPack]]] = None,
                name: Optional[str] = None) -> CompiledProgram:
        """Lex, parse, bind and lower. Compile-time errors are raised before any call is made."""
        if isinstance(source, Path):
            name = name or source.stem
        program = parse(source)
        packs = self._active_domains(program, domains)
        bound = bind(program, packs)
        program_ir = lower(bound)
        compiled = CompiledProgram(name=name or "program", program=program, bound=bound, ir_program=program_ir)
        logger.debug(f"[compile] {compiled.name}: {len(program.functions)} function(s), domains={compiled.domains}")
        return compiled

    def load(self, source: Union[str, Path], domains: Optional[Iterable[Union[str, DomainPack]]] = None) -> CompiledProgram:
        if isinstance(source, str) and "\n" not in source and source.endswith(".pnl") and Path(source).exists():
            source = Path(source)
        self.compiled = self.compile(source, domains)
        return self.compiled

    # ---------- execution ----------
    def run(self, entry: Optional[str] = None, args: Union[None, Sequence[Any], Mapping[str, Any]] = None,
            program: Optional[CompiledProgram] = None) -> ProgramResult:
        compiled = program or self.compiled
        if compiled is None:
            raise PNLError("No program loaded")
        memory = MemoryTraceSink()
        recorder = TraceRecorder([memory, *self.trace_sinks])
        for policy in self.policies:
            policy.reset()
        interp = Interpreter(
            compiled.ir_program,
            self.provider,
            self.scheduler,
            config=self.config,
            recorder=recorder,
            policies=self.policies,
            tracer=self.tracer,
            log=self.log,
            metrics=self.metrics,
        )
        name = entry or MAIN
        self.log(f"[run] {compiled.name}:{name}")
        t0 = time.perf_counter()
        outcome = interp.run(entry, args)
        dt_ms = (time.perf_counter() - t0) * 1000.0
        if isinstance(outcome, Returned):
            result = ProgramResult(ok=True, value=outcome.value, retries=interp.rollback.retries,
                                   duration_ms=dt_ms, entry=name, trace=memory.records)
        else:
            report = FailureReport.from_failure(outcome)
            self.log(f"[failure] {report.kind} in {report.function} at {report.line}:{report.column}: {report.message}")
            result = ProgramResult(ok=False, failure=report, retries=interp.rollback.retries,
                                   duration_ms=dt_ms, entry=name, trace=memory.records)
        self.log(f"[metrics] {self.metrics}")
        return result

    def run_source(self, source: Union[str, Path], entry: Optional[str] = None,
                   args: Union[None, Sequence[Any], Mapping[str, Any]] = None,
                   domains: Optional[Iterable[Union[str, DomainPack]]] = None) -> ProgramResult:
        return self.run(entry, args, program=self.load(source, domains))

    def save(self, result: ProgramResult, name: Optional[str] = None) -> str:
        return self.persistence.save_run(name or (self.compiled.name if self.compiled else "program"), result)

    # ---------- lifecycle ----------
    def close(self) -> None:
        if self._scheduler is not None:
            self._scheduler.close()
            self._scheduler = None
        for sink in self.trace_sinks:
            sink.close()

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
