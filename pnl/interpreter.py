from __future__ import annotations
import asyncio
import copy
import itertools
import threading
import time
from collections import ChainMap
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from . import ast
from . import ir
from .binder import MAIN
from .config import EngineConfig
from .corelib import call_builtin
from .errors import ExecutionCancelled, InternalInvariantError, PNLError
from .outcomes import Failure, FailureKind, Outcome, Propagate, Recover, Retry, Returned
from .policies import CallPolicy
from .providers import CallRequest, CapabilityProvider
from .rollback import ActiveCheckpoint, RollbackManager, take_checkpoint
from .scheduler import AsyncFactory, BranchSpec, CancelToken, JoinResult, Scheduler, TaskHandle
from .trace import TraceRecorder
from .types import FRAME_TRANSITIONS, FrameState


class _EvaluationError(PNLError):
    pass


class _BranchFailure(PNLError):
    """Carries a Failure value across the scheduler boundary."""

    def __init__(self, failure: Failure):
        super().__init__(failure.message)
        self.failure = failure


@dataclass
class _LoopState:
    items: Optional[Iterator[Any]] = None
    count: int = 0


class Frame:
    """Activation record of one function call. Bindings are owned by the frame."""

    def __init__(self, frame_id: int, function: ir.FunctionIR, bindings: Dict[str, Any],
                 parent: Optional["Frame"] = None, depth: int = 0, cancel: Optional[CancelToken] = None):
        self.frame_id = frame_id
        self.function = function
        self.bindings = bindings
        self.parent = parent
        self.depth = depth
        # shared with callees; a branch frame gets a token of its own
        self.cancel = cancel or (parent.cancel if parent is not None else CancelToken())
        self.state = FrameState.CREATED
        self.checkpoints: List[ActiveCheckpoint] = []
        self.block = function.entry
        self.index = 0
        self.last_value: Any = None
        self.loops: Dict[int, _LoopState] = {}
        self.joins: Dict[int, JoinResult] = {}
        self.handles: Dict[str, Tuple[TaskHandle, ir.Dispatch]] = {}

    @property
    def name(self) -> str:
        return self.function.name

    def transition(self, state: FrameState) -> None:
        if state not in FRAME_TRANSITIONS[self.state]:
            raise InternalInvariantError(f"frame {self.frame_id} ({self.name}): illegal transition {self.state.value} -> {state.value}")
        self.state = state

    def goto(self, block: int, index: int = 0) -> None:
        self.block = block
        self.index = index

    def cancel_handles(self) -> None:
        for handle, _ in self.handles.values():
            handle.cancel()
        self.handles.clear()


def _truthy(value: Any) -> bool:
    return bool(value)


def _apply_bin_op(op: str, a: Any, b: Any) -> Any:
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        return a / b
    if op == "%":
        return a % b
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    if op == ">=":
        return a >= b
    raise InternalInvariantError(f"Unknown operator {op}")


def _unary(op: str, value: Any) -> Any:
    if op == "NOT":
        return not _truthy(value)
    if op == "-":
        return -value
    if op == "+":
        return +value
    raise InternalInvariantError(f"Unknown unary {op}")


class Interpreter:
    """Drives a lowered program, one Frame per active function call.

    Runtime failures are ``Failure`` values. They are offered to the
    RollbackManager of the frame they occur in, and whatever it cannot
    resolve is returned to the caller frame, which gets the same chance.
    """

    def __init__(
        self,
        program: ir.ProgramIR,
        provider: CapabilityProvider,
        scheduler: Scheduler,
        config: Optional[EngineConfig] = None,
        recorder: Optional[TraceRecorder] = None,
        policies: Sequence[CallPolicy] = (),
        tracer: Any = None,
        log: Optional[Callable[[str], None]] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ):
        self.program = program
        self.provider = provider
        self.scheduler = scheduler
        self.config = (config or EngineConfig()).with_directives(program.settings)
        self.recorder = recorder or TraceRecorder()
        self.policies = list(policies)
        self.tracer = tracer
        self.log = log or logger.info
        self.metrics = metrics if metrics is not None else {}
        for key in ("calls", "frames", "retries", "rollbacks", "recoveries", "forks"):
            self.metrics.setdefault(key, 0)
        self.metrics.setdefault("function_ms", {})
        self.rollback = RollbackManager()
        self._frame_ids = itertools.count(1)
        self._lock = threading.Lock()
        self._handlers: Dict[type, Callable[[Frame, Any], Optional[Outcome]]] = {
            ir.Assign: self._exec_assign,
            ir.CallOp: self._exec_call,
            ir.Dispatch: self._exec_dispatch,
            ir.Suspend: self._exec_suspend,
            ir.ArmTaken: self._exec_arm,
            ir.Gate: self._exec_gate,
            ir.EnterCheckpoint: self._exec_enter_checkpoint,
            ir.ExitCheckpoint: self._exec_exit_checkpoint,
            ir.StartLoop: self._exec_start_loop,
            ir.Fork: self._exec_fork,
            ir.Join: self._exec_join,
            ir.Jump: self._exec_jump,
            ir.Branch: self._exec_branch,
            ir.LoopTest: self._exec_loop_test,
            ir.NextItem: self._exec_next_item,
            ir.Return: self._exec_return,
        }

    def _count(self, key: str, n: int = 1) -> None:
        with self._lock:
            self.metrics[key] = self.metrics.get(key, 0) + n

    # ---------- entry points ----------
    def run(self, entry: Optional[str] = None, args: Union[None, Sequence[Any], Mapping[str, Any]] = None) -> Outcome:
        name = entry or MAIN
        try:
            fn = self.program.function(name)
        except KeyError:
            raise PNLError(f"Function '{name}' not found")
        if isinstance(args, Mapping):
            missing = [p for p in fn.params if p not in args]
            extra = [k for k in args if k not in fn.params]
            if missing or extra:
                raise PNLError(f"{name}: expected arguments {list(fn.params)}, got {sorted(args)}")
            values = [args[p] for p in fn.params]
        else:
            values = list(args or ())
        return self.invoke_function(name, values)

    def invoke_function(self, name: str, args: Sequence[Any], parent: Optional[Frame] = None,
                        instr: Optional[ir.Instr] = None, cancel: Optional[CancelToken] = None) -> Outcome:
        fn = self.program.function(name)
        depth = parent.depth + 1 if parent is not None else 0
        if depth > self.config.max_call_depth:
            return self._failure(FailureKind.EVALUATION, f"maximum call depth {self.config.max_call_depth} exceeded calling '{name}'", parent, instr)
        if len(args) != len(fn.params):
            return self._failure(FailureKind.EVALUATION, f"'{name}' takes {len(fn.params)} argument(s), got {len(args)}", parent, instr)
        frame = Frame(next(self._frame_ids), fn, dict(zip(fn.params, args)), parent, depth, cancel)
        self._count("frames")
        self.recorder.record("frame", function=name, frame_id=frame.frame_id, pos=fn.pos, inputs=list(args),
                             event="enter", parent=parent.frame_id if parent else None)
        t0 = time.perf_counter()
        try:
            if self.tracer:
                with self.tracer.start_as_current_span(f"function:{name}"):
                    outcome = self._run_frame(frame)
            else:
                outcome = self._run_frame(frame)
        except ExecutionCancelled:
            frame.transition(FrameState.FAILED)
            self.recorder.record("frame", function=name, frame_id=frame.frame_id, pos=fn.pos,
                                 duration_ms=(time.perf_counter() - t0) * 1000.0, event="cancelled",
                                 state=frame.state.value)
            raise
        dt_ms = (time.perf_counter() - t0) * 1000.0
        with self._lock:
            self.metrics["function_ms"][name] = self.metrics["function_ms"].get(name, 0.0) + dt_ms
        if isinstance(outcome, Returned):
            frame.transition(FrameState.COMPLETED)
            self.recorder.record("frame", function=name, frame_id=frame.frame_id, pos=fn.pos, output=outcome.value,
                                 duration_ms=dt_ms, event="exit", state=frame.state.value)
            return outcome
        frame.transition(FrameState.FAILED)
        self.recorder.record("frame", function=name, frame_id=frame.frame_id, pos=fn.pos, duration_ms=dt_ms,
                             event="exit", state=frame.state.value, failure=outcome.kind.value)
        return outcome.through(name)

    # ---------- frame execution ----------
    def _run_frame(self, frame: Frame) -> Outcome:
        frame.transition(FrameState.RUNNING)
        try:
            return self._execute(frame)
        finally:
            frame.cancel_handles()

    def _execute(self, frame: Frame) -> Outcome:
        blocks = frame.function.blocks
        while True:
            frame.cancel.raise_if_cancelled(f"frame {frame.frame_id} ({frame.name})")
            block = blocks.get(frame.block)
            if block is None or frame.index >= len(block.instrs):
                raise InternalInvariantError(f"{frame.name}: no instruction at block {frame.block}[{frame.index}]")
            instr = block.instrs[frame.index]
            handler = self._handlers.get(type(instr))
            if handler is None:
                raise InternalInvariantError(f"{frame.name}: no handler for {type(instr).__name__}")
            position = (frame.block, frame.index)
            try:
                outcome = handler(frame, instr)
            except _EvaluationError as e:
                outcome = self._failure(FailureKind.EVALUATION, str(e), frame, instr)
            if outcome is None:
                if not instr.terminator and (frame.block, frame.index) == position:
                    frame.index += 1
                continue
            if isinstance(outcome, Returned):
                return outcome
            failure = self._on_failure(frame, outcome)
            if failure is not None:
                return failure

    def _on_failure(self, frame: Frame, failure: Failure) -> Optional[Failure]:
        """Apply the rollback decision; returns the failure when it must propagate."""
        active = frame.checkpoints[-1] if frame.checkpoints else None
        decision = self.rollback.on_failure(frame, frame.checkpoints, failure)
        match decision:
            case Retry():
                self._restore(frame, active)
                self._count("retries")
                self.log(f"[rollback] {frame.name}: retry {decision.attempt}/{active.checkpoint.retries} "
                         f"of checkpoint {decision.checkpoint_id} after {failure.kind.value}: {failure.message}")
                self.recorder.record("rollback", node_id=failure.node_id, function=frame.name, frame_id=frame.frame_id,
                                     pos=failure.pos, checkpoint=decision.checkpoint_id, attempt=decision.attempt,
                                     failure=failure.kind.value, message=failure.message)
                frame.goto(decision.block, decision.index)
                return None
            case Recover():
                self._restore(frame, active)
                self._count("recoveries")
                self.log(f"[recover] {frame.name}: checkpoint {decision.checkpoint_id} -> recovery handler "
                         f"after {decision.failure.retries} retries")
                self.recorder.record("recover", node_id=failure.node_id, function=frame.name, frame_id=frame.frame_id,
                                     pos=failure.pos, checkpoint=decision.checkpoint_id, retries=decision.failure.retries,
                                     failure=failure.kind.value, message=failure.message)
                frame.goto(decision.handler)
                return None
            case Propagate():
                if decision.failure.kind == FailureKind.RETRY_BUDGET_EXHAUSTED:
                    self.log(f"[rollback] {frame.name}: {decision.failure.message}")
                return decision.failure
        raise InternalInvariantError(f"unknown rollback decision {decision!r}")

    def _restore(self, frame: Frame, active: Optional[ActiveCheckpoint]) -> None:
        if active is None:
            raise InternalInvariantError(f"{frame.name}: rollback without a checkpoint")
        frame.transition(FrameState.ROLLED_BACK)
        frame.cancel_handles()
        frame.bindings = active.checkpoint.restore()
        frame.joins.clear()
        self._count("rollbacks")
        frame.transition(FrameState.RUNNING)

    def _failure(self, kind: FailureKind, message: str, frame: Optional[Frame], instr: Optional[ir.Instr],
                 cause: Optional[Failure] = None) -> Failure:
        return Failure(
            kind=kind,
            message=message,
            node_id=(instr.source_id or instr.node_id) if instr is not None else None,
            pos=instr.pos if instr is not None else ast.NO_POS,
            function=frame.name if frame is not None else None,
            cause=cause,
        )

    # ---------- expressions ----------
    def _eval(self, expr: ast.Expr, env: Mapping[str, Any]) -> Any:
        if isinstance(expr, ast.Literal):
            return expr.value
        if isinstance(expr, ast.Name):
            if expr.id not in env:
                raise _EvaluationError(f"variable '{expr.id}' is not bound")
            return env[expr.id]
        if isinstance(expr, ast.ListExpr):
            return [self._eval(item, env) for item in expr.items]
        if isinstance(expr, ast.IndexExpr):
            return self._guard(lambda: self._eval(expr.target, env)[self._eval(expr.index, env)], expr)
        if isinstance(expr, ast.UnaryExpr):
            operand = self._eval(expr.operand, env)
            return self._guard(lambda: _unary(expr.op, operand), expr)
        if isinstance(expr, ast.BinaryExpr):
            left = self._eval(expr.left, env)
            if expr.op == "AND":
                return _truthy(self._eval(expr.right, env)) if _truthy(left) else False
            if expr.op == "OR":
                return True if _truthy(left) else _truthy(self._eval(expr.right, env))
            right = self._eval(expr.right, env)
            return self._guard(lambda: _apply_bin_op(expr.op, left, right), expr)
        raise InternalInvariantError(f"cannot evaluate {type(expr).__name__}")

    @staticmethod
    def _guard(fn: Callable[[], Any], expr: ast.Expr) -> Any:
        try:
            return fn()
        except (ArithmeticError, LookupError, TypeError, ValueError) as e:
            raise _EvaluationError(f"{type(e).__name__} at {expr.pos}: {e}") from e

    def _args(self, frame: Frame, exprs: Sequence[ast.Expr], env: Optional[Mapping[str, Any]] = None) -> List[Any]:
        scope = frame.bindings if env is None else env
        return [self._eval(e, scope) for e in exprs]

    def _store(self, frame: Frame, target: Optional[str], capture: bool, value: Any) -> None:
        if target is not None:
            frame.bindings[target] = value
        if capture:
            frame.last_value = value

    # ---------- calls ----------
    def _timeout(self, declared: Optional[float], callee: ir.CallTarget) -> Optional[float]:
        for candidate in (declared, callee.timeout, self.config.call_timeout):
            if candidate is not None:
                return candidate
        return None

    def _request(self, callee: ir.CallTarget, args: List[Any], timeout: Optional[float]) -> CallRequest:
        return CallRequest(function=callee.name, domain=callee.domain, args=args, timeout=timeout)

    def _before(self, request: CallRequest) -> Optional[Any]:
        for policy in self.policies:
            hit = policy.before_call(request)
            if hit is not None:
                return hit
        return None

    def _after(self, request: CallRequest, value: Any) -> None:
        for policy in self.policies:
            policy.after_call(request, value)

    async def _acall_provider(self, request: CallRequest) -> Any:
        hit = self._before(request)
        if hit is not None:
            return hit.value
        try:
            value = await self.provider.ainvoke(request)
        except asyncio.CancelledError:
            self.provider.cancel(request)
            raise
        self._after(request, value)
        return value

    def _provider_call(self, request: CallRequest, cancel: Optional[CancelToken] = None) -> Any:
        if request.timeout is not None:
            return self.scheduler.call(lambda: self._acall_provider(request), request.timeout,
                                       name=request.call_id, token=cancel)
        hit = self._before(request)
        if hit is not None:
            return hit.value
        value = self.provider.invoke(request)
        self._after(request, value)
        return value

    def _call(self, frame: Frame, instr: ir.Instr, callee: ir.CallTarget, args: List[Any],
              timeout: Optional[float], cancel: Optional[CancelToken] = None) -> Outcome:
        if callee.kind == ir.TargetKind.FUNCTION:
            return self.invoke_function(callee.name, args, parent=frame, instr=instr, cancel=cancel)
        if callee.kind == ir.TargetKind.BUILTIN:
            try:
                return Returned(call_builtin(callee.name, args))
            except (ArithmeticError, LookupError, TypeError, ValueError) as e:
                return self._failure(FailureKind.EVALUATION, f"{callee.name}(): {e}", frame, instr)
        request = self._request(callee, args, self._timeout(timeout, callee))
        frame.cancel.raise_if_cancelled(f"call to {request.qualified_name}")
        self._count("calls")
        self.log(f"[call] {request.qualified_name}({', '.join(repr(a) for a in args)})")
        t0 = time.perf_counter()
        try:
            value = self._provider_call(request, frame.cancel)
        except ExecutionCancelled:
            raise
        except (asyncio.TimeoutError, TimeoutError):
            self.provider.cancel(request)
            message = f"{request.qualified_name} timed out after {request.timeout}s"
            outcome: Outcome = self._failure(FailureKind.CALL_FAILURE, message, frame, instr)
        except Exception as e:
            message = f"{request.qualified_name} failed: {e}"
            outcome = self._failure(FailureKind.CALL_FAILURE, message, frame, instr)
        else:
            outcome = Returned(value)
        dt_ms = (time.perf_counter() - t0) * 1000.0
        self.recorder.record(
            "call", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id, pos=instr.pos,
            inputs=args, output=outcome.value if isinstance(outcome, Returned) else None, duration_ms=dt_ms,
            target=str(callee), call_id=request.call_id, timeout=request.timeout,
            failure=outcome.message if isinstance(outcome, Failure) else None,
        )
        return outcome

    def _async_factory(self, frame: Frame, instr: ir.Instr, callee: ir.CallTarget, args: List[Any],
                       timeout: Optional[float]) -> AsyncFactory:
        if callee.kind == ir.TargetKind.DOMAIN:
            request = self._request(callee, args, timeout)
            self._count("calls")

            def make():
                return self._acall_provider(request)
            return make

        async def run_local() -> Any:
            # a nested frame blocks on its own calls, so it never occupies a pool worker
            token = CancelToken()
            outcome = await self.scheduler.run_in_thread(
                f"{frame.name}/{callee.name}", lambda: self._call(frame, instr, callee, args, None, cancel=token), token,
            )
            if isinstance(outcome, Failure):
                raise _BranchFailure(outcome)
            return outcome.value
        return run_local

    def _as_failure(self, error: Optional[BaseException], what: str, frame: Frame, instr: ir.Instr) -> Failure:
        if isinstance(error, _BranchFailure):
            return error.failure
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return self._failure(FailureKind.CALL_FAILURE, f"{what} timed out", frame, instr)
        return self._failure(FailureKind.CALL_FAILURE, f"{what} failed: {error}", frame, instr)

    # ---------- instruction handlers ----------
    def _exec_assign(self, frame: Frame, instr: ir.Assign) -> Optional[Outcome]:
        frame.bindings[instr.target] = self._eval(instr.value, frame.bindings)
        return None

    def _exec_call(self, frame: Frame, instr: ir.CallOp) -> Optional[Outcome]:
        args = self._args(frame, instr.args)
        outcome = self._call(frame, instr, instr.callee, args, instr.timeout)
        if isinstance(outcome, Failure):
            return outcome
        self._store(frame, instr.target, instr.capture, outcome.value)
        return None

    def _exec_dispatch(self, frame: Frame, instr: ir.Dispatch) -> Optional[Outcome]:
        args = self._args(frame, instr.args)
        timeout = self._timeout(instr.timeout, instr.callee)
        make = self._async_factory(frame, instr, instr.callee, args, timeout)
        handle = self.scheduler.dispatch(f"{frame.name}:{instr.handle}", make, timeout)
        frame.handles[instr.handle] = (handle, instr)
        self.log(f"[await] dispatched {instr.callee}")
        self.recorder.record("dispatch", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, inputs=args, target=str(instr.callee), handle=instr.handle, timeout=timeout)
        return None

    def _exec_suspend(self, frame: Frame, instr: ir.Suspend) -> Optional[Outcome]:
        entry = frame.handles.pop(instr.handle, None)
        if entry is None:
            raise InternalInvariantError(f"{frame.name}: suspend on unknown handle {instr.handle}")
        handle, dispatch = entry
        t0 = time.perf_counter()
        try:
            value = self.scheduler.wait(handle, frame.cancel)
        except ExecutionCancelled:
            raise
        except Exception as e:
            failure = self._as_failure(e, str(dispatch.callee), frame, dispatch)
            self.recorder.record("suspend", node_id=dispatch.source_id, function=frame.name, frame_id=frame.frame_id,
                                 pos=dispatch.pos, duration_ms=(time.perf_counter() - t0) * 1000.0,
                                 handle=instr.handle, failure=failure.message)
            return failure
        self.recorder.record("suspend", node_id=dispatch.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=dispatch.pos, output=value, duration_ms=(time.perf_counter() - t0) * 1000.0,
                             handle=instr.handle)
        self._store(frame, instr.target, instr.capture, value)
        return None

    def _exec_arm(self, frame: Frame, instr: ir.ArmTaken) -> Optional[Outcome]:
        self.recorder.record("arm", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, label=instr.label, index=instr.index, p=instr.probability)
        return None

    def _exec_gate(self, frame: Frame, instr: ir.Gate) -> Optional[Outcome]:
        passed = _truthy(self._eval(instr.condition, frame.bindings))
        self.recorder.record("gate", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, output=passed, label=instr.label, on_fail=instr.on_fail.value)
        if passed:
            return None
        what = f"validation gate '{instr.label}'" if instr.label else "validation gate"
        if instr.abort_target is not None:
            self.log(f"[gate] {frame.name}: {what} failed, leaving loop")
            frame.goto(instr.abort_target)
            return None
        self.log(f"[gate] {frame.name}: {what} failed at {instr.pos}")
        return self._failure(FailureKind.VALIDATION_GATE, f"{what} failed", frame, instr)

    def _exec_enter_checkpoint(self, frame: Frame, instr: ir.EnterCheckpoint) -> Optional[Outcome]:
        retries = instr.retries if instr.retries is not None else self.config.default_retries
        frame.checkpoints.append(take_checkpoint(
            instr.checkpoint_id, frame.frame_id, frame.bindings, block=instr.resume, index=0,
            retries=retries, recover=instr.recover,
        ))
        self.recorder.record("checkpoint", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, event="enter", checkpoint=instr.checkpoint_id, retries=retries)
        return None

    def _exec_exit_checkpoint(self, frame: Frame, instr: ir.ExitCheckpoint) -> Optional[Outcome]:
        if not frame.checkpoints or frame.checkpoints[-1].checkpoint.checkpoint_id != instr.checkpoint_id:
            raise InternalInvariantError(f"{frame.name}: checkpoint {instr.checkpoint_id} is not the innermost one")
        active = frame.checkpoints.pop()
        self.recorder.record("checkpoint", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, event="exit", checkpoint=instr.checkpoint_id, attempts=active.attempts)
        return None

    def _exec_start_loop(self, frame: Frame, instr: ir.StartLoop) -> Optional[Outcome]:
        state = _LoopState()
        if instr.iterable is not None:
            value = self._eval(instr.iterable, frame.bindings)
            state.items = iter(self._guard(lambda: list(value), instr.iterable))
        frame.loops[instr.loop_id] = state
        return None

    def _enter_body(self, frame: Frame, instr: ir.Instr, loop_id: int, body: int) -> Optional[Outcome]:
        state = frame.loops[loop_id]
        state.count += 1
        if state.count > self.config.max_loop_iterations:
            return self._failure(FailureKind.EVALUATION, f"loop exceeded {self.config.max_loop_iterations} iterations", frame, instr)
        frame.goto(body)
        return None

    def _exec_loop_test(self, frame: Frame, instr: ir.LoopTest) -> Optional[Outcome]:
        if _truthy(self._eval(instr.condition, frame.bindings)):
            return self._enter_body(frame, instr, instr.loop_id, instr.body)
        self.recorder.record("loop", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, iterations=frame.loops[instr.loop_id].count)
        frame.goto(instr.exit)
        return None

    def _exec_next_item(self, frame: Frame, instr: ir.NextItem) -> Optional[Outcome]:
        state = frame.loops[instr.loop_id]
        try:
            item = next(state.items)
        except StopIteration:
            self.recorder.record("loop", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                                 pos=instr.pos, iterations=state.count)
            frame.goto(instr.exit)
            return None
        frame.bindings[instr.var] = item
        return self._enter_body(frame, instr, instr.loop_id, instr.body)

    def _exec_jump(self, frame: Frame, instr: ir.Jump) -> Optional[Outcome]:
        frame.goto(instr.target)
        return None

    def _exec_branch(self, frame: Frame, instr: ir.Branch) -> Optional[Outcome]:
        taken = _truthy(self._eval(instr.condition, frame.bindings))
        self.recorder.record("branch", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, output=taken, label=instr.label, p=instr.probability)
        frame.goto(instr.then_target if taken else instr.else_target)
        return None

    def _exec_return(self, frame: Frame, instr: ir.Return) -> Optional[Outcome]:
        if instr.value is None:
            return Returned(frame.last_value)
        return Returned(self._eval(instr.value, frame.bindings))

    # ---------- fork / join ----------
    def _exec_fork(self, frame: Frame, instr: ir.Fork) -> Optional[Outcome]:
        specs: List[BranchSpec] = []
        for branch in instr.branches:
            # branches see a private copy of the arguments, never the frame's bindings
            args = copy.deepcopy(self._args(frame, branch.args))
            timeout = branch.timeout if branch.timeout is not None else branch.callee.timeout
            specs.append(BranchSpec(
                name=branch.name,
                index=branch.index,
                make=self._async_factory(frame, instr, branch.callee, args, timeout),
                timeout=timeout,
            ))
        deadline = instr.timeout if instr.timeout is not None else self.config.call_timeout
        self._count("forks")
        self.log(f"[fork] {frame.name}: PARALLEL {instr.quantifier.value} x{len(specs)} deadline={deadline}")
        self.recorder.record("fork", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, inputs=[str(b.callee) for b in instr.branches],
                             quantifier=instr.quantifier.value, deadline=deadline, fork=instr.fork_id)
        if self.tracer:
            with self.tracer.start_as_current_span(f"fork:{instr.fork_id}"):
                result = self.scheduler.fork(specs, instr.quantifier, deadline, token=frame.cancel)
        else:
            result = self.scheduler.fork(specs, instr.quantifier, deadline, token=frame.cancel)
        for outcome, branch in zip(result.outcomes, instr.branches):
            self.recorder.record(
                "fork.branch", node_id=branch.source_id, function=frame.name, frame_id=frame.frame_id, pos=instr.pos,
                output=outcome.value if outcome.succeeded else None, duration_ms=outcome.duration_ms,
                branch=outcome.name, index=outcome.index, status=outcome.status.value,
                error=str(outcome.error) if outcome.error is not None else None,
            )
        self.log(f"[fork] {frame.name}: join {instr.quantifier.value} "
                 f"{'satisfied' if result.satisfied else 'failed'} ({result.reason or 'all branches settled'})")
        if not result.satisfied:
            return self._failure(FailureKind.CALL_FAILURE,
                                 f"PARALLEL {instr.quantifier.value} not satisfied: {result.reason}", frame, instr)
        frame.joins[instr.fork_id] = result
        return None

    def _exec_join(self, frame: Frame, instr: ir.Join) -> Optional[Outcome]:
        result = frame.joins.pop(instr.fork_id, None)
        if result is None:
            raise InternalInvariantError(f"{frame.name}: join {instr.fork_id} has no completed fork")
        if instr.pass_all:
            args = result.values()
        else:
            args = self._args(frame, instr.args, ChainMap(result.by_name(), frame.bindings))
        outcome = self._call(frame, instr, instr.callee, args, None)
        self.recorder.record("join", node_id=instr.source_id, function=frame.name, frame_id=frame.frame_id,
                             pos=instr.pos, inputs=args,
                             output=outcome.value if isinstance(outcome, Returned) else None,
                             duration_ms=result.elapsed * 1000.0, target=str(instr.callee),
                             quantifier=result.quantifier.value)
        if isinstance(outcome, Failure):
            return outcome
        self._store(frame, instr.target, instr.capture, outcome.value)
        return None
