"""
Scheduler: explicit task handles over a background asyncio loop.

The interpreter's controlling thread never runs the loop itself. It submits
coroutines with ``run_coroutine_threadsafe`` and blocks on the returned
future, so suspension only happens where the caller decides to wait: on an
AWAIT handle, a timed call, or a fork's join.

Blocking work comes in two kinds. Provider callables run on the worker pool.
Nested PNL frames (a DEF function used as a branch or AWAITed) run on a
thread of their own, since a frame blocks while it waits for provider calls
that need a pool worker themselves. Such a frame is stopped through its
CancelToken: every wait made on its behalf is cancelled with the token.
"""

from __future__ import annotations
import asyncio
import concurrent.futures
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from .ast import Quantifier
from .errors import ExecutionCancelled
from .types import UNAVAILABLE, BranchStatus

AsyncFactory = Callable[[], Awaitable[Any]]


class CancelToken:
    """Thread-safe cancellation flag with callbacks run once on cancel."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], Any]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], Any]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

    def raise_if_cancelled(self, what: str = "execution") -> None:
        if self._event.is_set():
            raise ExecutionCancelled(f"{what} cancelled")


@dataclass
class TaskHandle:
    name: str
    future: concurrent.futures.Future
    dispatched_at: float
    timeout: Optional[float] = None

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        return self.future.cancel()


@dataclass
class BranchSpec:
    name: str
    index: int
    make: AsyncFactory
    timeout: Optional[float] = None


@dataclass
class BranchOutcome:
    name: str
    index: int
    status: BranchStatus = BranchStatus.CANCELLED
    value: Any = UNAVAILABLE
    error: Optional[BaseException] = None
    started: float = 0.0
    finished: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == BranchStatus.SUCCEEDED

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.finished - self.started) * 1000.0)


@dataclass
class JoinResult:
    quantifier: Quantifier
    satisfied: bool
    outcomes: List[BranchOutcome] = field(default_factory=list)
    elapsed: float = 0.0
    reason: str = ""

    def values(self) -> List[Any]:
        """Branch results in declaration order; anything but a success is UNAVAILABLE."""
        return [o.value if o.succeeded else UNAVAILABLE for o in self.outcomes]

    def by_name(self) -> Dict[str, Any]:
        return {o.name: (o.value if o.succeeded else UNAVAILABLE) for o in self.outcomes}


class Scheduler:
    def __init__(self, max_workers: int = 16):
        self.loop = asyncio.new_event_loop()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pnl-worker")
        self.loop.set_default_executor(self._executor)
        self._thread = threading.Thread(target=self._run_loop, name="pnl-scheduler", daemon=True)
        self._thread.start()
        self._closed = False
        self._lock = threading.Lock()
        self._frames: Dict[threading.Thread, CancelToken] = {}

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    # ---------- task handles ----------
    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def dispatch(self, name: str, make: AsyncFactory, timeout: Optional[float] = None) -> TaskHandle:
        """Start ``make()`` without waiting; the deadline starts now."""
        future = self.submit(self._guarded(make, timeout))
        return TaskHandle(name=name, future=future, dispatched_at=time.monotonic(), timeout=timeout)

    def wait(self, handle: TaskHandle, token: Optional[CancelToken] = None) -> Any:
        """Block until the handle completes; re-raises its error (TimeoutError on deadline).

        Cancelling ``token`` cancels the handle and raises ExecutionCancelled.
        """
        return self._result(handle.future, token, handle.name)

    def call(self, make: AsyncFactory, timeout: Optional[float] = None, name: str = "call",
             token: Optional[CancelToken] = None) -> Any:
        return self.wait(self.dispatch(name, make, timeout), token)

    @staticmethod
    def _result(future: concurrent.futures.Future, token: Optional[CancelToken], name: str) -> Any:
        if token is None:
            return future.result()
        token.add_callback(future.cancel)
        try:
            return future.result()
        except concurrent.futures.CancelledError:
            if token.cancelled:
                raise ExecutionCancelled(f"wait on '{name}' cancelled") from None
            raise
        finally:
            token.remove_callback(future.cancel)

    @staticmethod
    async def _guarded(make: AsyncFactory, timeout: Optional[float]) -> Any:
        if timeout is None:
            return await make()
        return await asyncio.wait_for(make(), timeout)

    # ---------- frames on their own threads ----------
    async def run_in_thread(self, name: str, fn: Callable[[], Any], token: CancelToken) -> Any:
        """Run blocking ``fn`` on a dedicated thread; cancelling the awaiting task cancels ``token``."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(value: Any, error: Optional[BaseException]) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(value)

        def target() -> None:
            value, error = None, None
            try:
                value = fn()
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(deliver, value, error)
            except RuntimeError:
                logger.debug(f"[scheduler] {name}: loop closed before the frame finished")
            finally:
                with self._lock:
                    self._frames.pop(threading.current_thread(), None)

        thread = threading.Thread(target=target, name=f"pnl-frame-{name}", daemon=True)
        with self._lock:
            self._frames[thread] = token
        thread.start()
        try:
            return await future
        except asyncio.CancelledError:
            token.cancel()
            raise

    # ---------- fork / join ----------
    def fork(self, branches: Sequence[BranchSpec], quantifier: Quantifier, deadline: Optional[float] = None,
             token: Optional[CancelToken] = None) -> JoinResult:
        future = self.submit(self._fork(list(branches), quantifier, deadline))
        return self._result(future, token, f"fork {quantifier.value}")

    async def _run_branch(self, spec: BranchSpec) -> BranchOutcome:
        outcome = BranchOutcome(name=spec.name, index=spec.index, started=time.monotonic())
        try:
            if spec.timeout is not None:
                value = await asyncio.wait_for(spec.make(), spec.timeout)
            else:
                value = await spec.make()
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            outcome.status, outcome.error = BranchStatus.TIMED_OUT, e
        except Exception as e:
            outcome.status, outcome.error = BranchStatus.FAILED, e
        else:
            outcome.status, outcome.value = BranchStatus.SUCCEEDED, value
        outcome.finished = time.monotonic()
        return outcome

    async def _fork(self, branches: List[BranchSpec], quantifier: Quantifier, deadline: Optional[float]) -> JoinResult:
        start = time.monotonic()
        end = start + deadline if deadline is not None else None
        # created in declaration order, so dispatch order follows the source
        tasks = {asyncio.create_task(self._run_branch(spec)): spec for spec in branches}
        outcomes: Dict[int, BranchOutcome] = {}
        pending = set(tasks)
        satisfied: Optional[bool] = None
        reason = ""
        hit_deadline = False

        try:
            while pending:
                remaining = None if end is None else max(0.0, end - time.monotonic())
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if not done:
                    hit_deadline = True
                    reason = f"deadline of {deadline}s elapsed"
                    break
                finished = sorted((t.result() for t in done), key=lambda o: (o.finished, o.index))
                for o in finished:
                    outcomes[o.index] = o
                winners = [o for o in finished if o.succeeded]
                if quantifier == Quantifier.ANY and winners:
                    satisfied = True
                    reason = f"branch '{winners[0].name}' succeeded first"
                    for loser in winners[1:]:
                        loser.status, loser.value = BranchStatus.CANCELLED, UNAVAILABLE
                    break
                if quantifier == Quantifier.NONE and winners:
                    satisfied = False
                    reason = f"branch '{winners[0].name}' succeeded"
                    break
        except asyncio.CancelledError:
            # the forking frame itself was cancelled
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        now = time.monotonic()
        for t in pending:
            spec = tasks[t]
            status = BranchStatus.TIMED_OUT if hit_deadline else BranchStatus.CANCELLED
            error = asyncio.TimeoutError(reason) if hit_deadline else None
            outcomes[spec.index] = BranchOutcome(spec.name, spec.index, status=status, error=error, started=start, finished=now)

        if satisfied is None:
            if quantifier == Quantifier.ANY:
                satisfied = False
                reason = reason or "no branch succeeded"
            else:
                satisfied = True
        ordered = [outcomes[spec.index] for spec in branches]
        logger.debug(f"[scheduler] join {quantifier.value}: satisfied={satisfied} "
                     f"statuses={[o.status.value for o in ordered]}")
        return JoinResult(quantifier=quantifier, satisfied=satisfied, outcomes=ordered, elapsed=now - start, reason=reason)

    # ---------- lifecycle ----------
    async def _cancel_pending(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks() if t is not current]
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def close(self, timeout: float = 5.0) -> None:
        """Cancel outstanding work, let frame threads unwind, then stop the loop and the pool."""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            frames = list(self._frames.items())
        for _, token in frames:
            token.cancel()
        if self._thread.is_alive():
            try:
                asyncio.run_coroutine_threadsafe(self._cancel_pending(), self.loop).result(timeout)
            except concurrent.futures.TimeoutError:
                logger.warning("[scheduler] pending tasks did not finish cancelling in time")
        for thread, _ in frames:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"[scheduler] {thread.name} still running after close")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self._executor.shutdown(wait=True, cancel_futures=True)
        if not self._thread.is_alive():
            self.loop.close()

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
