from __future__ import annotations
import copy
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import InternalInvariantError
from .outcomes import Decision, Failure, FailureKind, Propagate, Recover, Retry


@dataclass(frozen=True)
class Checkpoint:
    """Snapshot taken when a frame enters a transactional block.

    ``bindings`` is a private deep copy and is never mutated; every restore
    hands out a fresh copy, so all retries start from identical state.
    """
    checkpoint_id: int
    frame_id: int
    bindings: Dict[str, Any]
    block: int
    index: int
    retries: int
    recover: Optional[int] = None

    def restore(self) -> Dict[str, Any]:
        return copy.deepcopy(self.bindings)


@dataclass
class ActiveCheckpoint:
    checkpoint: Checkpoint
    attempts: int = 0


def take_checkpoint(checkpoint_id: int, frame_id: int, bindings: Dict[str, Any], block: int, index: int,
                    retries: int, recover: Optional[int] = None) -> ActiveCheckpoint:
    snapshot = Checkpoint(
        checkpoint_id=checkpoint_id,
        frame_id=frame_id,
        bindings=copy.deepcopy(bindings),
        block=block,
        index=index,
        retries=retries,
        recover=recover,
    )
    return ActiveCheckpoint(snapshot)


class RollbackManager:
    """Decides what happens after a runtime failure inside a frame.

    The nearest enclosing checkpoint is retried while its budget lasts, then
    its recovery handler runs; without a handler the failure propagates as
    RetryBudgetExhausted. Non-recoverable failures always propagate.
    """

    def __init__(self):
        self.retries = 0
        self.recoveries = 0
        # branches of one run share the manager
        self._lock = threading.Lock()

    def on_failure(self, frame: Any, stack: List[ActiveCheckpoint], failure: Failure) -> Decision:
        if not failure.recoverable or not stack:
            return Propagate(failure)
        active = stack[-1]
        cp = active.checkpoint
        if cp.frame_id != frame.frame_id:
            raise InternalInvariantError(f"checkpoint {cp.checkpoint_id} belongs to frame {cp.frame_id}, not {frame.frame_id}")
        if active.attempts < cp.retries:
            active.attempts += 1
            with self._lock:
                self.retries += 1
            logger.debug(f"[rollback] checkpoint {cp.checkpoint_id} retry {active.attempts}/{cp.retries} after {failure.kind.value}")
            return Retry(block=cp.block, index=cp.index, checkpoint_id=cp.checkpoint_id, attempt=active.attempts)
        stack.pop()
        exhausted = replace(failure, retries=active.attempts)
        if cp.recover is not None:
            with self._lock:
                self.recoveries += 1
            logger.debug(f"[rollback] checkpoint {cp.checkpoint_id} recovering after {active.attempts} retries")
            return Recover(handler=cp.recover, checkpoint_id=cp.checkpoint_id, failure=exhausted)
        return Propagate(Failure(
            kind=FailureKind.RETRY_BUDGET_EXHAUSTED,
            message=f"retry budget of {cp.retries} exhausted: {failure.message}",
            node_id=failure.node_id,
            pos=failure.pos,
            function=failure.function,
            retries=active.attempts,
            frames=failure.frames,
            cause=exhausted,
        ))
