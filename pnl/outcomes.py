# Runtime outcome values: failures and rollback decisions travel up the call
# chain as values, never as Python exceptions.
from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Tuple, Union

from .ast import SourcePos, NO_POS


class FailureKind(str, Enum):
    CALL_FAILURE = "CallFailure"
    VALIDATION_GATE = "ValidationGateFailure"
    EVALUATION = "EvaluationFailure"
    RETRY_BUDGET_EXHAUSTED = "RetryBudgetExhausted"


RECOVERABLE = frozenset({FailureKind.CALL_FAILURE, FailureKind.VALIDATION_GATE, FailureKind.EVALUATION})


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    node_id: Optional[int] = None
    pos: SourcePos = NO_POS
    function: Optional[str] = None
    retries: int = 0
    frames: Tuple[str, ...] = ()
    cause: Optional["Failure"] = None

    @property
    def recoverable(self) -> bool:
        return self.kind in RECOVERABLE

    def through(self, function: str) -> "Failure":
        """Record that the failure propagated out of ``function``."""
        return replace(self, frames=self.frames + (function,))


@dataclass(frozen=True)
class Returned:
    value: Any = None


Outcome = Union[Returned, Failure]


# -------- rollback decisions ---------

@dataclass(frozen=True)
class Retry:
    block: int
    index: int
    checkpoint_id: int
    attempt: int


@dataclass(frozen=True)
class Recover:
    handler: int
    checkpoint_id: int
    failure: Failure


@dataclass(frozen=True)
class Propagate:
    failure: Failure


Decision = Union[Retry, Recover, Propagate]
