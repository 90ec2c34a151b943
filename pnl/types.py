from __future__ import annotations
from enum import Enum
from typing import Any


class Unavailable:
    """Sentinel passed to SYNC for branches that failed, timed out or were cancelled."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (Unavailable, ())


UNAVAILABLE = Unavailable()


def is_available(value: Any) -> bool:
    return value is not UNAVAILABLE


class FrameState(str, Enum):
    CREATED = "Created"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


FRAME_TRANSITIONS = {
    FrameState.CREATED: {FrameState.RUNNING},
    FrameState.RUNNING: {FrameState.COMPLETED, FrameState.FAILED, FrameState.ROLLED_BACK},
    FrameState.ROLLED_BACK: {FrameState.RUNNING},
    FrameState.COMPLETED: set(),
    FrameState.FAILED: set(),
}


class BranchStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of runtime values for traces and persisted results."""
    if value is UNAVAILABLE:
        return "UNAVAILABLE"
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if hasattr(value, "model_dump"):
        return to_jsonable(value.model_dump())
    return repr(value)
