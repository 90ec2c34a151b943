# Builtin functions available to every PNL program (lowest resolution priority)
from __future__ import annotations
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .types import UNAVAILABLE, is_available


class Builtin(NamedTuple):
    fn: Callable[..., Any]
    arity: Optional[int] = None  # None means variadic


def _collect(*args: Any) -> List[Any]:
    return list(args)


def _available(value: Any) -> bool:
    return is_available(value)


def _first_available(*args: Any) -> Any:
    for value in args:
        if is_available(value):
            return value
    return UNAVAILABLE


def _count_available(*args: Any) -> int:
    return sum(1 for v in args if is_available(v))


def _append(items: List[Any], value: Any) -> List[Any]:
    return list(items) + [value]


def _concat(*lists: List[Any]) -> List[Any]:
    out: List[Any] = []
    for items in lists:
        out.extend(items)
    return out


def _contains(container: Any, value: Any) -> bool:
    return value in container


def _range(*args: int) -> List[int]:
    return list(range(*args))


BUILTINS: Dict[str, Builtin] = {
    "len": Builtin(len, 1),
    "range": Builtin(_range),
    "str": Builtin(str, 1),
    "int": Builtin(int, 1),
    "float": Builtin(float, 1),
    "bool": Builtin(bool, 1),
    "abs": Builtin(abs, 1),
    "min": Builtin(min),
    "max": Builtin(max),
    "sum": Builtin(sum, 1),
    "round": Builtin(round),
    "collect": Builtin(_collect),
    "append": Builtin(_append, 2),
    "concat": Builtin(_concat),
    "contains": Builtin(_contains, 2),
    "available": Builtin(_available, 1),
    "first_available": Builtin(_first_available),
    "count_available": Builtin(_count_available),
}


def call_builtin(name: str, args: List[Any]) -> Any:
    return BUILTINS[name].fn(*args)
