"""
Call policies wrap every provider invocation.

A policy sees the request before it reaches the provider and may answer it
itself (``PolicyHit``) or deny it by raising ``ProviderError``; denials become
ordinary CallFailures. ``after_call`` observes successful results.
"""

from __future__ import annotations
import json
import threading
from typing import Any, Dict, NamedTuple, Optional, Tuple

from loguru import logger

from .errors import ProviderError
from .providers import CallRequest


class PolicyHit(NamedTuple):
    value: Any


class CallPolicy:
    name = "policy"

    def before_call(self, request: CallRequest) -> Optional[PolicyHit]:
        return None

    def after_call(self, request: CallRequest, value: Any) -> None:
        return None

    def reset(self) -> None:
        """Forget per-run state."""


class CachePolicy(CallPolicy):
    """Memoize provider results by (domain, function, args)."""
    name = "cache"

    def __init__(self):
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, str, str], Any] = {}
        self.hits = 0

    @staticmethod
    def _key(request: CallRequest) -> Tuple[str, str, str]:
        return (request.domain or "", request.function, json.dumps(request.args, default=repr, sort_keys=True))

    def before_call(self, request: CallRequest) -> Optional[PolicyHit]:
        key = self._key(request)
        with self._lock:
            if key in self._cache:
                self.hits += 1
                logger.debug(f"[cache] hit {request.qualified_name}")
                return PolicyHit(self._cache[key])
        return None

    def after_call(self, request: CallRequest, value: Any) -> None:
        with self._lock:
            self._cache[self._key(request)] = value

    def reset(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0


class BudgetPolicy(CallPolicy):
    """Deny provider calls once ``max_calls`` have been made in a run."""
    name = "budget"

    def __init__(self, max_calls: int):
        if max_calls < 0:
            raise ValueError("max_calls must be non-negative")
        self.max_calls = max_calls
        self.used = 0
        self._lock = threading.Lock()

    def before_call(self, request: CallRequest) -> Optional[PolicyHit]:
        with self._lock:
            if self.used >= self.max_calls:
                raise ProviderError(f"call budget of {self.max_calls} exhausted at {request.qualified_name}")
            self.used += 1
        return None

    def reset(self) -> None:
        with self._lock:
            self.used = 0
