from __future__ import annotations
from enum import Enum
from typing import Any, Iterable, Optional

from .ast import SourcePos, NO_POS


class PNLError(Exception):
    pass


class CompileError(PNLError):
    """Base for errors that reject a program before any external call is made."""

    def __init__(self, message: str, position: Optional[SourcePos] = None):
        self.position = position or NO_POS
        super().__init__(f"{message} at {self.position}" if position else message)

    @property
    def line(self) -> int:
        return self.position.line

    @property
    def column(self) -> int:
        return self.position.column


class LexError(CompileError):
    def __init__(self, position: SourcePos, char: str):
        self.char = char
        super().__init__(f"Unexpected character {char!r}", position)


class ParseError(CompileError):
    def __init__(self, expected: Iterable[str] | str, found: str, position: Optional[SourcePos] = None):
        if isinstance(expected, str):
            self.expected = (expected,)
        else:
            self.expected = tuple(sorted(expected))
        self.found = found
        wanted = self.expected[0] if len(self.expected) == 1 else "one of " + ", ".join(self.expected)
        super().__init__(f"Expected {wanted}, found {found}", position)


class BindErrorReason(str, Enum):
    UNDEFINED_SYMBOL = "undefined-symbol"
    DOMAIN_CONFLICT = "domain-conflict"
    UNKNOWN_DOMAIN = "unknown-domain"
    NOT_CALLABLE = "not-callable"
    ARITY_MISMATCH = "arity-mismatch"
    DUPLICATE_DEFINITION = "duplicate-definition"
    MISPLACED_STATEMENT = "misplaced-statement"


class BindError(CompileError):
    def __init__(self, symbol: str, reason: BindErrorReason, position: Optional[SourcePos] = None, detail: str = ""):
        self.symbol = symbol
        self.reason = reason
        self.detail = detail
        text = f"{reason.value}: '{symbol}'"
        if detail:
            text += f" ({detail})"
        super().__init__(text, position)


class InternalInvariantError(PNLError):
    """Engine bug: inconsistent IR or frame stack. Never recovered."""


class LowerError(InternalInvariantError):
    pass


class ExecutionCancelled(PNLError):
    """Raised inside a branch whose fork no longer needs its result."""


class ProviderError(PNLError):
    """Raised by capability providers; surfaces to programs as a CallFailure."""


class SchemaValidationError(ProviderError):
    """Raised when a provider response fails schema validation."""


class ProgramFailure(PNLError):
    """Raised by ``ProgramResult.unwrap()`` when a run ended in an unhandled failure."""

    def __init__(self, report: Any):
        self.report = report
        super().__init__(f"{report.kind}: {report.message} (line {report.line}, column {report.column})")
