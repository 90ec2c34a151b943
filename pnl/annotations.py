"""Typed annotation (``@name=value``) and directive (``#KEY=value``) values.

Known annotations are checked against their domain while parsing so that a
malformed program is rejected before any capability call happens.
"""

from __future__ import annotations
import re
from typing import Any, Callable, Dict, Optional, Tuple

from .ast import Annotation, OnFail, SourcePos
from .errors import ParseError

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def parse_duration(text: str) -> float:
    """Parse ``500ms``, ``30s``, ``2m``, ``1h`` or a bare number of seconds."""
    m = _DURATION_RE.match(text.strip())
    if not m:
        raise ValueError(f"invalid duration {text!r}")
    return float(m.group(1)) * _UNIT_SECONDS[m.group(2)]


def _probability(raw: str) -> float:
    value = float(raw)
    if not 0.0 <= value <= 1.0:
        raise ValueError(raw)
    return value


def _count(raw: str) -> int:
    if not raw.isdigit():
        raise ValueError(raw)
    return int(raw)


def _positive(raw: str) -> int:
    value = _count(raw)
    if value == 0:
        raise ValueError(raw)
    return value


def _on_fail(raw: str) -> OnFail:
    return OnFail(raw.lower())


def _opaque(raw: str) -> Any:
    if _NUMBER_RE.match(raw):
        return float(raw) if "." in raw else int(raw)
    if raw in ("true", "false"):
        return raw == "true"
    return raw


# name -> (checker, human readable domain)
ANNOTATION_TYPES: Dict[str, Tuple[Callable[[str], Any], str]] = {
    "p": (_probability, "probability in [0, 1]"),
    "timeout": (parse_duration, "non-negative duration"),
    "retries": (_count, "non-negative integer"),
    "on_fail": (_on_fail, "one of " + ", ".join(o.value for o in OnFail)),
    "label": (str, "text"),
}

DIRECTIVE_TYPES: Dict[str, Tuple[Callable[[str], Any], str]] = {
    "DOMAIN": (lambda raw: tuple(p.strip() for p in raw.split(",") if p.strip()), "comma separated domain names"),
    "RETRIES": (_count, "non-negative integer"),
    "TIMEOUT": (parse_duration, "non-negative duration"),
    "MAX_ITERATIONS": (_positive, "positive integer"),
}


def parse_annotation(text: str, pos: Optional[SourcePos] = None) -> Annotation:
    name, raw = text[1:].split("=", 1)
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        raw = raw[1:-1]
    spec = ANNOTATION_TYPES.get(name)
    if spec is None:
        return Annotation(name=name, value=_opaque(raw), raw=raw, pos=pos or SourcePos(0, 0))
    checker, domain = spec
    try:
        value = checker(raw)
    except ValueError:
        raise ParseError(f"@{name} as {domain}", repr(raw), pos) from None
    return Annotation(name=name, value=value, raw=raw, pos=pos or SourcePos(0, 0))


def parse_directive(text: str, pos: Optional[SourcePos] = None) -> Tuple[str, Any, str]:
    key, raw = text[1:].split("=", 1)
    key = key.strip()
    raw = raw.split("//", 1)[0].strip()
    spec = DIRECTIVE_TYPES.get(key.upper())
    if spec is None:
        return key, raw, raw
    checker, domain = spec
    try:
        value = checker(raw)
    except ValueError:
        raise ParseError(f"#{key} as {domain}", repr(raw), pos) from None
    if key.upper() == "DOMAIN" and not value:
        raise ParseError(f"#{key} as {domain}", repr(raw), pos)
    return key.upper(), value, raw
