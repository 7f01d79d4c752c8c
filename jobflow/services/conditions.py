"""Transition condition interpreter.

A transition's ``condition`` column holds a short expression that is
parsed once into one of two variants:

    Threshold(operator, value)   ">=90", "< 10", "=3.5"
    ExactMatch(text)             anything else; case-insensitive equality

Threshold conditions only match numeric responses; a non-numeric answer
never satisfies them.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from functools import lru_cache

from jobflow.core.exceptions import ValidationError

_THRESHOLD_RE = re.compile(r"^(>=|<=|>|<|=)\s*(-?\d+(?:\.\d+)?)$")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "=": operator.eq,
}


def normalise(value) -> str:
    """Trim and case-fold a response or trigger for comparison."""
    return str(value if value is not None else "").strip().casefold()


def as_number(value) -> float | None:
    raw = str(value if value is not None else "").strip()
    if not _NUMBER_RE.match(raw):
        return None
    return float(raw)


@dataclass(frozen=True)
class ExactMatch:
    text: str

    def matches(self, response_value) -> bool:
        return normalise(response_value) == self.text


@dataclass(frozen=True)
class Threshold:
    operator: str
    value: float

    def matches(self, response_value) -> bool:
        number = as_number(response_value)
        if number is None:
            return False
        return _OPERATORS[self.operator](number, self.value)


Condition = ExactMatch | Threshold


@lru_cache(maxsize=1024)
def parse_condition(raw: str) -> Condition:
    """Parse a condition expression into its variant. Results are cached."""
    text = (raw or "").strip()
    match = _THRESHOLD_RE.match(text)
    if match:
        return Threshold(match.group(1), float(match.group(2)))
    if text.startswith("=") and not text.startswith("=="):
        text = text[1:]
    return ExactMatch(normalise(text))


def validate_condition(raw: str | None) -> str | None:
    """Reject expressions that look like a comparison but do not parse.

    Returns the trimmed expression (or None when empty).

    Raises:
        ValidationError: e.g. for ``">=abc"`` or ``"<ten"``.
    """
    text = (raw or "").strip()
    if not text:
        return None
    if text[0] in "<>" and not _THRESHOLD_RE.match(text):
        raise ValidationError(
            f"Invalid condition {text!r}",
            details={"condition": "Use <, <=, >, >= or = followed by a number"},
        )
    return text
