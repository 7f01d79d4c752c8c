"""
Unit tests for the transition condition interpreter.

Covers:
    1. Parsing into Threshold / ExactMatch variants
    2. Threshold evaluation (numeric only)
    3. Exact-match evaluation (case / whitespace insensitive)
    4. validate_condition rejects malformed comparisons
"""

import pytest

from jobflow.core.exceptions import ValidationError
from jobflow.services.conditions import (
    ExactMatch,
    Threshold,
    as_number,
    normalise,
    parse_condition,
    validate_condition,
)


# ═════════════════════════════════════════════════════════════════════════════
# 1. PARSING
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("raw, expected", [
    (">=90", Threshold(">=", 90.0)),
    ("> 10", Threshold(">", 10.0)),
    ("<= -2.5", Threshold("<=", -2.5)),
    ("=3", Threshold("=", 3.0)),
])
def test_threshold_conditions_parse(raw, expected):
    assert parse_condition(raw) == expected


@pytest.mark.unit
def test_free_text_parses_as_exact_match():
    assert parse_condition("  Approved ") == ExactMatch("approved")


@pytest.mark.unit
def test_leading_equals_on_text_is_stripped():
    assert parse_condition("=Yes") == ExactMatch("yes")


@pytest.mark.unit
def test_parse_is_cached():
    assert parse_condition(">=75") is parse_condition(">=75")


# ═════════════════════════════════════════════════════════════════════════════
# 2. THRESHOLDS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_threshold_boundaries():
    cond = parse_condition(">=90")
    assert cond.matches("90")
    assert cond.matches("92.5")
    assert not cond.matches("85")


@pytest.mark.unit
def test_threshold_never_matches_non_numeric():
    cond = parse_condition(">10")
    assert not cond.matches("eleven")
    assert not cond.matches("")
    assert not cond.matches(None)


# ═════════════════════════════════════════════════════════════════════════════
# 3. EXACT MATCH & HELPERS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_exact_match_ignores_case_and_whitespace():
    cond = parse_condition("Yes")
    assert cond.matches("  yes ")
    assert cond.matches("YES")
    assert not cond.matches("no")


@pytest.mark.unit
def test_helpers():
    assert normalise("  MiXeD ") == "mixed"
    assert normalise(None) == ""
    assert as_number(" 42 ") == 42.0
    assert as_number("4e2") is None


# ═════════════════════════════════════════════════════════════════════════════
# 4. VALIDATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_validate_condition_accepts_and_trims():
    assert validate_condition("  >= 5 ") == ">= 5"
    assert validate_condition("approved") == "approved"
    assert validate_condition("") is None
    assert validate_condition(None) is None


@pytest.mark.unit
@pytest.mark.parametrize("raw", [">=abc", "<ten", "> "])
def test_validate_condition_rejects_malformed_comparisons(raw):
    with pytest.raises(ValidationError) as exc:
        validate_condition(raw)
    assert "condition" in exc.value.details
