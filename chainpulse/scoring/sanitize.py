"""Numeric coercion and clamping shared by every component."""

from __future__ import annotations

import math


def finite_or_zero(value) -> float:
    """Coerce None, NaN, infinities and non-numeric values to 0.0."""
    if value is None or isinstance(value, bool):
        return float(value or 0)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def clamp(value, lower: float, upper: float) -> float:
    number = finite_or_zero(value)
    return max(lower, min(upper, number))


def round_half_up(value: float) -> int:
    return int(math.floor(finite_or_zero(value) + 0.5))


def clamp_score(value) -> int:
    """Clamp to [0, 100] and round to an integer score."""
    return round_half_up(clamp(value, 0.0, 100.0))


def safe_ratio(numerator, denominator, default: float = 0.0) -> float:
    den = finite_or_zero(denominator)
    if den == 0:
        return default
    return finite_or_zero(numerator) / den


def growth_rate(current, previous) -> float:
    """Percent change from previous to current.

    A zero previous period counts as 100% growth when anything happened in the
    current period, 0% otherwise.
    """
    cur = finite_or_zero(current)
    prev = finite_or_zero(previous)
    if prev <= 0:
        return 100.0 if cur > 0 else 0.0
    return (cur - prev) / prev * 100.0
