"""
Integer-cent arithmetic.

All monetary values are stored and computed as integer cents. Rates are
basis points (1 bps = 0.01%). Division rounds to the nearest cent, half-up,
so the same inputs always produce the same stored amount.
"""

from __future__ import annotations

BPS_DENOMINATOR = 10_000


def apply_bps(amount_cents: int, rate_bps: int) -> int:
    """Return amount_cents * rate_bps / 10000 rounded half-up."""
    if amount_cents < 0 or rate_bps < 0:
        raise ValueError("amount and rate must be non-negative")
    numerator = amount_cents * rate_bps
    return (numerator + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR
