"""
Money arithmetic for carts.

Every amount is rounded to cents (half-up) after each step, and cart totals
are always recomputed from the line items instead of being accumulated.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def round2(value) -> float:
    """Round to 2 decimals with half-up semantics on cents."""
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def normalize_vat_rate(rate) -> float:
    """
    VAT rates are fractions (0.23). Whole-number percentages (23) are accepted
    and converted, since receipt payloads from real terminals often use them.
    """
    value = to_decimal(rate)
    if value > 1:
        value = value / Decimal("100")
    return float(value)


def line_amounts(unit_price, qty: int, vat_rate) -> tuple[float, float]:
    """Return (line_total, vat_amount) for one cart line."""
    line_total = to_decimal(round2(to_decimal(unit_price) * qty))
    vat_amount = round2(line_total * to_decimal(normalize_vat_rate(vat_rate)))
    return float(line_total), vat_amount


def cart_totals(lines) -> tuple[float, float, float]:
    """
    Return (subtotal, vat_total, total) for an iterable of
    (line_total, vat_amount) pairs.
    """
    subtotal = Decimal("0")
    vat_total = Decimal("0")
    for line_total, vat_amount in lines:
        subtotal += to_decimal(line_total)
        vat_total += to_decimal(vat_amount)
    subtotal_r = round2(subtotal)
    vat_total_r = round2(vat_total)
    return subtotal_r, vat_total_r, round2(to_decimal(subtotal_r) + to_decimal(vat_total_r))


def to_cents(amount) -> int:
    return int(to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100)
