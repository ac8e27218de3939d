"""Cart money arithmetic."""

import pytest

from pos_sim import money
from pos_sim.snapshot import Cart, CartItem


def _item(line_no, unit_price, qty, vat_rate):
    return CartItem(
        line_no=line_no, name=f"item {line_no}", qty=qty, unit_price=unit_price, vat_rate=vat_rate
    )


def test_single_item_example():
    """1.20 at 23% VAT rounds the VAT half-up to 0.28."""
    cart = Cart().with_items([_item(1, 1.20, 1, 0.23)])
    line = cart.items[0]
    assert line.line_total == 1.20
    assert line.vat_amount == 0.28
    assert cart.subtotal == 1.20
    assert cart.vat_total == 0.28
    assert cart.total == 1.48


@pytest.mark.parametrize(
    "lines",
    [
        [(0.10, 3, 0.23), (0.20, 7, 0.06)],
        [(19.99, 2, 0.23), (0.01, 1, 0.0), (4.555, 3, 0.13)],
        [(2.675, 1, 0.21)],
    ],
)
def test_totals_are_recomputed_from_lines(lines):
    cart = Cart().with_items([_item(i + 1, *line) for i, line in enumerate(lines)])
    assert cart.subtotal == money.round2(sum(item.line_total for item in cart.items))
    assert cart.vat_total == money.round2(sum(item.vat_amount for item in cart.items))
    assert cart.total == money.round2(cart.subtotal + cart.vat_total)


def test_round2_is_half_up_on_cents():
    assert money.round2(0.125) == 0.13
    assert money.round2(2.675) == 2.68
    assert money.round2(None) == 0.0


def test_whole_number_vat_rate_is_a_percentage():
    assert money.normalize_vat_rate(23) == 0.23
    assert money.normalize_vat_rate(0.23) == 0.23
    assert money.line_amounts(10, 1, 23) == (10.0, 2.3)


def test_missing_vat_rate_means_no_vat():
    assert money.line_amounts(3.5, 2, None) == (7.0, 0.0)


def test_to_cents():
    assert money.to_cents(1.48) == 148
    assert money.to_cents(0.005) == 1


def test_cart_rejects_duplicate_line_numbers():
    with pytest.raises(ValueError):
        Cart(items=[_item(1, 1, 1, 0), _item(1, 2, 1, 0)])
