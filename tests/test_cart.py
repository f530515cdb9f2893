from decimal import Decimal

import pytest

from orderbot.services.cart import (
    CartLine,
    add_line,
    format_amount,
    format_cart,
    remove_line,
    set_quantity,
    total,
)
from orderbot.services.catalog import MenuItem
from orderbot.services.errors import InvalidQuantity, LineNotFound, QuantityExceedsMax

COLA = MenuItem(id="cola", name="Cola", price=Decimal("6"), category_id="drinks")
BURGER = MenuItem(id="burger", name="Beef Burger", price=Decimal("25"), category_id="main")


class TestAddLine:
    def test_new_line(self):
        cart = add_line([], COLA, 2)
        assert cart == [CartLine("cola", "Cola", Decimal("6"), 2)]

    def test_same_item_merges(self):
        cart = add_line(add_line([], COLA, 2), COLA, 3)
        assert len(cart) == 1
        assert cart[0].quantity == 5

    def test_distinct_items_keep_order(self):
        cart = add_line(add_line([], COLA, 1), BURGER, 1)
        assert [line.item_id for line in cart] == ["cola", "burger"]

    def test_merge_over_max_leaves_cart_unchanged(self):
        cart = add_line([], COLA, 2)
        with pytest.raises(QuantityExceedsMax) as exc_info:
            add_line(cart, COLA, 3, max_quantity=4)
        assert cart[0].quantity == 2
        assert exc_info.value.existing == 2
        assert exc_info.value.remaining == 2

    def test_does_not_mutate_input(self):
        cart = add_line([], COLA, 1)
        add_line(cart, COLA, 1)
        assert cart[0].quantity == 1

    @pytest.mark.parametrize("quantity", [0, -1, 21, True, 1.5, "2"])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(InvalidQuantity):
            add_line([], COLA, quantity)

    def test_max_quantity_is_inclusive(self):
        assert add_line([], COLA, 20)[0].quantity == 20


class TestPriceSnapshot:
    def test_line_keeps_price_seen_when_added(self):
        cart = add_line([], COLA, 2)
        repriced = MenuItem(id="cola", name="Cola", price=Decimal("7"), category_id="drinks")
        cart = add_line(cart, repriced, 1)
        assert cart[0].unit_price == Decimal("6")
        assert total(cart) == Decimal("18.00")


class TestRemoveAndSet:
    def test_remove_by_item_id(self):
        cart = add_line(add_line([], COLA, 1), BURGER, 1)
        assert [line.item_id for line in remove_line(cart, item_id="cola")] == ["burger"]

    def test_remove_by_index(self):
        cart = add_line(add_line([], COLA, 1), BURGER, 1)
        assert [line.item_id for line in remove_line(cart, index=1)] == ["cola"]

    def test_remove_missing_line(self):
        with pytest.raises(LineNotFound):
            remove_line(add_line([], COLA, 1), item_id="burger")

    def test_remove_out_of_range_index(self):
        with pytest.raises(LineNotFound):
            remove_line([], index=0)

    def test_set_quantity(self):
        line = CartLine("cola", "Cola", Decimal("6"), 1)
        assert set_quantity(line, 4).quantity == 4

    def test_set_quantity_rejects_zero(self):
        with pytest.raises(InvalidQuantity):
            set_quantity(CartLine("cola", "Cola", Decimal("6"), 1), 0)


class TestTotals:
    def test_total_of_empty_cart(self):
        assert total([]) == Decimal("0.00")

    def test_total_sums_subtotals(self):
        lemonade = MenuItem(id="lemonade", name="Mint Lemonade", price=Decimal("10.5"), category_id="drinks")
        cart = add_line(add_line([], COLA, 2), lemonade, 1)
        assert total(cart) == Decimal("22.50")

    def test_format_amount(self):
        assert format_amount(Decimal("20.00")) == "20"
        assert format_amount(Decimal("18.5")) == "18.50"

    def test_format_cart(self):
        text = format_cart(add_line([], COLA, 2))
        assert "1. Cola x2 - 12 SAR" in text
        assert text.endswith("Total: 12 SAR")

    def test_line_dict_round_trip(self):
        line = CartLine("cola", "Cola", Decimal("6.25"), 3)
        assert CartLine.from_dict(line.to_dict()) == line
