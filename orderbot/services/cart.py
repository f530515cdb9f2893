from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from orderbot.services.catalog import MenuItem
from orderbot.services.errors import InvalidQuantity, LineNotFound, QuantityExceedsMax

MAX_ITEM_QUANTITY = 20
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CartLine:
    item_id: str
    name: str
    unit_price: Decimal  # snapshot taken when the line was added
    quantity: int
    currency: str = "SAR"

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        return cls(
            item_id=data["item_id"],
            name=data["name"],
            unit_price=Decimal(str(data["unit_price"])),
            quantity=int(data["quantity"]),
            currency=data.get("currency", "SAR"),
        )


def _check_quantity(quantity, max_quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantity(quantity, max_quantity)
    if quantity < 1 or quantity > max_quantity:
        raise InvalidQuantity(quantity, max_quantity)
    return quantity


def add_line(
    cart: list[CartLine], item: MenuItem, quantity: int, max_quantity: int = MAX_ITEM_QUANTITY
) -> list[CartLine]:
    """Return a new cart with quantity units of item merged in.

    A second add for the same item sums into the existing line. If the sum
    would pass max_quantity the whole addition is refused and the cart is
    left as it was.
    """
    _check_quantity(quantity, max_quantity)

    for index, line in enumerate(cart):
        if line.item_id != item.id:
            continue
        merged = line.quantity + quantity
        if merged > max_quantity:
            raise QuantityExceedsMax(item.id, quantity, line.quantity, max_quantity)
        updated = list(cart)
        updated[index] = replace(line, quantity=merged)
        return updated

    new_line = CartLine(
        item_id=item.id,
        name=item.name,
        unit_price=item.price,
        quantity=quantity,
        currency=item.currency,
    )
    return [*cart, new_line]


def remove_line(
    cart: list[CartLine], item_id: Optional[str] = None, index: Optional[int] = None
) -> list[CartLine]:
    """Remove exactly one line, addressed by item id or by zero-based position."""
    if item_id is not None:
        for position, line in enumerate(cart):
            if line.item_id == item_id:
                return cart[:position] + cart[position + 1:]
        raise LineNotFound(item_id=item_id)

    if index is not None and 0 <= index < len(cart):
        return cart[:index] + cart[index + 1:]
    raise LineNotFound(index=index)


def set_quantity(line: CartLine, quantity: int, max_quantity: int = MAX_ITEM_QUANTITY) -> CartLine:
    _check_quantity(quantity, max_quantity)
    return replace(line, quantity=quantity)


def total(cart: list[CartLine]) -> Decimal:
    amount = sum((line.subtotal for line in cart), Decimal("0"))
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    """20.00 -> "20", 18.50 -> "18.50"."""
    quantized = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
    if quantized == quantized.to_integral_value():
        return str(quantized.quantize(Decimal("1")))
    return str(quantized)


def format_cart(cart: list[CartLine]) -> str:
    if not cart:
        return ""
    currency = cart[0].currency
    lines = [
        f"{index}. {line.name} x{line.quantity} - {format_amount(line.subtotal)} {line.currency}"
        for index, line in enumerate(cart, start=1)
    ]
    lines.append(f"Total: {format_amount(total(cart))} {currency}")
    return "\n".join(lines)
