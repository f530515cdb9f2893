from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from orderbot.services.cart import MAX_ITEM_QUANTITY, CartLine


class Stage(str, Enum):
    IDLE = "idle"
    AWAITING_ORDER_TYPE = "awaiting_order_type"
    AWAITING_LOCATION = "awaiting_location"
    AWAITING_BRANCH = "awaiting_branch"
    BROWSING_CATEGORIES = "browsing_categories"
    BROWSING_ITEMS = "browsing_items"
    AWAITING_QUANTITY = "awaiting_quantity"
    CART_REVIEW = "cart_review"
    CHECKOUT = "checkout"
    AWAITING_PAYMENT = "awaiting_payment"
    SUBMITTING = "submitting"
    POST_SUBMISSION = "post_submission"
    MANUAL_HANDOFF = "manual_handoff"  # synthetic merchant, humans take orders
    DISABLED = "disabled"  # bot switched off, messages are logged only


# Stages in which an order is being composed.
BUILDING_STAGES = {
    Stage.AWAITING_ORDER_TYPE,
    Stage.AWAITING_LOCATION,
    Stage.AWAITING_BRANCH,
    Stage.BROWSING_CATEGORIES,
    Stage.BROWSING_ITEMS,
    Stage.AWAITING_QUANTITY,
    Stage.CART_REVIEW,
    Stage.CHECKOUT,
    Stage.AWAITING_PAYMENT,
}
RESTING_STAGES = {Stage.IDLE, Stage.POST_SUBMISSION}
ABSORBING_STAGES = {Stage.MANUAL_HANDOFF, Stage.DISABLED}
# Stages that need a complete fulfilment target (order type + branch/location).
FULFILLMENT_STAGES = {Stage.CHECKOUT, Stage.AWAITING_PAYMENT, Stage.SUBMITTING}


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online"


class PickerKind(str, Enum):
    BRANCHES = "branches"
    CATEGORIES = "categories"
    ITEMS = "items"
    REMOVE_ITEM = "remove_item"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        return -90 <= self.latitude <= 90 and -180 <= self.longitude <= 180


@dataclass
class Location:
    latitude: float
    longitude: float
    address: str | None = None


@dataclass
class SelectedBranch:
    id: str
    name: str
    address: str | None = None


@dataclass
class PendingItem:
    item_id: str
    name: str
    unit_price: Decimal
    currency: str
    category_id: str | None = None
    image_url: str | None = None


@dataclass
class PickerRow:
    id: str
    title: str
    description: str | None = None


@dataclass
class PickerContext:
    """The list picker last shown, kept so it can be re-sent and matched against."""

    kind: PickerKind
    page: int = 1
    total_pages: int = 1
    category_id: str | None = None
    category_name: str | None = None
    rows: list[PickerRow] = field(default_factory=list)


@dataclass
class SessionFlags:
    first_contact_seen: bool = False
    handoff_greeted: bool = False


@dataclass
class LastOrder:
    order_number: str
    order_type: OrderType
    fulfillment: str  # delivery address or pickup branch, as shown to the customer
    submitted_at: datetime


@dataclass
class ConversationSession:
    tenant_id: str
    customer_key: str
    stage: Stage = Stage.IDLE
    order_type: Optional[OrderType] = None
    branch: Optional[SelectedBranch] = None
    location: Optional[Location] = None
    pending_item: Optional[PendingItem] = None
    cart: list[CartLine] = field(default_factory=list)
    last_picker: Optional[PickerContext] = None
    payment_method: Optional[PaymentMethod] = None
    flags: SessionFlags = field(default_factory=SessionFlags)
    last_order: Optional[LastOrder] = None
    last_message_at: Optional[datetime] = None
    submitting_since: Optional[datetime] = None
    submission_reference: Optional[str] = None
    version: int = 0
    generation: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.customer_key)

    def clear_order(self) -> None:
        """Drop everything about the order in progress; identity and history stay."""
        self.order_type = None
        self.branch = None
        self.location = None
        self.pending_item = None
        self.cart = []
        self.last_picker = None
        self.payment_method = None
        self.submitting_since = None
        self.submission_reference = None

    def reset_order(self) -> None:
        """Start over: clear the order and invalidate in-flight work for the old one."""
        self.clear_order()
        self.generation += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "customer_key": self.customer_key,
            "stage": self.stage.value,
            "order_type": self.order_type.value if self.order_type else None,
            "branch": _dump(self.branch),
            "location": _dump(self.location),
            "pending_item": (
                {**_dump(self.pending_item), "unit_price": str(self.pending_item.unit_price)}
                if self.pending_item
                else None
            ),
            "cart": [line.to_dict() for line in self.cart],
            "last_picker": (
                {
                    "kind": self.last_picker.kind.value,
                    "page": self.last_picker.page,
                    "total_pages": self.last_picker.total_pages,
                    "category_id": self.last_picker.category_id,
                    "category_name": self.last_picker.category_name,
                    "rows": [_dump(row) for row in self.last_picker.rows],
                }
                if self.last_picker
                else None
            ),
            "payment_method": self.payment_method.value if self.payment_method else None,
            "flags": _dump(self.flags),
            "last_order": (
                {
                    "order_number": self.last_order.order_number,
                    "order_type": self.last_order.order_type.value,
                    "fulfillment": self.last_order.fulfillment,
                    "submitted_at": self.last_order.submitted_at.isoformat(),
                }
                if self.last_order
                else None
            ),
            "last_message_at": _iso(self.last_message_at),
            "submitting_since": _iso(self.submitting_since),
            "submission_reference": self.submission_reference,
            "version": self.version,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationSession":
        pending = data.get("pending_item")
        picker = data.get("last_picker")
        last_order = data.get("last_order")
        return cls(
            tenant_id=data["tenant_id"],
            customer_key=data["customer_key"],
            stage=Stage(data.get("stage", Stage.IDLE.value)),
            order_type=OrderType(data["order_type"]) if data.get("order_type") else None,
            branch=SelectedBranch(**data["branch"]) if data.get("branch") else None,
            location=Location(**data["location"]) if data.get("location") else None,
            pending_item=(
                PendingItem(**{**pending, "unit_price": Decimal(str(pending["unit_price"]))})
                if pending
                else None
            ),
            cart=[CartLine.from_dict(line) for line in data.get("cart") or []],
            last_picker=(
                PickerContext(
                    kind=PickerKind(picker["kind"]),
                    page=picker.get("page", 1),
                    total_pages=picker.get("total_pages", 1),
                    category_id=picker.get("category_id"),
                    category_name=picker.get("category_name"),
                    rows=[PickerRow(**row) for row in picker.get("rows") or []],
                )
                if picker
                else None
            ),
            payment_method=PaymentMethod(data["payment_method"]) if data.get("payment_method") else None,
            flags=SessionFlags(**(data.get("flags") or {})),
            last_order=(
                LastOrder(
                    order_number=last_order["order_number"],
                    order_type=OrderType(last_order["order_type"]),
                    fulfillment=last_order["fulfillment"],
                    submitted_at=datetime.fromisoformat(last_order["submitted_at"]),
                )
                if last_order
                else None
            ),
            last_message_at=_parse_iso(data.get("last_message_at")),
            submitting_since=_parse_iso(data.get("submitting_since")),
            submission_reference=data.get("submission_reference"),
            version=int(data.get("version", 0)),
            generation=int(data.get("generation", 0)),
        )

    def copy(self) -> "ConversationSession":
        return ConversationSession.from_dict(self.to_dict())


def _dump(value) -> Optional[dict]:
    if value is None:
        return None
    return dict(value.__dict__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def has_fulfillment_target(session: ConversationSession) -> bool:
    if session.order_type == OrderType.DELIVERY:
        return session.location is not None
    if session.order_type == OrderType.PICKUP:
        return session.branch is not None
    return False


def check_invariants(session: ConversationSession, max_quantity: int = MAX_ITEM_QUANTITY) -> list[str]:
    """Return the names of violated invariants. Empty list means OK."""
    violations = []

    if not isinstance(session.stage, Stage):
        violations.append("stage_not_in_closed_set")

    if session.stage == Stage.AWAITING_QUANTITY and session.pending_item is None:
        violations.append("awaiting_quantity_without_pending_item")

    if session.pending_item is not None and session.stage != Stage.AWAITING_QUANTITY:
        violations.append("pending_item_outside_quantity_stage")

    if session.stage in FULFILLMENT_STAGES:
        if session.order_type is None:
            violations.append("checkout_without_order_type")
        elif not has_fulfillment_target(session):
            violations.append("checkout_without_fulfillment_target")
        if not session.cart:
            violations.append("checkout_with_empty_cart")

    if session.stage == Stage.SUBMITTING:
        if session.payment_method is None:
            violations.append("submitting_without_payment_method")
        if not session.submission_reference:
            violations.append("submitting_without_reference")

    if session.stage == Stage.BROWSING_ITEMS and (
        session.last_picker is None or session.last_picker.category_id is None
    ):
        violations.append("browsing_items_without_category")

    if session.stage in RESTING_STAGES and (session.cart or session.order_type is not None):
        violations.append("resting_stage_with_order_in_progress")

    for line in session.cart:
        if line.quantity < 1 or line.quantity > max_quantity:
            violations.append("cart_quantity_out_of_range")
            break

    item_ids = [line.item_id for line in session.cart]
    if len(item_ids) != len(set(item_ids)):
        violations.append("duplicate_cart_lines")

    return violations
