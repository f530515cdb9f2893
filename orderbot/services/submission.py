import asyncio
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from orderbot.logging_config import get_logger
from orderbot.services.cart import CartLine
from orderbot.services.session_state import Location, OrderType, PaymentMethod, SelectedBranch
from orderbot.services.tenant import TenantContext

logger = get_logger("submission")

_BASE36 = string.digits + string.ascii_uppercase


class SubmissionStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    BACKEND_ERROR = "backend_error"
    TIMEOUT = "timeout"


class RejectionReason(str, Enum):
    CONFIG_MISSING = "CONFIG_MISSING"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    MERCHANT_NOT_CONFIGURED = "MERCHANT_NOT_CONFIGURED"
    NO_BRANCH_SELECTED = "NO_BRANCH_SELECTED"
    MISSING_LOCATION = "MISSING_LOCATION"
    INVALID_ITEMS = "INVALID_ITEMS"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"
    MISSING_PAYMENT_METHOD = "MISSING_PAYMENT_METHOD"
    MISSING_ORDER_TYPE = "MISSING_ORDER_TYPE"
    CUSTOMER_INFO_MISSING = "CUSTOMER_INFO_MISSING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, code: Optional[str]) -> "RejectionReason":
        try:
            return cls(str(code).upper())
        except ValueError:
            return cls.UNKNOWN


RETRYABLE_STATUSES = {SubmissionStatus.BACKEND_ERROR, SubmissionStatus.TIMEOUT}


@dataclass
class SubmissionResult:
    status: SubmissionStatus
    reason: Optional[RejectionReason] = None
    order_number: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SubmissionStatus.SUCCESS

    @staticmethod
    def success(order_number: str) -> "SubmissionResult":
        return SubmissionResult(status=SubmissionStatus.SUCCESS, order_number=order_number)

    @staticmethod
    def rejected(reason: RejectionReason, detail: Optional[str] = None) -> "SubmissionResult":
        return SubmissionResult(status=SubmissionStatus.REJECTED, reason=reason, detail=detail)

    @staticmethod
    def backend_error(detail: Optional[str] = None) -> "SubmissionResult":
        return SubmissionResult(status=SubmissionStatus.BACKEND_ERROR, detail=detail)

    @staticmethod
    def timeout(detail: Optional[str] = None) -> "SubmissionResult":
        return SubmissionResult(status=SubmissionStatus.TIMEOUT, detail=detail)


@dataclass(frozen=True)
class MaterializedOrder:
    reference: str
    tenant_id: str
    customer_key: str
    order_type: Optional[OrderType]
    payment_method: Optional[PaymentMethod]
    lines: list[CartLine] = field(default_factory=list)
    total: Decimal = Decimal("0")
    currency: str = "SAR"
    branch: Optional[SelectedBranch] = None
    location: Optional[Location] = None

    def to_payload(self) -> dict:
        payload = {
            "reference": self.reference,
            "merchantId": self.tenant_id,
            "customerPhone": f"+{self.customer_key}",
            "orderType": self.order_type.value if self.order_type else None,
            "paymentMethod": self.payment_method.value if self.payment_method else None,
            "items": [
                {"productId": line.item_id, "quantity": line.quantity, "notes": "", "addons": []}
                for line in self.lines
            ],
            "total": str(self.total),
            "currency": self.currency,
        }
        if self.branch is not None:
            payload["branchId"] = self.branch.id
        if self.location is not None:
            payload["location"] = {
                "latitude": self.location.latitude,
                "longitude": self.location.longitude,
                "address": self.location.address,
            }
        return payload


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def new_order_reference(now: datetime) -> str:
    """ORD-<ms timestamp base36>-<5 random chars>; doubles as the idempotency key."""
    stamp = _to_base36(int(now.timestamp() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"ORD-{stamp}-{suffix}"


class SubmissionBackend(ABC):
    @abstractmethod
    async def submit_order(
        self, tenant_id: str, order: MaterializedOrder, payment_method: PaymentMethod
    ) -> SubmissionResult:
        pass


class HttpSubmissionBackend(SubmissionBackend):
    """Order API client. 4xx is a rejection, 5xx and transport errors are backend errors."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def submit_order(
        self, tenant_id: str, order: MaterializedOrder, payment_method: PaymentMethod
    ) -> SubmissionResult:
        headers = {"Accept": "application/json", "Idempotency-Key": order.reference}
        if self.api_key:
            headers["Authorization"] = self.api_key
        payload = {**order.to_payload(), "paymentMethod": payment_method.value}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/orders", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            return SubmissionResult.timeout(str(exc) or "timeout")
        except httpx.HTTPError as exc:
            return SubmissionResult.backend_error(str(exc))

        if response.status_code >= 500:
            return SubmissionResult.backend_error(f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            return SubmissionResult.rejected(
                RejectionReason.parse(data.get("code")),
                detail=data.get("message") or f"HTTP {response.status_code}",
            )

        order_number = data.get("orderNumber") or data.get("order_number") or data.get("id")
        return SubmissionResult.success(str(order_number or order.reference))


class InMemorySubmissionBackend(SubmissionBackend):
    """Accepts every order and numbers it locally. Replays of a reference get the same number."""

    def __init__(self, first_order_number: int = 1000):
        self._next_number = first_order_number
        self.orders: dict[str, tuple[str, MaterializedOrder]] = {}

    async def submit_order(
        self, tenant_id: str, order: MaterializedOrder, payment_method: PaymentMethod
    ) -> SubmissionResult:
        known = self.orders.get(order.reference)
        if known is not None:
            return SubmissionResult.success(known[0])
        order_number = str(self._next_number)
        self._next_number += 1
        self.orders[order.reference] = (order_number, order)
        logger.info(
            "Order accepted locally",
            extra={"context": {"tenant_id": tenant_id, "reference": order.reference, "order_number": order_number}},
        )
        return SubmissionResult.success(order_number)


def precheck(order: MaterializedOrder, tenant: TenantContext) -> Optional[RejectionReason]:
    """Reasons the backend would refuse the order, checked before calling it."""
    if not order.customer_key:
        return RejectionReason.CUSTOMER_INFO_MISSING
    if order.order_type is None:
        return RejectionReason.MISSING_ORDER_TYPE
    if order.order_type == OrderType.PICKUP and order.branch is None:
        return RejectionReason.NO_BRANCH_SELECTED
    if order.order_type == OrderType.DELIVERY and order.location is None:
        return RejectionReason.MISSING_LOCATION
    if not order.lines or any(line.quantity < 1 for line in order.lines):
        return RejectionReason.INVALID_ITEMS
    if order.payment_method is None:
        return RejectionReason.MISSING_PAYMENT_METHOD
    if order.total < tenant.min_order_total:
        return RejectionReason.MIN_ORDER_NOT_MET
    return None


class SubmissionCoordinator:
    """Runs one order submission to completion and always returns a classified result."""

    def __init__(
        self,
        backend: SubmissionBackend,
        timeout_seconds: float = 10.0,
        max_attempts: int = 2,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    async def _attempt(self, tenant_id: str, order: MaterializedOrder) -> SubmissionResult:
        try:
            return await asyncio.wait_for(
                self.backend.submit_order(tenant_id, order, order.payment_method),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return SubmissionResult.timeout(f"no answer within {self.timeout_seconds}s")
        except Exception as exc:
            logger.exception(
                "Submission backend raised",
                extra={"context": {"tenant_id": tenant_id, "reference": order.reference}},
            )
            return SubmissionResult.backend_error(str(exc))

    async def submit(self, tenant: TenantContext, order: MaterializedOrder) -> SubmissionResult:
        log_context = {
            "tenant_id": tenant.tenant_id,
            "customer_key": order.customer_key,
            "reference": order.reference,
        }

        reason = precheck(order, tenant)
        if reason is not None:
            logger.info(
                "Submission rejected before sending",
                extra={"context": {**log_context, "reason": reason.value}},
            )
            return SubmissionResult.rejected(reason)

        result = SubmissionResult.backend_error("not attempted")
        for attempt in range(1, self.max_attempts + 1):
            result = await self._attempt(tenant.tenant_id, order)
            if result.status not in RETRYABLE_STATUSES:
                break
            logger.warning(
                "Submission attempt failed",
                extra={
                    "context": {
                        **log_context,
                        "attempt": attempt,
                        "status": result.status.value,
                        "detail": result.detail,
                    }
                },
            )
            if attempt < self.max_attempts:
                await self._sleep(self.retry_backoff_seconds * attempt)

        logger.info(
            "Submission finished",
            extra={
                "context": {
                    **log_context,
                    "status": result.status.value,
                    "reason": result.reason.value if result.reason else None,
                    "order_number": result.order_number,
                }
            },
        )
        return result
