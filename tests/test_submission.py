import asyncio
import json
import re
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from orderbot.services.cart import CartLine
from orderbot.services.session_state import Location, OrderType, PaymentMethod, SelectedBranch
from orderbot.services.submission import (
    HttpSubmissionBackend,
    InMemorySubmissionBackend,
    MaterializedOrder,
    RejectionReason,
    SubmissionCoordinator,
    SubmissionResult,
    SubmissionStatus,
    new_order_reference,
    precheck,
)


def _order(**overrides) -> MaterializedOrder:
    fields = dict(
        reference="ORD-TEST-AAAAA",
        tenant_id="t1",
        customer_key="966500000001",
        order_type=OrderType.PICKUP,
        payment_method=PaymentMethod.CASH,
        lines=[CartLine("cola", "Cola", Decimal("6"), 2)],
        total=Decimal("12.00"),
        currency="SAR",
        branch=SelectedBranch("B1", "Olaya Branch"),
    )
    fields.update(overrides)
    return MaterializedOrder(**fields)


def _http_backend(handler) -> HttpSubmissionBackend:
    return HttpSubmissionBackend("https://orders.test/api/", "secret", transport=httpx.MockTransport(handler))


def _submit(backend, order=None):
    order = order or _order()
    return asyncio.run(backend.submit_order("t1", order, order.payment_method))


class TestOrderReference:
    def test_format(self):
        reference = new_order_reference(datetime(2026, 1, 1, tzinfo=timezone.utc))
        assert re.fullmatch(r"ORD-[0-9A-Z]+-[0-9A-Z]{5}", reference)

    def test_unique(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert new_order_reference(now) != new_order_reference(now)


class TestPrecheck:
    def test_complete_order_passes(self, tenant):
        assert precheck(_order(), tenant) is None

    def test_pickup_without_branch(self, tenant):
        assert precheck(_order(branch=None), tenant) == RejectionReason.NO_BRANCH_SELECTED

    def test_delivery_without_location(self, tenant):
        assert precheck(_order(order_type=OrderType.DELIVERY), tenant) == RejectionReason.MISSING_LOCATION

    def test_delivery_with_location(self, tenant):
        order = _order(order_type=OrderType.DELIVERY, branch=None, location=Location(24.7, 46.6, "Olaya"))
        assert precheck(order, tenant) is None

    def test_empty_cart(self, tenant):
        assert precheck(_order(lines=[]), tenant) == RejectionReason.INVALID_ITEMS

    def test_missing_payment_method(self, tenant):
        assert precheck(_order(payment_method=None), tenant) == RejectionReason.MISSING_PAYMENT_METHOD

    def test_missing_order_type(self, tenant):
        assert precheck(_order(order_type=None), tenant) == RejectionReason.MISSING_ORDER_TYPE

    def test_below_minimum(self, tenant):
        assert precheck(_order(), replace(tenant, min_order_total=Decimal("20"))) == RejectionReason.MIN_ORDER_NOT_MET


class TestRejectionReason:
    def test_parse_known(self):
        assert RejectionReason.parse("min_order_not_met") == RejectionReason.MIN_ORDER_NOT_MET

    def test_parse_unknown(self):
        assert RejectionReason.parse("SOMETHING_NEW") == RejectionReason.UNKNOWN
        assert RejectionReason.parse(None) == RejectionReason.UNKNOWN


class TestHttpSubmissionBackend:
    def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["payload"] = json.loads(request.content)
            return httpx.Response(201, json={"orderNumber": "A-77"})

        result = _submit(_http_backend(handler))

        assert result.ok
        assert result.order_number == "A-77"
        assert seen["url"] == "https://orders.test/api/orders"
        assert seen["headers"]["Idempotency-Key"] == "ORD-TEST-AAAAA"
        assert seen["headers"]["Authorization"] == "secret"
        assert seen["payload"]["paymentMethod"] == "cash"
        assert seen["payload"]["customerPhone"] == "+966500000001"
        assert seen["payload"]["branchId"] == "B1"
        assert seen["payload"]["items"] == [{"productId": "cola", "quantity": 2, "notes": "", "addons": []}]

    def test_success_without_number_uses_reference(self):
        result = _submit(_http_backend(lambda request: httpx.Response(200, json={})))
        assert result.order_number == "ORD-TEST-AAAAA"

    def test_client_error_is_rejection(self):
        def handler(request):
            return httpx.Response(422, json={"code": "MIN_ORDER_NOT_MET", "message": "too small"})

        result = _submit(_http_backend(handler))

        assert result.status == SubmissionStatus.REJECTED
        assert result.reason == RejectionReason.MIN_ORDER_NOT_MET
        assert result.detail == "too small"

    def test_client_error_without_body(self):
        result = _submit(_http_backend(lambda request: httpx.Response(400, text="bad")))
        assert result.reason == RejectionReason.UNKNOWN

    def test_server_error(self):
        result = _submit(_http_backend(lambda request: httpx.Response(503)))
        assert result.status == SubmissionStatus.BACKEND_ERROR

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        assert _submit(_http_backend(handler)).status == SubmissionStatus.TIMEOUT

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert _submit(_http_backend(handler)).status == SubmissionStatus.BACKEND_ERROR


class TestInMemorySubmissionBackend:
    def test_numbers_orders(self):
        backend = InMemorySubmissionBackend(first_order_number=500)
        first = _submit(backend)
        second = _submit(backend, _order(reference="ORD-TEST-BBBBB"))
        assert (first.order_number, second.order_number) == ("500", "501")

    def test_replay_returns_same_number(self):
        backend = InMemorySubmissionBackend()
        assert _submit(backend).order_number == _submit(backend).order_number
        assert len(backend.orders) == 1


class TestSubmissionCoordinator:
    def _coordinator(self, backend, **kwargs):
        sleep = AsyncMock()
        return SubmissionCoordinator(backend, sleep=sleep, **kwargs), sleep

    def test_retries_backend_error(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock(
            side_effect=[SubmissionResult.backend_error("HTTP 502"), SubmissionResult.success("1000")]
        )
        coordinator, sleep = self._coordinator(backend, max_attempts=2, retry_backoff_seconds=0.5)

        result = asyncio.run(coordinator.submit(tenant, _order()))

        assert result.ok
        assert backend.submit_order.await_count == 2
        sleep.assert_awaited_once_with(0.5)

    def test_retry_reuses_reference(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock(side_effect=[SubmissionResult.timeout(), SubmissionResult.success("1")])
        coordinator, _sleep = self._coordinator(backend)

        asyncio.run(coordinator.submit(tenant, _order()))

        references = [call.args[1].reference for call in backend.submit_order.await_args_list]
        assert references == ["ORD-TEST-AAAAA", "ORD-TEST-AAAAA"]

    def test_rejection_is_not_retried(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock(return_value=SubmissionResult.rejected(RejectionReason.INVALID_ITEMS))
        coordinator, sleep = self._coordinator(backend, max_attempts=3)

        result = asyncio.run(coordinator.submit(tenant, _order()))

        assert result.status == SubmissionStatus.REJECTED
        assert backend.submit_order.await_count == 1
        sleep.assert_not_awaited()

    def test_gives_up_after_max_attempts(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock(return_value=SubmissionResult.backend_error("down"))
        coordinator, sleep = self._coordinator(backend, max_attempts=3, retry_backoff_seconds=1.0)

        result = asyncio.run(coordinator.submit(tenant, _order()))

        assert result.status == SubmissionStatus.BACKEND_ERROR
        assert backend.submit_order.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    def test_backend_exception_becomes_backend_error(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock(side_effect=RuntimeError("boom"))
        coordinator, _sleep = self._coordinator(backend, max_attempts=1)

        result = asyncio.run(coordinator.submit(tenant, _order()))

        assert result.status == SubmissionStatus.BACKEND_ERROR
        assert "boom" in result.detail

    def test_slow_backend_times_out(self, tenant):
        class SlowBackend:
            async def submit_order(self, tenant_id, order, payment_method):
                await asyncio.sleep(1)
                return SubmissionResult.success("late")

        coordinator, _sleep = self._coordinator(SlowBackend(), timeout_seconds=0.01, max_attempts=1)

        result = asyncio.run(coordinator.submit(tenant, _order()))

        assert result.status == SubmissionStatus.TIMEOUT

    def test_precheck_failure_skips_backend(self, tenant):
        backend = Mock()
        backend.submit_order = AsyncMock()
        coordinator, _sleep = self._coordinator(backend)

        result = asyncio.run(coordinator.submit(tenant, _order(lines=[])))

        assert result.reason == RejectionReason.INVALID_ITEMS
        backend.submit_order.assert_not_awaited()


@pytest.mark.parametrize(
    "result, ok",
    [
        (SubmissionResult.success("1"), True),
        (SubmissionResult.rejected(RejectionReason.UNKNOWN), False),
        (SubmissionResult.timeout(), False),
    ],
)
def test_result_ok(result, ok):
    assert result.ok is ok
