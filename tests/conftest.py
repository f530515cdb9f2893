from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from orderbot.services.catalog import StaticCatalog
from orderbot.services.conversation_engine import ConversationEngine
from orderbot.services.geocoding import DeliveryEligibility
from orderbot.services.intent_service import IntentResolver
from orderbot.services.order_machine import OrderStateMachine
from orderbot.services.session_store import InMemorySessionStore
from orderbot.services.submission import InMemorySubmissionBackend, SubmissionCoordinator
from orderbot.services.tenant import InMemoryTenantRegistry

TENANT_ID = "t1"

TENANT_DATA = {
    TENANT_ID: {
        "name": "Test Diner",
        "support_contact": "+966 11 000 0000",
        "app_link": "https://example.com/app",
        "currency": "SAR",
        "min_order_total": 0,
        "delivery_radius_km": 15,
        "branches": [
            {"id": "B1", "name": "Olaya Branch", "address": "Olaya St", "latitude": 24.6957, "longitude": 46.6854},
            {"id": "B2", "name": "Tuwaiq Branch", "address": "Makkah Rd", "latitude": 24.5861, "longitude": 46.5440},
        ],
        "categories": [
            {
                "id": "drinks",
                "name": "Drinks",
                "items": [
                    {"id": "cola", "name": "Cola", "price": 6},
                    {"id": "water", "name": "Water", "price": 4},
                    {"id": "lemonade", "name": "Mint Lemonade", "price": 10.5},
                ],
            },
            {
                "id": "main",
                "name": "Main Dishes",
                "items": [
                    {"id": "burger", "name": "Beef Burger", "price": 25},
                    {"id": "shawarma", "name": "Chicken Shawarma", "price": 18, "image_url": "https://img/shawarma.jpg"},
                ],
            },
        ],
    },
    "concierge": {"name": "Concierge Cafe", "synthetic_merchant": True},
    "closed": {"name": "Closed Grill", "bot_enabled": False},
}


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def catalog():
    return StaticCatalog(TENANT_DATA)


@pytest.fixture
def tenants():
    return InMemoryTenantRegistry.from_dict(TENANT_DATA)


@pytest.fixture
def tenant(tenants):
    return tenants._tenants[TENANT_ID]


@pytest.fixture
def geocoder():
    """Geocoder that reports every location as deliverable from B1."""
    mock = Mock()
    mock.reverse_or_validate = AsyncMock(
        return_value=DeliveryEligibility(
            deliverable=True,
            address="King Fahd Rd, Riyadh",
            branch_id="B1",
            branch_name="Olaya Branch",
            distance_km=1.2,
        )
    )
    return mock


@pytest.fixture
def machine(catalog, geocoder):
    return OrderStateMachine(catalog=catalog, branches=catalog, geocoder=geocoder)


@pytest.fixture
def resolver(catalog):
    return IntentResolver(catalog)


@pytest.fixture
def backend():
    return InMemorySubmissionBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def make_engine(store, tenants, resolver, machine, clock):
    def _make(backend, channel=None):
        coordinator = SubmissionCoordinator(backend, timeout_seconds=1.0, sleep=AsyncMock())
        return ConversationEngine(
            store=store,
            tenants=tenants,
            resolver=resolver,
            machine=machine,
            coordinator=coordinator,
            channel=channel,
            clock=clock,
        )

    return _make


@pytest.fixture
def engine(make_engine, backend):
    return make_engine(backend)
