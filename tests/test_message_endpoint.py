import pytest
from fastapi.testclient import TestClient

from orderbot.main import app
from orderbot.routers.message import get_engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestMessageEndpoint:
    def test_button_reply(self, client):
        response = client.post(
            "/message",
            json={"tenant_id": "t1", "from": "whatsapp:+966500000001", "button_payload": "new_order"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["customer_key"] == "966500000001"
        assert data["stage"] == "awaiting_order_type"
        assert data["messages"][0]["type"] == "quick_replies"
        assert [option["id"] for option in data["messages"][0]["options"]] == ["order_delivery", "order_pickup"]

    def test_text_body(self, client):
        client.post("/message", json={"tenant_id": "t1", "from_address": "+966500000001", "body": "new order"})
        response = client.post("/message", json={"tenant_id": "t1", "from_address": "+966500000001", "body": "pickup"})

        data = response.json()
        assert data["stage"] == "awaiting_branch"
        assert data["messages"][0]["type"] == "list_picker"
        assert [row["id"] for row in data["messages"][0]["rows"]] == ["branch_B1", "branch_B2"]

    def test_first_message_greets_profile_name(self, client):
        response = client.post(
            "/message",
            json={"tenant_id": "t1", "from": "966500000001", "body": "hello", "profile_name": "Sara"},
        )

        data = response.json()
        assert data["stage"] == "idle"
        assert "Sara" in data["messages"][0]["body"]

    def test_location_payload(self, client, geocoder):
        client.post("/message", json={"tenant_id": "t1", "from": "966500000001", "reply_id": "new_order"})
        client.post("/message", json={"tenant_id": "t1", "from": "966500000001", "reply_id": "order_delivery"})

        response = client.post(
            "/message",
            json={"tenant_id": "t1", "from": "966500000001", "latitude": 24.7, "longitude": 46.68},
        )

        assert response.json()["stage"] == "browsing_categories"
        geocoder.reverse_or_validate.assert_awaited_once()

    def test_malformed_address_is_dropped(self, client):
        response = client.post("/message", json={"tenant_id": "t1", "from": "whatsapp:", "body": "hi"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "Message dropped"
        assert data["messages"] == []

    def test_unknown_tenant_is_dropped(self, client):
        response = client.post("/message", json={"tenant_id": "missing", "from": "966500000001", "body": "hi"})
        assert response.json()["success"] is False

    def test_validation_error(self, client):
        response = client.post("/message", json={"body": "hi"})
        assert response.status_code == 422
