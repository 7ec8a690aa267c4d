import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.websockets import WebSocketDisconnect

from dispatch_engine import main
from dispatch_engine.core.identity import Role

from conftest import BASE_LAT, BASE_LNG, ORDER_DETAILS, auth, token_for


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Full app with its own lifespan, on a throwaway database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/ws.db")
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(
        main, "AsyncSessionLocal", sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    )
    with TestClient(main.create_app()) as test_client:
        yield test_client


@pytest.fixture
def order_id(client):
    response = client.post("/api/v1/orders", json=ORDER_DETAILS, headers=auth("client-1", Role.CLIENT))
    assert response.status_code == 201
    return response.json()["id"]


def test_rejects_invalid_token(client):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": "garbage"})
        with pytest.raises(WebSocketDisconnect) as info:
            ws.receive_json()
    assert info.value.code == 4403


def test_join_and_chat(client, order_id):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("client-1", Role.CLIENT)})
        assert ws.receive_json()["type"] == "ready"

        ws.send_json({"action": "join_order_room", "orderId": order_id})
        joined = ws.receive_json()
        assert joined == {"type": "joined", "orderId": order_id, "status": "pending"}

        ws.send_json({"action": "send_message", "orderId": order_id, "content": "Hello?"})
        event = ws.receive_json()
        assert event["type"] == "message"
        assert event["data"]["seq"] == 1
        assert event["data"]["content"] == "Hello?"

    response = client.get(f"/api/v1/orders/{order_id}/messages", headers=auth("client-1", Role.CLIENT))
    assert [m["content"] for m in response.json()] == ["Hello?"]


def test_operator_sees_status_changes(client, order_id):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("op-1", Role.OPERATOR)})
        ws.receive_json()
        ws.send_json({"action": "join_order_room", "orderId": order_id})
        ws.receive_json()

        response = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth("client-1", Role.CLIENT))
        assert response.status_code == 200

        event = ws.receive_json()
        assert event["type"] == "status_changed"
        assert event["data"]["status"] == "cancelled"


def test_foreign_order_and_unknown_action(client, order_id):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("client-2", Role.CLIENT)})
        ws.receive_json()

        ws.send_json({"action": "join_order_room", "orderId": order_id})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "permission_denied"

        ws.send_json({"action": "fly"})
        assert ws.receive_json()["code"] == "unknown_action"

        ws.send_json({"action": "update_location", "lat": 1, "lng": 1})
        assert ws.receive_json()["code"] == "validation_error"


def _go_online(client, driver_id):
    headers = auth(driver_id, Role.DRIVER)
    response = client.put("/api/v1/drivers/me/location", json={"lat": BASE_LAT, "lng": BASE_LNG}, headers=headers)
    assert response.status_code == 200
    response = client.put("/api/v1/drivers/me/status", json={"status": "available"}, headers=headers)
    assert response.status_code == 200


def test_driver_receives_offer_without_joining_a_room(client):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("d1", Role.DRIVER)})
        assert ws.receive_json()["type"] == "ready"
        _go_online(client, "d1")

        response = client.post("/api/v1/orders", json=ORDER_DETAILS, headers=auth("client-1", Role.CLIENT))
        order_id = response.json()["id"]

        offer = ws.receive_json()
        assert offer["type"] == "order_offered"
        assert offer["orderId"] == order_id
        assert offer["data"]["order"]["driverId"] == "d1"
        assert offer["data"]["deadline"]

        response = client.post(f"/api/v1/orders/{order_id}/accept", headers=auth("d1", Role.DRIVER))
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"


def test_cancelled_offer_is_withdrawn_over_websocket(client):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("d1", Role.DRIVER)})
        ws.receive_json()
        _go_online(client, "d1")
        order_id = client.post(
            "/api/v1/orders", json=ORDER_DETAILS, headers=auth("client-1", Role.CLIENT)
        ).json()["id"]
        assert ws.receive_json()["type"] == "order_offered"

        client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth("client-1", Role.CLIENT))

        withdrawn = ws.receive_json()
        assert withdrawn["type"] == "offer_withdrawn"
        assert withdrawn["data"] == {"orderId": order_id, "reason": "order_closed"}


def test_operator_follows_driver_locations(client):
    with client.websocket_connect("/ws/orders") as ws:
        ws.send_json({"token": token_for("op-1", Role.OPERATOR)})
        assert ws.receive_json()["type"] == "ready"

        response = client.put(
            "/api/v1/drivers/me/location",
            json={"lat": BASE_LAT + 0.01, "lng": BASE_LNG},
            headers=auth("d7", Role.DRIVER),
        )
        assert response.status_code == 200

        event = ws.receive_json()
        assert event["type"] == "driver_location_updated"
        assert event["data"]["driverId"] == "d7"
        assert event["data"]["location"] == {"lat": BASE_LAT + 0.01, "lng": BASE_LNG}
