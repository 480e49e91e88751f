"""
Tests for reservations, the happy bar and the websocket broadcaster.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

import main
from realtime import Broadcaster, broadcaster, happy_updated, reservations_changed

RESERVATION = {
    "name": "Anna Nowak",
    "phone": "600100200",
    "date": "2026-11-02",
    "time": "18:30",
    "guests": 4,
    "room": "sala główna",
}


class TestReservationAPI:

    def test_create_from_index_page(self, client: TestClient):
        resp = client.post("/api/rezerwacje", json=RESERVATION)
        assert resp.status_code == 201
        reservation = resp.json()
        assert reservation["id"]
        assert reservation["guests"] == 4
        assert reservation["source"] == "index"
        assert reservation["milkId"] is None
        assert reservation["email"] is None
        assert reservation["createdAt"]

    def test_create_from_app(self, client: TestClient):
        reservation = client.post(
            "/api/rezerwacje", json={**RESERVATION, "milkId": "u1", "email": "anna@example.com"}
        ).json()
        assert reservation["source"] == "app"
        assert reservation["milkId"] == "u1"
        assert reservation["email"] == "anna@example.com"

    def test_explicit_source_wins(self, client: TestClient):
        reservation = client.post("/api/rezerwacje", json={**RESERVATION, "source": "telefon"}).json()
        assert reservation["source"] == "telefon"

    @pytest.mark.parametrize("missing", ["name", "phone", "date", "time", "guests", "room"])
    def test_required_fields(self, client: TestClient, missing):
        body = {k: v for k, v in RESERVATION.items() if k != missing}
        resp = client.post("/api/rezerwacje", json=body)
        assert resp.status_code == 400
        assert missing in resp.json()["message"]

    def test_invalid_email_rejected(self, client: TestClient):
        resp = client.post("/api/rezerwacje", json={**RESERVATION, "email": "not-an-email"})
        assert resp.status_code == 400

    def test_double_booking_is_allowed(self, client: TestClient):
        client.post("/api/rezerwacje", json=RESERVATION)
        client.post("/api/rezerwacje", json=RESERVATION)
        assert len(client.get("/api/rezerwacje").json()) == 2

    def test_update_and_delete(self, client: TestClient):
        reservation = client.post("/api/rezerwacje", json=RESERVATION).json()

        updated = client.put(f"/api/rezerwacje/{reservation['id']}", json={"guests": 6, "notes": "tort"}).json()
        assert updated["guests"] == 6
        assert updated["notes"] == "tort"
        assert updated["name"] == RESERVATION["name"]
        assert client.get(f"/api/rezerwacje/{reservation['id']}").json()["guests"] == 6

        assert client.delete(f"/api/rezerwacje/{reservation['id']}").json() == {"ok": True}
        assert client.get(f"/api/rezerwacje/{reservation['id']}").status_code == 404

    def test_numeric_milk_id_is_stored_as_text(self, client: TestClient):
        reservation = client.post("/api/rezerwacje", json=RESERVATION).json()
        resp = client.put(f"/api/rezerwacje/{reservation['id']}", json={"milkId": 7})
        assert resp.status_code == 200
        assert resp.json()["milkId"] == "7"
        assert client.get(f"/api/rezerwacje/{reservation['id']}").json()["milkId"] == "7"

    def test_unknown_reservation(self, client: TestClient):
        assert client.put("/api/rezerwacje/nope", json={"guests": 2}).status_code == 404
        assert client.put("/api/rezerwacje/nope", json={}).status_code == 404
        assert client.delete("/api/rezerwacje/nope").status_code == 404


class TestHappyAPI:

    def test_empty_bar(self, client: TestClient):
        assert client.get("/api/happy").json() == {"text": "", "updatedAt": None}

    def test_latest_text_wins(self, client: TestClient):
        client.post("/api/happy", json={"text": "Happy hours 15-17"})
        resp = client.post("/api/happy", json={"text": "Dziś -20% na shake'i"})
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

        current = client.get("/api/happy").json()
        assert current["text"] == "Dziś -20% na shake'i"
        assert current["updatedAt"]

    def test_text_required(self, client: TestClient):
        resp = client.post("/api/happy", json={})
        assert resp.status_code == 400
        assert resp.json() == {"message": "text is required"}


class TestWebsocket:

    def test_listener_gets_banner_then_events(self, client: TestClient):
        client.post("/api/happy", json={"text": "Start"})

        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "happy:update", "text": "Start"}

            created = client.post("/api/rezerwacje", json=RESERVATION).json()
            message = ws.receive_json()
            assert message["type"] == "reservation:new"
            assert message["data"] == created

            client.put(f"/api/rezerwacje/{created['id']}", json={"guests": 2})
            assert ws.receive_json() == {"type": "reservations:changed"}

            client.post("/api/happy", json={"text": "Nowość: shake pistacjowy"})
            assert ws.receive_json() == {"type": "happy:update", "text": "Nowość: shake pistacjowy"}


    def test_listener_closing_is_forgotten(self, store):
        ws = AsyncMock()
        ws.receive_text.side_effect = WebSocketDisconnect()

        asyncio.run(main.listen(ws, store))

        ws.send_json.assert_awaited_once_with({"type": "happy:update", "text": ""})
        assert ws not in broadcaster.active_connections

    def test_listener_failing_on_banner_is_forgotten(self, store):
        ws = AsyncMock()
        ws.send_json.side_effect = RuntimeError("socket closed")

        with pytest.raises(RuntimeError):
            asyncio.run(main.listen(ws, store))

        ws.accept.assert_awaited_once()
        assert ws not in broadcaster.active_connections

class TestBroadcaster:

    def test_broadcast_reaches_every_listener(self):
        hub = Broadcaster()
        first, second = AsyncMock(), AsyncMock()

        async def scenario():
            await hub.connect(first)
            await hub.connect(second)
            await hub.broadcast(reservations_changed())

        asyncio.run(scenario())

        first.accept.assert_awaited_once()
        first.send_json.assert_awaited_once_with({"type": "reservations:changed"})
        second.send_json.assert_awaited_once_with({"type": "reservations:changed"})

    def test_failed_listener_is_dropped(self):
        hub = Broadcaster()
        healthy, broken = AsyncMock(), AsyncMock()
        broken.send_json.side_effect = RuntimeError("socket closed")

        async def scenario():
            await hub.connect(healthy)
            await hub.connect(broken)
            await hub.broadcast(happy_updated("hej"))
            await hub.broadcast(happy_updated("again"))

        asyncio.run(scenario())

        assert hub.active_connections == {healthy}
        assert healthy.send_json.await_count == 2
        assert broken.send_json.await_count == 1

    def test_disconnect_unknown_listener_is_noop(self):
        hub = Broadcaster()
        hub.disconnect(AsyncMock())
        assert hub.active_connections == set()
