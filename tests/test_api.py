import asyncio
import time
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from whisperdrop.api.routes import init_routes, router
from whisperdrop.api.websocket import ConnectionManager
from whisperdrop.discovery.models import Device, ProbeResult
from whisperdrop.errors import AddressResolutionError
from whisperdrop.messaging.scheduler import ExpiryScheduler


class FakeDiscovery:
    def __init__(self):
        now = datetime.now(timezone.utc)
        self.devices = {
            "a": Device(id="a", name="Desk", ip="192.168.1.10", api_port=8765, last_seen_at=now, latency_ms=4),
            "b": Device(id="b", name="Laptop", ip="192.168.1.11", api_port=8765, last_seen_at=now),
        }

    def get_devices(self):
        return list(self.devices.values())

    def get_device(self, device_id):
        return self.devices.get(device_id)

    def available_devices(self):
        return [d for d in self.devices.values() if d.is_transfer_target]

    async def scan(self, timeout, probe_timeout, expected=None):
        return self.available_devices()

    async def probe(self, device_id, timeout):
        return ProbeResult(device_id=device_id, reachable=True, latency_ms=3)

    async def resolve_local_address(self):
        raise AddressResolutionError("no candidate")


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(router)
    init_routes(FakeDiscovery(), ExpiryScheduler(tick_interval=0.05))
    with TestClient(app) as c:
        yield c


def test_list_devices(client):
    body = client.get("/api/devices").json()
    assert [d["id"] for d in body["devices"]] == ["a", "b"]
    assert body["available"] == ["a"]


def test_scan_and_probe(client):
    assert [d["id"] for d in client.post("/api/devices/scan").json()["devices"]] == ["a"]
    assert client.post("/api/devices/b/probe").json() == {
        "device_id": "b", "reachable": True, "latency_ms": 3,
    }
    assert client.post("/api/devices/zzz/probe").status_code == 404


def test_local_address_failure_maps_to_503(client):
    response = client.get("/api/local-address")
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "address_resolution_failed"


def test_transfer_plan(client):
    body = client.get("/api/transfers/plan", params={"file_size": 5000000}).json()
    assert body["chunk_size_bytes"] == 262144
    assert body["chunk_count"] == 20
    assert body["eta_seconds"] == 1
    assert body["eta_display"] == "1s"


def test_transfer_plan_rejects_negative_size(client):
    response = client.get("/api/transfers/plan", params={"file_size": -1})
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_input"


@pytest.mark.parametrize("bandwidth", ["nan", "inf"])
def test_transfer_plan_rejects_non_finite_bandwidth(client, bandwidth):
    response = client.get(
        "/api/transfers/plan", params={"file_size": 1000, "bandwidth_mbps": bandwidth}
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_input"


def test_message_store_evicts_oldest_when_full():
    app = FastAPI()
    app.include_router(router)
    scheduler = ExpiryScheduler(tick_interval=0.05)
    init_routes(FakeDiscovery(), scheduler, message_limit=2)
    with TestClient(app) as c:
        for message_id in ("m1", "m2", "m3"):
            c.post("/api/messages", json={"id": message_id, "text": "x", "ttl_seconds": 60})

        assert c.get("/api/messages/m1").status_code == 404
        assert c.get("/api/messages/m2").status_code == 200
        assert c.get("/api/messages/m3").status_code == 200
        assert "m1" not in scheduler.active_ids


def test_message_round_trip_with_room_key(client):
    key = client.post("/api/keys").json()["key"]
    assert len(key) == 64

    created = client.post("/api/messages", json={"text": "hi there", "key": key}).json()
    assert created["ciphertext"] != "hi there"
    assert created["state"] is None  # never expires, so never scheduled

    decrypted = client.post(
        "/api/messages/decrypt", json={"ciphertext": created["ciphertext"], "key": key}
    )
    assert decrypted.json() == {"plaintext": "hi there"}

    wrong = client.post(
        "/api/messages/decrypt",
        json={"ciphertext": created["ciphertext"], "key": client.post("/api/keys").json()["key"]},
    )
    assert wrong.status_code == 400
    assert wrong.json()["detail"]["code"] == "decryption_failed"


def test_bad_key_is_rejected(client):
    response = client.post("/api/messages", json={"text": "x", "key": "abcd"})
    assert response.status_code == 422


def test_timed_message_lifecycle(client):
    created = client.post("/api/messages", json={"id": "m1", "text": "soon gone", "ttl_seconds": 60}).json()
    assert created["id"] == "m1"
    assert created["state"] == "active"
    assert created["remaining_seconds"] in (59, 60)
    assert created["tier"] == "normal"

    assert client.get("/api/messages/m1").status_code == 200
    assert client.delete("/api/messages/m1").json() == {"status": "deleted"}
    assert client.delete("/api/messages/m1").status_code == 404


def test_zero_ttl_message_expires(client):
    client.post("/api/messages", json={"id": "m2", "text": "bye", "ttl_seconds": 0})
    time.sleep(0.3)
    assert client.get("/api/messages/m2").status_code == 404


def test_burn_after_reading(client):
    client.post("/api/messages", json={"id": "m3", "text": "once", "burn_after_reading": True})
    assert client.get("/api/messages/m3").json()["state"] == "active"

    read = client.post("/api/messages/m3/read").json()
    assert read["burned"] is True
    assert client.get("/api/messages/m3").status_code == 404
    assert client.post("/api/messages/m3/read").status_code == 404


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(text)


@pytest.mark.asyncio
async def test_connection_manager_broadcasts_and_drops_dead_clients():
    manager = ConnectionManager()
    alive, dead = FakeSocket(), FakeSocket(fail=True)
    await manager.connect(alive)
    await manager.connect(dead)

    await manager.on_message_expired("m1")
    assert alive.sent == ['{"event": "message_expired", "data": {"message_id": "m1"}}']
    assert manager.connection_count == 1


class StalledSocket(FakeSocket):
    async def send_text(self, text):
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_stalled_client_times_out_without_blocking_others():
    manager = ConnectionManager(send_timeout=0.1)
    alive, stalled = FakeSocket(), StalledSocket()
    await manager.connect(alive)
    await manager.connect(stalled)

    started = time.monotonic()
    await manager.on_message_expired("m1")
    assert time.monotonic() - started < 1
    assert len(alive.sent) == 1
    assert manager.connection_count == 1

    # The lock is free again for new clients
    await asyncio.wait_for(manager.connect(FakeSocket()), 0.5)
    assert manager.connection_count == 2
