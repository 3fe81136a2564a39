from __future__ import annotations

import threading

import pytest
from conftest import FakeResponder
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from zapbot.bot import ZapBot
from zapbot.main import create_app


class WebhookSession:
    def __init__(self):
        self.payloads = []

    def on(self, event, handler):
        pass

    async def initialize(self):
        pass

    async def destroy(self):
        pass

    async def logout(self):
        pass

    async def dispatch(self, payload):
        self.payloads.append(payload)
        return payload.get("typeWebhook") == "incomingMessageReceived"


@pytest.fixture
def bot(config_store, stats, broadcaster, delivery_queue):
    return ZapBot(config_store, stats, broadcaster, queue=delivery_queue,
                  responder=FakeResponder(reply="We open at 9."))


@pytest.fixture
def client(bot, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    with TestClient(create_app(bot)) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"ok": True, "version": "1.0.0"}


def test_get_and_post_config(client, storage):
    assert client.get("/api/config").json()["onlyAllowed"] is True

    r = client.post("/api/config", json={"onlyAllowed": False, "allowedNumbers": ["+55 11 99999-8888"]})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["config"]["onlyAllowed"] is False
    assert body["config"]["allowedNumbers"] == ["5511999998888"]
    assert storage.config_path.exists()


def test_post_config_rejects_bad_payloads(client):
    assert client.post("/api/config", content=b"{oops", headers={"content-type": "application/json"}).status_code == 400
    assert client.post("/api/config", json=[1, 2]).status_code == 400
    r = client.post("/api/config", json={"temperature": "hot"})
    assert r.status_code == 422
    assert r.json()["ok"] is False


def test_post_config_rejects_unknown_model(client, bot):
    r = client.post("/api/config", json={"model": "gemini-9-ultra"})
    assert r.status_code == 422
    assert bot.config.model == "gemini-2.5-flash"

    r = client.post("/api/config", json={"model": "gemini-3-pro-preview"})
    assert r.json()["config"]["model"] == "gemini-3-pro-preview"


def test_stats_and_status(client):
    stats = client.get("/api/stats").json()
    assert stats["messagesToday"] == 0
    assert len(stats["hourlyTraffic"]) == 24

    status = client.get("/api/status").json()
    assert status == {"status": "DISCONNECTED", "qr": None, "queueDepth": 0, "aiEnabled": True}


def test_playground(client):
    r = client.post("/api/playground", json={"history": [{"role": "user", "content": "hi"}], "message": "price?"})
    assert r.json() == {"reply": "We open at 9.", "error": None}


def test_disconnect(client, bot):
    assert client.post("/api/disconnect").json() == {"ok": True}
    assert bot.status.value == "DISCONNECTED"


def test_webhook_without_session(client):
    r = client.post("/webhook", json={"typeWebhook": "incomingMessageReceived"})
    assert r.status_code == 503


def test_webhook_invalid_json(client):
    r = client.post("/webhook", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_json"


def test_webhook_dispatches_to_session(bot, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    session = WebhookSession()
    bot.attach_session(session)
    with TestClient(create_app(bot)) as c:
        r = c.post("/webhook", json={"typeWebhook": "incomingMessageReceived", "idMessage": "X"})
    assert r.json() == {"ok": True, "handled": True}
    assert session.payloads[0]["idMessage"] == "X"


class TestDashboardSocket:
    def test_initial_snapshot(self, client):
        with client.websocket_connect("/ws") as ws:
            events = [ws.receive_json() for _ in range(3)]
        assert [e["event"] for e in events] == ["config_initial", "dashboard_update", "bot_status"]
        assert events[0]["data"]["model"] == "gemini-2.5-flash"
        assert events[2]["data"] == "DISCONNECTED"

    def test_update_config_command(self, client, bot):
        with client.websocket_connect("/ws") as ws:
            for _ in range(3):
                ws.receive_json()
            ws.send_json({"event": "update_config", "data": {"isActive": False}})
            event = ws.receive_json()
        assert event["event"] == "log"
        assert event["data"]["message"] == "Settings saved and applied."
        assert bot.config.is_active is False

    def test_bad_frames_are_ignored(self, client, bot):
        with client.websocket_connect("/ws") as ws:
            for _ in range(3):
                ws.receive_json()
            ws.send_text("not json")
            ws.send_json(["update_config"])
            ws.send_json({"event": "update_config", "data": {"temperature": 1.5}})
            event = ws.receive_json()
        assert event["data"]["message"] == "Settings saved and applied."
        assert bot.config.temperature == 1.5

    def test_observer_unsubscribed_on_close(self, client, bot):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert bot.broadcaster.observer_count == 1
        for _ in range(50):
            if bot.broadcaster.observer_count == 0:
                break
            client.get("/health")
        assert bot.broadcaster.observer_count == 0


class TestAdminPassword:
    @pytest.fixture
    def client(self, bot, monkeypatch):
        monkeypatch.setenv("ADMIN_PASSWORD", "s3cret")
        with TestClient(create_app(bot)) as c:
            yield c

    def test_rest_requires_token(self, client):
        assert client.get("/api/config").status_code == 401
        assert client.get("/api/config", params={"token": "wrong"}).status_code == 401
        assert client.get("/api/config", params={"token": "s3cret"}).status_code == 200

    def test_socket_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws?token=wrong") as ws:
                ws.receive_json()

    def test_socket_accepts_good_token(self, client):
        with client.websocket_connect("/ws?token=s3cret") as ws:
            assert ws.receive_json()["event"] == "config_initial"

    def test_health_and_webhook_are_open(self, client):
        assert client.get("/health").status_code == 200
        assert client.post("/webhook", json={}).status_code == 503


def test_stats_day_rollover_is_written_on_the_event_loop(bot, storage, clock, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    loop_threads = []
    write_threads = []

    original_start = bot.start
    original_write = storage.write_json

    async def start():
        loop_threads.append(threading.get_ident())
        await original_start()

    def write_json(path, data):
        write_threads.append(threading.get_ident())
        original_write(path, data)

    monkeypatch.setattr(bot, "start", start)
    monkeypatch.setattr(storage, "write_json", write_json)
    bot.stats.record_inbound("5511999998888", hour=14)
    write_threads.clear()

    clock.advance(days=1)
    with TestClient(create_app(bot)) as c:
        assert c.get("/api/stats").json()["messagesToday"] == 0

    assert write_threads
    assert set(write_threads) == set(loop_threads)


class TestDashboardHosting:
    @pytest.fixture
    def client(self, bot, tmp_path, monkeypatch):
        dist = tmp_path / "dist"
        (dist / "assets").mkdir(parents=True)
        (dist / "index.html").write_text("<html>zapbot</html>", encoding="utf-8")
        (dist / "assets" / "app.js").write_text("console.log(1)", encoding="utf-8")
        monkeypatch.setenv("STATIC_DIR", str(dist))
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        with TestClient(create_app(bot)) as c:
            yield c

    def test_root_serves_index(self, client):
        assert client.get("/").text == "<html>zapbot</html>"

    def test_assets_are_served(self, client):
        assert client.get("/assets/app.js").text == "console.log(1)"

    def test_client_routes_fall_back_to_index(self, client):
        r = client.get("/settings/whitelist")
        assert r.status_code == 200
        assert r.text == "<html>zapbot</html>"

    def test_api_routes_still_win(self, client):
        assert client.get("/api/status").json()["status"] == "DISCONNECTED"
        assert client.get("/health").json()["ok"] is True
