import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config import EngineConfig
from providers import NullTranscriptionPort, PlaceholderCompletionPort, Providers
from server import SessionRecord, SessionRegistry, create_app

from conftest import MemoryBookingService, MemorySessionLookup, MemoryTurnStore

REPLY = "Hello from the clinic."


def make_app(tmp_path, **kwargs):
    providers = Providers(
        completion=PlaceholderCompletionPort(REPLY),
        transcription=NullTranscriptionPort(),
    )
    return create_app(
        EngineConfig(),
        providers,
        turn_store=MemoryTurnStore(),
        booking_service=MemoryBookingService(),
        session_lookup=MemorySessionLookup({"browser-1": "user-42"}),
        config_path=str(tmp_path / "engine_config.json"),
        **kwargs,
    )


def test_health(tmp_path):
    with TestClient(make_app(tmp_path)) as client:
        body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["active_sessions"] == 0


def test_chat_over_websocket(tmp_path):
    app = make_app(tmp_path)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "status", "payload": {"state": "connected"}}

            ws.send_text(json.dumps({
                "type": "chat_message",
                "payload": {"text": "When are you open?"},
                "metadata": {"browser_session_id": "browser-1"},
            }))
            messages = [ws.receive_json() for _ in range(5)]

            assert messages[0] == {"type": "status", "payload": {"state": "thinking"}}
            assert messages[1] == {"type": "agent_text", "payload": {"token": "", "clear": True}}
            assert messages[2] == {"type": "agent_text", "payload": {"token": REPLY}}
            assert messages[3]["type"] == "conversation_turn"
            assert messages[3]["payload"]["user"]["text"] == "When are you open?"
            assert messages[3]["payload"]["agent"]["text"] == REPLY
            assert messages[4] == {"type": "status", "payload": {"state": "idle"}}

            sessions = client.get("/sessions").json()
            assert len(sessions) == 1
            assert sessions[0]["browser_session_id"] == "browser-1"
            assert sessions[0]["history_len"] == 2
            assert client.get("/health").json()["active_sessions"] == 1


def test_malformed_frame_keeps_connection_open(tmp_path):
    with TestClient(make_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{{{ not json")
            ws.send_text(json.dumps({"type": "interrupt"}))
            assert ws.receive_json() == {"type": "status", "payload": {"state": "interrupted"}}


def test_recording_without_stt_credentials_still_listens(tmp_path):
    with TestClient(make_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "start_recording"}))
            assert ws.receive_json()["payload"] == {"state": "listening"}
            ws.send_text(json.dumps({"type": "stop_recording"}))
            assert ws.receive_json()["payload"] == {"state": "idle"}


def test_session_limit_rejects_connection(tmp_path):
    with TestClient(make_app(tmp_path, max_sessions=0)) as client:
        with client.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
    assert excinfo.value.code == 1013


def test_get_and_put_config(tmp_path):
    with TestClient(make_app(tmp_path)) as client:
        config = client.get("/config").json()
        assert config["endpointer"]["silence_threshold_ms"] == 5000

        resp = client.put("/config", json={"endpointer": {"silence_threshold_ms": 3000}})
        assert resp.status_code == 200
        assert resp.json()["endpointer"]["silence_threshold_ms"] == 3000
        assert resp.json()["endpointer"]["max_wait_ms"] == 5000

        assert client.get("/config").json()["endpointer"]["silence_threshold_ms"] == 3000

    saved = EngineConfig.load(tmp_path / "engine_config.json")
    assert saved.endpointer.silence_threshold_ms == 3000


def test_put_invalid_config_is_rejected(tmp_path):
    with TestClient(make_app(tmp_path)) as client:
        resp = client.put("/config", json={"endpointer": {"tick_interval_ms": 1}})
        assert resp.status_code == 422
        assert client.get("/config").json()["endpointer"]["tick_interval_ms"] == 100
    assert not (tmp_path / "engine_config.json").exists()


def test_registry_close_all_closes_sessions():
    class StubSession:
        def __init__(self):
            self.closed = False

        async def close(self):
            self.closed = True

        def snapshot(self):
            return {"session_id": "x"}

    async def runner():
        registry = SessionRegistry()
        stubs = [StubSession(), StubSession()]
        registry.add(SessionRecord(connection_id="a", session=stubs[0]))
        registry.add(SessionRecord(connection_id="b", session=stubs[1]))
        assert len(registry) == 2
        assert registry.get("a").session is stubs[0]
        assert registry.snapshot() == [{"session_id": "x"}, {"session_id": "x"}]

        assert registry.remove("a") is not None
        assert registry.remove("a") is None

        await registry.close_all()
        assert stubs[1].closed
        assert len(registry) == 0

    asyncio.run(runner())
