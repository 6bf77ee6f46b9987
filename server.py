"""
server.py — Receptionist Voice Engine · FastAPI surface
=======================================================
Accepts browser connections and runs one isolated ``Session`` per
connection.

Endpoints
---------
  WS   /ws          Live session (status, transcripts, agent text, turns)
  GET  /health      Service liveness
  GET  /sessions    List live sessions
  GET  /config      Current engine configuration
  PUT  /config      Merge-patch the configuration (applies to new sessions)

Concurrency model
-----------------
Every connection gets its own Session with its own serialized event stream.
Sessions share only stateless collaborators (provider adapters and the
file-backed stores), so one misbehaving session never stalls another.  The
``SessionRegistry`` tracks live sessions and closes them all on shutdown.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from config import EngineConfig
from providers import Providers, build_providers
from ports import BookingService, SessionLookup, TurnStore
from session import Collaborators, Session
from stores import JsonlBookingStore, JsonlTurnStore, JsonSessionLookup, NullSessionLookup

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("receptionist.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH  = os.getenv("ENGINE_CONFIG_PATH", "engine_config.json")
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "200"))
HOST         = os.getenv("HOST", "0.0.0.0")
PORT         = int(os.getenv("PORT", "8000"))


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    connection_id: str
    session:       Session = field(repr=False)
    remote:        Optional[str] = None
    started_at:    float = field(default_factory=time.monotonic)


class SessionRegistry:
    """connection_id → SessionRecord for every live connection."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: SessionRecord) -> None:
        self._records[record.connection_id] = record
        log.info("event=session_registered id=%s active=%d", record.connection_id, len(self._records))

    def remove(self, connection_id: str) -> Optional[SessionRecord]:
        record = self._records.pop(connection_id, None)
        if record is not None:
            log.info(
                "event=session_unregistered id=%s duration_sec=%.1f active=%d",
                connection_id, time.monotonic() - record.started_at, len(self._records),
            )
        return record

    def get(self, connection_id: str) -> Optional[SessionRecord]:
        return self._records.get(connection_id)

    def snapshot(self) -> list[dict[str, Any]]:
        return [r.session.snapshot() for r in self._records.values()]

    async def close_all(self) -> None:
        records = list(self._records.values())
        self._records.clear()
        for record in records:
            try:
                await record.session.close()
            except Exception as exc:
                log.error("event=session_close_failed id=%s error=%s", record.connection_id, exc)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    session_id:         str
    state:              str
    recording:          bool
    browser_session_id: Optional[str] = None
    history_len:        int
    uptime_sec:         float


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_stores(config: EngineConfig) -> tuple[TurnStore, BookingService, SessionLookup]:
    storage = config.storage
    lookup: SessionLookup = (
        JsonSessionLookup(storage.sessions_path) if storage.sessions_path else NullSessionLookup()
    )
    return JsonlTurnStore(storage.turns_path), JsonlBookingStore(storage.bookings_path), lookup


def create_app(
    config: Optional[EngineConfig] = None,
    providers: Optional[Providers] = None,
    *,
    turn_store: Optional[TurnStore] = None,
    booking_service: Optional[BookingService] = None,
    session_lookup: Optional[SessionLookup] = None,
    config_path: Optional[str] = None,
    max_sessions: int = MAX_SESSIONS,
) -> FastAPI:
    """Build the FastAPI app.  Anything not injected is built from *config*."""
    config_path = config_path or CONFIG_PATH
    config = config or EngineConfig.load(config_path)
    pinned_providers = providers is not None

    default_turns, default_bookings, default_lookup = build_stores(config)
    registry = SessionRegistry()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start max_sessions=%d", max_sessions)
        yield
        log.info("event=server_shutdown closing %d active sessions", len(registry))
        await registry.close_all()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Receptionist Voice Engine",
        version="1.0.0",
        description="Voice and chat session engine for a clinic receptionist",
        lifespan=_lifespan,
    )

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.config_path = config_path
    app.state.providers = providers or build_providers(config)
    app.state.registry = registry
    app.state.turn_store = turn_store or default_turns
    app.state.booking_service = booking_service or default_bookings
    app.state.session_lookup = session_lookup or default_lookup

    def _collaborators() -> Collaborators:
        p: Providers = app.state.providers
        return Collaborators(
            completion=p.completion,
            transcription=p.transcription,
            session_lookup=app.state.session_lookup,
            turn_store=app.state.turn_store,
            booking_service=app.state.booking_service,
        )

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(registry),
            "max_sessions":    max_sessions,
            "capacity_pct":    round(len(registry) / max_sessions * 100, 1) if max_sessions else 0.0,
        })

    @app.get("/sessions", response_model=list[SessionInfo])
    async def list_sessions() -> list[SessionInfo]:
        """Returns a snapshot of all live sessions."""
        return [SessionInfo(**s) for s in registry.snapshot()]

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(app.state.config.model_dump(mode="json"))

    @app.put("/config")
    async def put_config(patch: dict[str, Any]) -> JSONResponse:
        """Merge-patch the configuration and persist it.  Live sessions keep theirs."""
        try:
            updated = app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=json.loads(exc.json()),
            ) from exc

        try:
            updated.save(app.state.config_path)
        except OSError as exc:
            log.error("event=config_save_failed path=%s error=%s", app.state.config_path, exc)
            raise HTTPException(status_code=500, detail="Failed to persist configuration.") from exc

        app.state.config = updated
        if not pinned_providers:
            app.state.providers = build_providers(updated)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(updated.model_dump(mode="json"))

    @app.websocket("/ws")
    async def ws_session(ws: WebSocket) -> None:
        """
        One live receptionist session.  Every frame is a JSON object
        ``{"type": ..., "payload": {...}, "metadata": {...}}``; see protocol.py.
        """
        await ws.accept()
        remote = f"{ws.client.host}:{ws.client.port}" if ws.client else None

        if len(registry) >= max_sessions:
            log.warning("event=session_limit_reached current=%d max=%d", len(registry), max_sessions)
            await ws.close(code=1013)
            return

        connection_id = uuid.uuid4().hex[:12]

        async def send(message: dict) -> None:
            if ws.client_state == WebSocketState.CONNECTED:
                await ws.send_text(json.dumps(message))

        session = Session(connection_id, send, _collaborators(), app.state.config)
        registry.add(SessionRecord(connection_id=connection_id, session=session, remote=remote))
        log.info("event=ws_client_connected id=%s remote=%s", connection_id, remote)

        try:
            await session.start()
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await session.handle_frame(raw)
        except WebSocketDisconnect:
            pass
        finally:
            registry.remove(connection_id)
            await session.close()
            log.info("event=ws_client_disconnected id=%s remote=%s", connection_id, remote)

    return app


app = create_app()


def main() -> None:
    uvicorn.run("server:app", host=HOST, port=PORT, log_level="debug" if os.getenv("VOICE_DEBUG") else "info")


if __name__ == "__main__":
    main()
