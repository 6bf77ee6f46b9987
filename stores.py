"""
stores.py — local storage collaborators
=======================================
Small file-backed implementations of the storage ports so the engine runs
end-to-end without a database:

  • JsonlTurnStore: one JSON line per ConversationTurn
  • JsonlBookingStore: one JSON line per booking, returns a generated id
  • JsonSessionLookup: browser_session_id → identity from a JSON map

File I/O runs in a worker thread (asyncio.to_thread) so a slow disk never
blocks the event loop shared by every live session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from errors import PersistenceError
from ports import BookingRequest, ConversationTurn

log = logging.getLogger("receptionist.stores")


class _JsonlWriter:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _append(self, record: dict) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    async def append(self, record: dict) -> None:
        try:
            await asyncio.to_thread(self._append, record)
        except OSError as exc:
            raise PersistenceError(f"write to {self.path} failed: {exc}") from exc


class JsonlTurnStore:
    def __init__(self, path: str | Path) -> None:
        self._writer = _JsonlWriter(path)

    async def save_turn(self, turn: ConversationTurn) -> None:
        if not turn.browser_session_id:
            # Nothing to correlate the turn with
            log.debug("event=conversation_turn_not_saved reason=no_browser_session_id")
            return
        await self._writer.append({
            "browser_session_id": turn.browser_session_id,
            "user":               turn.identity,
            "mode":               turn.mode,
            "user_text":          turn.user_text,
            "agent_text":         turn.agent_text,
            "created_at":         turn.timestamp.isoformat(),
        })
        log.info(
            "event=conversation_turn_saved browser_session_id=%s has_user=%s mode=%s "
            "user_text_len=%d agent_text_len=%d",
            turn.browser_session_id, turn.identity is not None, turn.mode,
            len(turn.user_text), len(turn.agent_text),
        )


class JsonlBookingStore:
    def __init__(self, path: str | Path) -> None:
        self._writer = _JsonlWriter(path)

    async def create(self, request: BookingRequest) -> str:
        booking_id = uuid.uuid4().hex
        payload = request.payload
        await self._writer.append({
            "booking_id":           booking_id,
            "browser_session_id":   request.browser_session_id,
            "user":                 request.identity,
            "timezone":             request.timezone,
            "name":                 payload.name,
            "age":                  payload.age,
            "contact_number":       payload.contact_number,
            "medical_concern":      payload.medical_concern,
            "appointment_datetime": payload.appointment_datetime.isoformat(),
            "email":                payload.email,
            "doctor_preference":    payload.doctor_preference,
            "status":               "confirmed",
            "created_at":           datetime.now(timezone.utc).isoformat(),
        })
        log.info("event=booking_saved booking_id=%s", booking_id)
        return booking_id


class NullSessionLookup:
    async def resolve_identity(self, browser_session_id: str) -> Optional[str]:
        return None


class JsonSessionLookup:
    """Resolves identities from ``{"<browser_session_id>": "<user id>", ...}``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    async def resolve_identity(self, browser_session_id: str) -> Optional[str]:
        try:
            mapping = await asyncio.to_thread(self._read)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"session lookup failed: {exc}") from exc
        identity = mapping.get(browser_session_id)
        return str(identity) if identity is not None else None
