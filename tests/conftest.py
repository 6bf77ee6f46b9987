"""In-memory fakes for every collaborator port."""

from __future__ import annotations

from typing import Optional

import pytest

from config import EngineConfig
from errors import BookingError, PersistenceError
from ports import CompletionHandle, TranscriptEvent
from session import Collaborators


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Outbox:
    """Collects every outbound message of a session or orchestrator."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, type_: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == type_]

    def states(self) -> list[str]:
        return [m["payload"]["state"] for m in self.of_type("status")]

    def agent_tokens(self) -> list[str]:
        return [m["payload"]["token"] for m in self.of_type("agent_text") if not m["payload"].get("clear")]

    def transcripts(self) -> list[tuple[str, bool]]:
        return [(m["payload"]["text"], m["payload"]["isFinal"]) for m in self.of_type("transcript")]

    def clear(self) -> None:
        self.messages.clear()


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class FakeCall:
    """One started completion; the test drives its callbacks by hand."""

    def __init__(self, history, on_token, on_complete, on_error) -> None:
        self.history = history
        self.on_token = on_token
        self.on_complete = on_complete
        self.on_error = on_error
        self.handle = CompletionHandle()
        self.emitted: list[str] = []

    async def emit(self, *tokens: str) -> None:
        for token in tokens:
            self.emitted.append(token)
            await self.on_token(token)

    async def complete(self, text: Optional[str] = None) -> None:
        await self.on_complete("".join(self.emitted) if text is None else text)

    async def fail(self, exc: Exception) -> None:
        await self.on_error(exc)


class FakeCompletion:
    def __init__(self) -> None:
        self.calls: list[FakeCall] = []

    def start(self, history, on_token, on_complete, on_error) -> CompletionHandle:
        call = FakeCall(list(history), on_token, on_complete, on_error)
        self.calls.append(call)
        return call.handle

    @property
    def last(self) -> FakeCall:
        return self.calls[-1]


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------

class FakeTranscriptionHandle:
    def __init__(self, on_transcript, on_error) -> None:
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.audio: list[bytes] = []
        self.closed = False

    async def write(self, audio: bytes) -> None:
        self.audio.append(audio)

    async def close(self) -> None:
        self.closed = True

    async def hear(self, text: str, is_final: bool = False) -> None:
        await self.on_transcript(TranscriptEvent(text=text, is_final=is_final))

    async def fail(self, exc: Exception) -> None:
        await self.on_error(exc)


class FakeTranscription:
    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.fail_with = fail_with
        self.handles: list[FakeTranscriptionHandle] = []

    async def open(self, on_transcript, on_error) -> FakeTranscriptionHandle:
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeTranscriptionHandle(on_transcript, on_error)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeTranscriptionHandle:
        return self.handles[-1]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class MemoryTurnStore:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.turns = []

    async def save_turn(self, turn) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        self.turns.append(turn)


class MemoryBookingService:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.requests = []

    async def create(self, request) -> str:
        if self.fail:
            raise BookingError("calendar unavailable")
        self.requests.append(request)
        return f"bk-{len(self.requests)}"


class MemorySessionLookup:
    def __init__(self, mapping: Optional[dict] = None, fail: bool = False) -> None:
        self.mapping = mapping or {}
        self.fail = fail
        self.lookups: list[str] = []

    async def resolve_identity(self, browser_session_id: str) -> Optional[str]:
        self.lookups.append(browser_session_id)
        if self.fail:
            raise PersistenceError("lookup down")
        return self.mapping.get(browser_session_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def transcription() -> FakeTranscription:
    return FakeTranscription()


@pytest.fixture
def turn_store() -> MemoryTurnStore:
    return MemoryTurnStore()


@pytest.fixture
def booking_service() -> MemoryBookingService:
    return MemoryBookingService()


@pytest.fixture
def session_lookup() -> MemorySessionLookup:
    return MemorySessionLookup({"browser-1": "user-42"})


@pytest.fixture
def collaborators(completion, transcription, turn_store, booking_service, session_lookup) -> Collaborators:
    return Collaborators(
        completion=completion,
        transcription=transcription,
        session_lookup=session_lookup,
        turn_store=turn_store,
        booking_service=booking_service,
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    # Ticks are driven by hand; the background tick loop runs at its slowest
    return EngineConfig().merge_patch({"endpointer": {"tick_interval_ms": 1000}})
