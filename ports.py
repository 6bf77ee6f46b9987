"""
ports.py — collaborator interfaces consumed by the session engine
=================================================================
The engine only needs streaming primitives from its providers and a handful
of narrow calls into storage.  Concrete adapters live in providers.py and
stores.py; tests supply fakes.

Every callback handed to a port is an ``async`` callable.  Ports may invoke it
from any task; the session re-posts the call onto its own serialized stream.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from booking import BookingPayload


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class ConversationTurn:
    """One completed exchange.  Immutable once created."""
    user_text: str
    agent_text: str
    mode: str                                   # "voice" | "chat"
    timestamp: datetime
    browser_session_id: Optional[str] = None
    identity: Optional[str] = None


@dataclass(frozen=True)
class BookingRequest:
    payload: BookingPayload
    browser_session_id: Optional[str] = None
    identity: Optional[str] = None
    timezone: Optional[str] = None


OnTranscript = Callable[[TranscriptEvent], Awaitable[None]]
OnError      = Callable[[Exception], Awaitable[None]]
OnToken      = Callable[[str], Awaitable[None]]
OnComplete   = Callable[[str], Awaitable[None]]


# ---------------------------------------------------------------------------
# Streaming providers
# ---------------------------------------------------------------------------

class TranscriptionHandle(Protocol):
    async def write(self, audio: bytes) -> None: ...
    async def close(self) -> None: ...


class TranscriptionPort(Protocol):
    async def open(self, on_transcript: OnTranscript, on_error: OnError) -> TranscriptionHandle: ...


@dataclass(eq=False)
class CompletionHandle:
    """A cancellable in-flight completion.

    ``cancelled`` is the cancellation token: once set, no callback of this
    completion may reach the far end.  Cancelling the backing task is
    best-effort; the provider transport may take a moment to close.
    """
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    @property
    def active(self) -> bool:
        return not self.cancelled


class CompletionPort(Protocol):
    def start(
        self,
        history: Sequence[dict],
        on_token: OnToken,
        on_complete: OnComplete,
        on_error: OnError,
    ) -> CompletionHandle: ...


# ---------------------------------------------------------------------------
# Storage collaborators
# ---------------------------------------------------------------------------

class SessionLookup(Protocol):
    async def resolve_identity(self, browser_session_id: str) -> Optional[str]: ...


class TurnStore(Protocol):
    async def save_turn(self, turn: ConversationTurn) -> None: ...


class BookingService(Protocol):
    async def create(self, request: BookingRequest) -> str: ...
