"""
orchestrator.py — Turn Orchestrator
===================================
Owns the conversation history and the single in-flight completion of one
session.

    submit_user_turn(text, mode)
        → history += user
        → cancel previous completion
        → status=thinking, agent_text{clear}
        → CompletionPort.start(history)
            on_token    → BookingStreamFilter → agent_text
            on_complete → history += assistant, booking dispatch,
                          conversation_turn, status=speaking/idle, save_turn
            on_error    → save_turn("Error: …"), status=error(llm_error)

Provider callbacks never touch state directly: each one is re-posted onto the
session's serialized stream and checked against the handle that produced it.
A callback from a handle that is no longer the active one is dropped, so a
cancelled or superseded completion cannot forward a single late token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from booking import BookingOutcome, BookingStreamFilter, OutcomeKind
from config import BookingConfig
from ports import (
    BookingRequest,
    BookingService,
    CompletionHandle,
    CompletionPort,
    ConversationTurn,
    TurnStore,
)
import protocol

log = logging.getLogger("receptionist.orchestrator")

MODE_VOICE = "voice"
MODE_CHAT  = "chat"

Send     = Callable[[dict], Awaitable[None]]
SetState = Callable[..., Awaitable[None]]
Post     = Callable[[Callable[[], Awaitable[None]]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnContext:
    """Identity data the orchestrator attaches to turns and bookings."""

    def __init__(self) -> None:
        self.browser_session_id: Optional[str] = None
        self.identity: Optional[str] = None
        self.timezone: Optional[str] = None


class _Turn:
    def __init__(self, user_text: str, mode: str, stream_filter: BookingStreamFilter) -> None:
        self.user_text = user_text
        self.mode = mode
        self.user_ts = _utcnow()
        self.filter = stream_filter
        self.tokens: list[str] = []


class TurnOrchestrator:
    def __init__(
        self,
        *,
        completion: CompletionPort,
        turn_store: TurnStore,
        booking_service: BookingService,
        send: Send,
        set_state: SetState,
        post: Post,
        context: TurnContext,
        booking_config: Optional[BookingConfig] = None,
    ) -> None:
        self._completion = completion
        self._turn_store = turn_store
        self._booking_service = booking_service
        self._send = send
        self._set_state = set_state
        self._post = post
        self._context = context
        self._booking = booking_config or BookingConfig()

        self.history: list[dict[str, str]] = []
        self._handle: Optional[CompletionHandle] = None
        self._turn: Optional[_Turn] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def submit_user_turn(self, text: str, mode: str) -> bool:
        message = (text or "").strip()
        if not message:
            log.info("event=empty_user_message mode=%s", mode)
            return False

        log.info(
            "event=user_turn_submitted mode=%s length=%d preview=%.80s",
            mode, len(message), message,
        )
        self.history.append({"role": "user", "content": message})

        self.cancel(reason="superseded")

        await self._set_state("thinking")
        await self._send(protocol.agent_text("", clear=True))

        turn = _Turn(
            message,
            mode,
            BookingStreamFilter(self._booking.placeholder_message, self._booking.action_name),
        )
        handle_ref: dict[str, CompletionHandle] = {}

        def relay(method: Callable[..., Awaitable[None]]) -> Callable[[Any], Awaitable[None]]:
            async def _callback(value: Any) -> None:
                self._post(partial(method, handle_ref["handle"], value))
            return _callback

        handle = self._completion.start(
            list(self.history),
            relay(self._on_token),
            relay(self._on_complete),
            relay(self._on_error),
        )
        handle_ref["handle"] = handle
        self._handle = handle
        self._turn = turn
        log.info("event=llm_call_initiated history_len=%d mode=%s", len(self.history), mode)
        return True

    def cancel(self, reason: str = "interrupt") -> bool:
        """Cancel the in-flight completion.  No token of it is forwarded afterwards."""
        handle, self._handle = self._handle, None
        self._turn = None
        if handle is None:
            return False
        handle.cancel()
        log.info("event=completion_cancelled reason=%s", reason)
        return True

    # -----------------------------------------------------------------------
    # Completion callbacks (run on the session's serialized stream)
    # -----------------------------------------------------------------------

    def _is_current(self, handle: CompletionHandle) -> bool:
        return handle is self._handle and handle.active and self._turn is not None

    async def _on_token(self, handle: CompletionHandle, token: str) -> None:
        if not self._is_current(handle):
            log.debug("event=late_token_dropped")
            return
        turn = self._turn
        turn.tokens.append(token)
        for out in turn.filter.feed(token):
            await self._send(protocol.agent_text(out))

    async def _on_complete(self, handle: CompletionHandle, full_text: str) -> None:
        if not self._is_current(handle):
            log.debug("event=late_completion_dropped")
            return
        turn = self._turn
        self._handle = None
        self._turn = None

        if not full_text:
            full_text = "".join(turn.tokens)
        self.history.append({"role": "assistant", "content": full_text})

        outcome = turn.filter.finish(full_text)
        display_text, failed = await self._apply_outcome(outcome, full_text, turn.filter.suppressing)

        await self._send(protocol.conversation_turn(
            turn.mode,
            turn.user_text,
            turn.user_ts.isoformat(),
            display_text,
            _utcnow().isoformat(),
        ))

        if failed:
            await self._set_state("error", error="booking_failed")
        elif turn.mode == MODE_CHAT:
            await self._set_state("idle")
        else:
            await self._set_state("speaking")
            await self._set_state("idle")

        log.info(
            "event=llm_response_complete mode=%s user_len=%d response_len=%d outcome=%s",
            turn.mode, len(turn.user_text), len(full_text), outcome.kind.value,
        )
        await self._save_turn(turn, full_text)

    async def _on_error(self, handle: CompletionHandle, exc: Exception) -> None:
        if not self._is_current(handle):
            log.debug("event=late_error_dropped error=%s", exc)
            return
        turn = self._turn
        self._handle = None
        self._turn = None

        log.error("event=llm_error mode=%s error=%s", turn.mode, exc)
        await self._save_turn(turn, f"Error: {exc}")
        await self._set_state("error", error="llm_error")

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _apply_outcome(
        self,
        outcome: BookingOutcome,
        full_text: str,
        placeholder_sent: bool,
    ) -> tuple[str, bool]:
        """Forward what the stream filter held back; dispatch bookings.

        Returns the text shown to the caller for this turn and whether the
        turn ended in a booking failure.
        """
        if outcome.kind is not OutcomeKind.TEXT and not placeholder_sent:
            # the reply arrived whole, without tokens the filter could catch
            await self._send(protocol.agent_text(self._booking.placeholder_message))

        if outcome.kind is OutcomeKind.TEXT:
            if outcome.replay_text is not None:
                await self._send(protocol.agent_text("", clear=True))
                await self._send(protocol.agent_text(outcome.replay_text))
            return full_text, False

        if outcome.kind is OutcomeKind.BOOKING:
            request = BookingRequest(
                payload=outcome.intent.payload,
                browser_session_id=self._context.browser_session_id,
                identity=self._context.identity,
                timezone=self._context.timezone,
            )
            try:
                booking_id = await self._booking_service.create(request)
            except Exception as exc:
                log.error("event=booking_create_failed error=%s", exc)
            else:
                log.info("event=booking_created booking_id=%s", booking_id)
                return self._booking.placeholder_message, False
        else:
            log.warning("event=booking_not_attempted error=%s", outcome.error)

        await self._send(protocol.agent_text("", clear=True))
        await self._send(protocol.agent_text(self._booking.failure_message))
        return self._booking.failure_message, True

    async def _save_turn(self, turn: _Turn, agent_text: str) -> None:
        record = ConversationTurn(
            user_text=turn.user_text,
            agent_text=agent_text,
            mode=turn.mode,
            timestamp=turn.user_ts,
            browser_session_id=self._context.browser_session_id,
            identity=self._context.identity,
        )
        try:
            await self._turn_store.save_turn(record)
        except Exception as exc:
            log.error(
                "event=error_saving_conversation_turn browser_session_id=%s error=%s",
                self._context.browser_session_id, exc,
            )
