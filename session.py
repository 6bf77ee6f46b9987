"""
session.py — one live connection
================================
A Session owns every piece of mutable state of one browser connection:
protocol dispatch, the pending transcript, the endpointer, the turn
orchestrator, the transcription handle and the endpointer tick.

Serialized event stream
───────────────────────
Inbound frames, transcript events, completion tokens/completions/errors and
endpointer ticks are all posted onto a single ``asyncio.Queue`` and executed
one at a time by the session's pump task.  No two callbacks of the same
session ever run concurrently; suspension happens only while an event awaits
collaborator I/O, and results re-enter through the same queue.  Sessions
share nothing, so an exception inside one session's event is logged and
never reaches another session.

State machine
─────────────
    connected ─start_recording─▶ listening ─(finalize | chat)─▶ thinking
    thinking ─complete─▶ speaking ─▶ idle          (chat: thinking ─▶ idle)
    any ─interrupt─▶ interrupted        any ─provider failure─▶ error
    any ─stop_recording─▶ idle
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from config import EngineConfig
from endpointer import Endpointer
from errors import ProviderError, TransportError
from orchestrator import MODE_CHAT, MODE_VOICE, TurnContext, TurnOrchestrator
from ports import (
    BookingService,
    CompletionPort,
    SessionLookup,
    TranscriptEvent,
    TranscriptionHandle,
    TranscriptionPort,
    TurnStore,
)
from transcript import PendingTranscript
import protocol

log = logging.getLogger("receptionist.session")


class SessionState(Enum):
    CONNECTED   = "connected"
    LISTENING   = "listening"
    THINKING    = "thinking"
    SPEAKING    = "speaking"
    IDLE        = "idle"
    INTERRUPTED = "interrupted"
    ERROR       = "error"


@dataclass
class Collaborators:
    completion: CompletionPort
    transcription: TranscriptionPort
    session_lookup: SessionLookup
    turn_store: TurnStore
    booking_service: BookingService


Send  = Callable[[dict], Awaitable[None]]
Event = Callable[[], Awaitable[None]]


class Session:
    def __init__(
        self,
        session_id: str,
        send: Send,
        collaborators: Collaborators,
        config: Optional[EngineConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.config = config or EngineConfig()
        self._send_fn = send
        self._collab = collaborators
        self._clock = clock

        self.state = SessionState.CONNECTED
        self.is_recording = False
        self.started_at = time.monotonic()
        self.context = TurnContext()

        tcfg = self.config.transcript
        self.pending = PendingTranscript(
            edge_chars=tcfg.edge_overlap_chars,
            ratio=tcfg.new_utterance_ratio,
            prefix_chars=tcfg.prefix_match_chars,
            start_chars=tcfg.start_match_chars,
        )
        self.endpointer = Endpointer(self.pending, self.config.endpointer, clock=clock)
        self.orchestrator = TurnOrchestrator(
            completion=collaborators.completion,
            turn_store=collaborators.turn_store,
            booking_service=collaborators.booking_service,
            send=self._send,
            set_state=self.set_state,
            post=self.post,
            context=self.context,
            booking_config=self.config.booking,
        )

        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._tick_queued = False
        self._transcription: Optional[TranscriptionHandle] = None
        self._stt_generation = 0
        self._closed = False

        self._handlers: dict[str, Callable[[protocol.InboundMessage], Awaitable[None]]] = {
            protocol.START_RECORDING: self._on_start_recording,
            protocol.STOP_RECORDING:  self._on_stop_recording,
            protocol.AUDIO_CHUNK:     self._on_audio_chunk,
            protocol.CHAT_MESSAGE:    self._on_chat_message,
            protocol.INTERRUPT:       self._on_interrupt,
        }

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        self._pump_task = asyncio.create_task(self._pump(), name=f"session_pump_{self.session_id}")
        log.info("event=client_connected session=%s", self.session_id)
        await self.set_state(SessionState.CONNECTED)

    async def close(self) -> None:
        """Tear the session down.  Nothing is sent after this returns."""
        if self._closed:
            return
        self._closed = True
        log.info("event=client_disconnected session=%s state=%s", self.session_id, self.state.value)

        dropped = self.endpointer.force_finalize()
        if dropped:
            log.info("event=utterance_dropped_on_disconnect length=%d preview=%.80s", len(dropped), dropped)

        self._stop_tick_loop()
        self.orchestrator.cancel(reason="disconnect")
        await self._close_transcription()
        self.is_recording = False
        self.pending.reset()

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id":         self.session_id,
            "state":              self.state.value,
            "recording":          self.is_recording,
            "browser_session_id": self.context.browser_session_id,
            "history_len":        len(self.orchestrator.history),
            "uptime_sec":         round(time.monotonic() - self.started_at, 1),
        }

    # -----------------------------------------------------------------------
    # Serialized event stream
    # -----------------------------------------------------------------------

    def post(self, event: Event) -> None:
        """Queue *event* to run after every event posted before it."""
        if self._closed:
            return
        self._inbox.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has run."""
        await self._inbox.join()

    async def _pump(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                await event()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("event=session_event_error session=%s", self.session_id)
            finally:
                self._inbox.task_done()

    async def handle_frame(self, raw: str | bytes) -> None:
        self.post(partial(self._dispatch, raw))

    async def tick(self) -> None:
        """Queue one endpointer evaluation."""
        self.post(self._on_tick)

    # -----------------------------------------------------------------------
    # Outbound
    # -----------------------------------------------------------------------

    async def _send(self, message: dict) -> None:
        if self._closed:
            return
        try:
            await self._send_fn(message)
        except Exception as exc:
            log.debug("event=send_failed session=%s type=%s error=%s", self.session_id, message.get("type"), exc)

    async def set_state(self, state: SessionState | str, error: Optional[str] = None) -> None:
        self.state = SessionState(state)
        await self._send(protocol.status(self.state.value, error))

    # -----------------------------------------------------------------------
    # Inbound dispatch
    # -----------------------------------------------------------------------

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = protocol.parse_frame(raw)
        except TransportError as exc:
            log.warning("event=message_parse_error session=%s error=%s", self.session_id, exc)
            return

        await self._capture_metadata(message.metadata)

        handler = self._handlers.get(message.type)
        if handler is None:
            log.info("event=unknown_message_type session=%s type=%s", self.session_id, message.type)
            return
        try:
            await handler(message)
        except TransportError as exc:
            log.warning("event=message_payload_error session=%s type=%s error=%s", self.session_id, message.type, exc)

    async def _capture_metadata(self, metadata: Optional[protocol.InboundMetadata]) -> None:
        if metadata is None:
            return
        if metadata.timezone and self.context.timezone is None:
            self.context.timezone = metadata.timezone
        if metadata.browser_session_id and self.context.browser_session_id is None:
            self.context.browser_session_id = str(metadata.browser_session_id)
            try:
                self.context.identity = await self._collab.session_lookup.resolve_identity(
                    self.context.browser_session_id
                )
            except Exception as exc:
                log.error(
                    "event=error_resolving_session_user browser_session_id=%s error=%s",
                    self.context.browser_session_id, exc,
                )
                self.context.identity = None
            log.info(
                "event=browser_session_bound session=%s browser_session_id=%s has_user=%s",
                self.session_id, self.context.browser_session_id, self.context.identity is not None,
            )

    async def _on_start_recording(self, message: protocol.InboundMessage) -> None:
        log.info("event=start_recording_received session=%s", self.session_id)
        if self._transcription is not None:
            log.info("event=recording_restarted session=%s", self.session_id)
            await self._close_transcription()

        self.pending.reset()
        self.endpointer.cancel_pending()
        self._stt_generation += 1
        generation = self._stt_generation
        try:
            self._transcription = await self._collab.transcription.open(
                partial(self._relay_transcript, generation),
                partial(self._relay_stt_error, generation),
            )
        except ProviderError as exc:
            log.error("event=stt_open_failed session=%s error=%s", self.session_id, exc)
            self.is_recording = False
            self._stop_tick_loop()
            await self.set_state(SessionState.ERROR, error=exc.code)
            return

        self.is_recording = True
        self._start_tick_loop()
        await self.set_state(SessionState.LISTENING)

    async def _on_stop_recording(self, message: protocol.InboundMessage) -> None:
        log.info("event=stop_recording_received session=%s", self.session_id)
        self.is_recording = False
        self._stop_tick_loop()

        text = self.endpointer.force_finalize()
        if text:
            await self._deliver_utterance(text)

        await self._close_transcription()
        self.pending.reset()
        await self.set_state(SessionState.IDLE)

    async def _on_audio_chunk(self, message: protocol.InboundMessage) -> None:
        chunk = protocol.parse_payload(message, protocol.AudioChunkPayload)
        if not self.is_recording or self._transcription is None:
            log.debug("event=audio_chunk_dropped session=%s reason=not_recording", self.session_id)
            return
        await self._transcription.write(chunk.pcm())

    async def _on_chat_message(self, message: protocol.InboundMessage) -> None:
        chat = protocol.parse_payload(message, protocol.ChatMessagePayload)
        log.info("event=chat_message_received session=%s text_len=%d", self.session_id, len(chat.text))
        await self.orchestrator.submit_user_turn(chat.text, MODE_CHAT)

    async def _on_interrupt(self, message: protocol.InboundMessage) -> None:
        log.info("event=interrupt_received session=%s", self.session_id)
        self.orchestrator.cancel(reason="interrupt")
        await self.set_state(SessionState.INTERRUPTED)

    # -----------------------------------------------------------------------
    # Transcription
    # -----------------------------------------------------------------------

    async def _relay_transcript(self, generation: int, event: TranscriptEvent) -> None:
        self.post(partial(self._on_transcript, generation, event))

    async def _relay_stt_error(self, generation: int, exc: Exception) -> None:
        self.post(partial(self._on_stt_error, generation, exc))

    async def _on_transcript(self, generation: int, event: TranscriptEvent) -> None:
        if generation != self._stt_generation or self._transcription is None:
            log.debug("event=stale_transcript_dropped session=%s", self.session_id)
            return

        update = self.pending.apply(event.text, event.is_final, self._clock())
        if not update.changed:
            return
        if update.new_utterance and self.endpointer.finalize_pending:
            self.endpointer.cancel_pending()
        await self._send(protocol.transcript(update.text, False))

    async def _on_stt_error(self, generation: int, exc: Exception) -> None:
        if generation != self._stt_generation:
            return
        log.error("event=stt_error session=%s error=%s", self.session_id, exc)
        code = exc.code if isinstance(exc, ProviderError) else "stt_error"
        await self.set_state(SessionState.ERROR, error=code)

    async def _close_transcription(self) -> None:
        handle, self._transcription = self._transcription, None
        self._stt_generation += 1
        if handle is None:
            return
        log.info("event=stopping_transcription_stream session=%s", self.session_id)
        try:
            await handle.close()
        except Exception as exc:
            log.warning("event=transcription_close_error session=%s error=%s", self.session_id, exc)

    # -----------------------------------------------------------------------
    # Endpointer tick
    # -----------------------------------------------------------------------

    def _start_tick_loop(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            return
        self._tick_task = asyncio.create_task(self._tick_loop(), name=f"endpointer_tick_{self.session_id}")
        log.info("event=silence_detection_started session=%s", self.session_id)

    def _stop_tick_loop(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
            log.debug("event=silence_detection_stopped session=%s", self.session_id)
        self._tick_task = None
        self._tick_queued = False

    async def _tick_loop(self) -> None:
        interval = self.config.endpointer.tick_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            if not self._tick_queued:
                self._tick_queued = True
                self.post(self._on_tick)

    async def _on_tick(self) -> None:
        self._tick_queued = False
        if not self.is_recording:
            return
        text = self.endpointer.tick()
        if text:
            await self._deliver_utterance(text)

    async def _deliver_utterance(self, text: str) -> None:
        log.info("event=transcript_finalized session=%s length=%d text=%.80s", self.session_id, len(text), text)
        await self._send(protocol.transcript(text, True))
        await self.orchestrator.submit_user_turn(text, MODE_VOICE)
