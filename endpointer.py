"""
endpointer.py — silence-based utterance endpointing
===================================================
Decides when the user has finished an utterance.  A fixed-period tick is the
only driver; the session calls ``tick()`` every ``tick_interval_ms`` on its
serialized event stream.

    ARMED ──silence──▶ SILENCE_SUSPECTED ──snapshot──▶ BUFFERING ──▶ FINALIZED ──▶ ARMED

Two stages
──────────
A single silence threshold either cuts speakers off mid-sentence or adds
latency to every turn.  The first stage (``silence_threshold``) only
*suspects* the end of the utterance; the buffering stage then waits for the
transcript to settle:

  • transcript grew since the previous tick  → speaker still active, restart
  • provider final hint received             → finalize ``wait_after_final``
                                               after the hint
  • no hint, stable for ``final_buffer``     → finalize
  • buffering for ``max_wait``               → finalize regardless

A monotonic deadline comparison on each tick (instead of nested timers with
guard flags) means a restart simply moves the anchor forward; there is no
window in which a stale timer can fire.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Optional

from config import EndpointerConfig
from transcript import PendingTranscript

log = logging.getLogger("receptionist.endpointer")


class EndpointState(Enum):
    ARMED             = "armed"
    SILENCE_SUSPECTED = "silence_suspected"
    BUFFERING         = "buffering"
    FINALIZED         = "finalized"


class Endpointer:
    """Per-recording endpointing state machine over a PendingTranscript."""

    def __init__(
        self,
        pending: PendingTranscript,
        config: Optional[EndpointerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or EndpointerConfig()
        self._pending = pending
        self._clock = clock

        self.silence_threshold = cfg.silence_threshold_ms / 1000.0
        self.final_buffer      = cfg.final_transcript_buffer_ms / 1000.0
        self.wait_after_final  = cfg.wait_after_final_ms / 1000.0
        self.max_wait          = cfg.max_wait_ms / 1000.0

        self.state = EndpointState.ARMED
        self._snapshot: str = ""
        self._buffer_started: float = 0.0
        self._last_length: int = 0
        self._hint_anchor: Optional[float] = None

    @property
    def finalize_pending(self) -> bool:
        return self.state in (EndpointState.SILENCE_SUSPECTED, EndpointState.BUFFERING)

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def cancel_pending(self) -> None:
        """A new utterance started while buffering: restart endpointing."""
        if self.finalize_pending:
            log.info("event=finalize_cancelled reason=new_utterance")
        self._arm()

    def force_finalize(self) -> Optional[str]:
        """Finalize immediately, bypassing the buffer stages."""
        if self._pending.is_empty and not self._snapshot.strip():
            self._arm()
            return None
        log.info("event=force_finalize state=%s", self.state.value)
        return self._finalize()

    # -----------------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------------

    def tick(self) -> Optional[str]:
        """Advance the state machine once.  Returns the finalized text, if any."""
        now = self._clock()

        if self.state is EndpointState.ARMED:
            last = self._pending.last_transcript_time
            if last is None or self._pending.is_empty:
                return None
            if now - last < self.silence_threshold:
                return None
            self.state = EndpointState.SILENCE_SUSPECTED
            log.info(
                "event=silence_threshold_reached silence_ms=%.0f pending_len=%d",
                (now - last) * 1000, len(self._pending.text),
            )

        if self.state is EndpointState.SILENCE_SUSPECTED:
            self._snapshot = self._pending.text.strip()
            self._buffer_started = now
            self._last_length = len(self._pending.text)
            self._hint_anchor = None
            self.state = EndpointState.BUFFERING
            return None

        if self.state is EndpointState.BUFFERING:
            return self._buffer_tick(now)

        return None

    def _buffer_tick(self, now: float) -> Optional[str]:
        length = len(self._pending.text) if not self._pending.is_empty else len(self._snapshot)
        if length > self._last_length:
            self._last_length = length
            self._buffer_started = now
            self._hint_anchor = None
            log.debug("event=transcript_still_updating length=%d", length)
            return None

        elapsed = now - self._buffer_started

        if self._pending.received_final_hint:
            if self._hint_anchor is None:
                hint_at = self._pending.final_hint_time
                self._hint_anchor = (
                    hint_at if hint_at is not None and hint_at >= self._buffer_started else now
                )
            since_hint = now - self._hint_anchor
            if since_hint >= self.wait_after_final:
                log.info(
                    "event=finalize reason=final_hint since_hint_ms=%.0f buffer_ms=%.0f",
                    since_hint * 1000, elapsed * 1000,
                )
                return self._finalize()
        elif elapsed >= self.final_buffer:
            log.info("event=finalize reason=stable_buffer buffer_ms=%.0f", elapsed * 1000)
            return self._finalize()

        if elapsed >= self.max_wait:
            log.info("event=finalize reason=max_wait buffer_ms=%.0f", elapsed * 1000)
            return self._finalize()

        return None

    # -----------------------------------------------------------------------
    # Finalize
    # -----------------------------------------------------------------------

    def _finalize(self) -> Optional[str]:
        self.state = EndpointState.FINALIZED
        latest = self._pending.text.strip()
        text = latest or self._snapshot

        if not text:
            log.info("event=finalize_skipped reason=empty")
            text = None
        elif text == self._pending.last_finalized_text:
            log.info("event=finalize_skipped reason=duplicate text=%.80s", text)
            text = None
        else:
            self._pending.last_finalized_text = text

        self._pending.clear()
        self._arm()
        return text

    def _arm(self) -> None:
        self.state = EndpointState.ARMED
        self._snapshot = ""
        self._buffer_started = 0.0
        self._last_length = 0
        self._hint_anchor = None
