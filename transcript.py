"""
transcript.py — Transcript Accumulator
======================================
The transcription provider re-emits a *full* hypothesis for the current
utterance on every event rather than a delta.  Hypotheses grow, shrink and get
corrected mid-word, so a plain "replace" loses earlier clauses and a plain
"append" duplicates content.  ``merge`` keeps one evolving pending transcript
using case-insensitive containment checks.

Known limitation: the containment heuristic occasionally mis-segments (e.g. a
corrected hypothesis that shares no 10-character edge with the previous one is
appended rather than substituted).  The behaviour is load-bearing for the
endpointer and is kept as-is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger("receptionist.transcript")

# Overridden per session from config.transcript
EDGE_OVERLAP_CHARS  = 10
NEW_UTTERANCE_RATIO = 0.5
PREFIX_MATCH_CHARS  = 20
START_MATCH_CHARS   = 10


def merge(
    pending: Optional[str],
    incoming: str,
    *,
    edge_chars: int = EDGE_OVERLAP_CHARS,
) -> str:
    """Merge an incoming full hypothesis into the pending transcript."""
    new = incoming.strip()
    old = (pending or "").strip()
    if not old:
        return new

    old_lower = old.lower()
    new_lower = new.lower()
    new_contains_old = old_lower in new_lower
    old_contains_new = new_lower in old_lower

    if len(new) > len(old):
        if new_contains_old:
            return new                                  # extension of the same utterance
        if not old_contains_new:
            log.debug("event=appending_separate_segment old_len=%d new_len=%d", len(old), len(new))
            return f"{old} {new}"                        # disjoint continuation segment
        return new                                      # longer hypothesis supersedes

    if new_contains_old and len(new) >= len(old):
        return new                                      # in-place correction

    if old_contains_new and len(old) > len(new):
        return old                                      # keep the more complete one

    if len(new) == len(old) and new != old:
        return new if new_contains_old else old

    if len(new) < len(old) and not new_contains_old and not old_contains_new:
        old_end = old_lower[-edge_chars:]
        new_start = new_lower[:edge_chars]
        if old_end not in new_start and new_start not in old_end:
            log.debug("event=appending_continuation old_len=%d new_len=%d", len(old), len(new))
            return f"{old} {new}"

    return old


def is_new_utterance(
    current: str,
    last_sent: Optional[str],
    *,
    ratio: float = NEW_UTTERANCE_RATIO,
    prefix_chars: int = PREFIX_MATCH_CHARS,
    start_chars: int = START_MATCH_CHARS,
) -> bool:
    """True when *current* starts a new utterance rather than updating *last_sent*.

    A new utterance is either the first transcript of the recording, or a
    transcript that dropped below ``ratio`` of the previous length while sharing
    neither its prefix nor its leading characters.
    """
    if not last_sent:
        return True
    current_lower = current.lower()
    sent_lower = last_sent.lower()
    contains_previous = sent_lower[:prefix_chars] in current_lower
    starts_differently = not current_lower.startswith(sent_lower[:start_chars])
    return (
        len(current) < len(last_sent) * ratio
        and not contains_previous
        and starts_differently
    )


@dataclass(frozen=True)
class TranscriptUpdate:
    text: str
    changed: bool
    new_utterance: bool


class PendingTranscript:
    """The evolving transcript of the current utterance plus its bookkeeping."""

    def __init__(
        self,
        *,
        edge_chars: int = EDGE_OVERLAP_CHARS,
        ratio: float = NEW_UTTERANCE_RATIO,
        prefix_chars: int = PREFIX_MATCH_CHARS,
        start_chars: int = START_MATCH_CHARS,
    ) -> None:
        self._edge_chars = edge_chars
        self._ratio = ratio
        self._prefix_chars = prefix_chars
        self._start_chars = start_chars
        self.reset()

    def reset(self) -> None:
        """Forget everything, including the duplicate-finalize guard."""
        self.clear()
        self.last_finalized_text: Optional[str] = None

    def clear(self) -> None:
        """Drop the current utterance.  ``last_finalized_text`` survives."""
        self.text: str = ""
        self.last_transcript_time: Optional[float] = None
        self.last_sent_transcript: Optional[str] = None
        self.received_final_hint: bool = False
        self.final_hint_time: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    def _mark_final_hint(self, now: float) -> None:
        if not self.received_final_hint:
            self.final_hint_time = now
        self.received_final_hint = True

    def apply(self, text: str, is_final: bool, now: float) -> TranscriptUpdate:
        """Fold one provider event into the pending transcript."""
        incoming = text.strip()
        if not incoming:
            return TranscriptUpdate(self.text, changed=False, new_utterance=False)

        if is_final:
            self._mark_final_hint(now)

        self.text = merge(self.text, incoming, edge_chars=self._edge_chars)
        current = self.text.strip()

        if not current or current == self.last_sent_transcript:
            return TranscriptUpdate(current, changed=False, new_utterance=False)

        new_utterance = is_new_utterance(
            current,
            self.last_sent_transcript,
            ratio=self._ratio,
            prefix_chars=self._prefix_chars,
            start_chars=self._start_chars,
        )
        self.last_sent_transcript = current
        self.last_transcript_time = now

        if new_utterance:
            self.received_final_hint = False
            self.final_hint_time = None
            log.info(
                "event=new_utterance_detected length=%d preview=%.50s",
                len(current), current,
            )
        elif is_final:
            self._mark_final_hint(now)

        return TranscriptUpdate(current, changed=True, new_utterance=new_utterance)
