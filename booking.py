"""
booking.py — structured booking-intent detection
================================================
After explicit confirmation the receptionist prompt makes the model answer
with a single JSON object instead of conversational text::

    {"action": "book_appointment", "payload": {...}}

Such a response must never reach the caller as raw text.  Detection happens in
two places:

  • ``BookingStreamFilter.feed``, while tokens stream.  The first
    non-whitespace character decides: ``{`` means a booking is suspected, the
    placeholder message goes out at once and further tokens are held back.
  • ``BookingStreamFilter.finish``, on the completed response.  Only a text
    that starts with ``{`` and carries the action-name marker is parsed.  A
    parse failure falls back to ordinary text; a payload that misses required
    fields abandons the booking with a user-visible error.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import BookingError

log = logging.getLogger("receptionist.booking")

BOOKING_ACTION = "book_appointment"


class BookingParseError(ValueError):
    """The response looked like a booking but is not one.  Treat it as text."""


class BookingPayload(BaseModel):
    """The fixed booking schema: required patient details plus optional preferences."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=1)
    age: int = Field(ge=0, le=150, strict=True)
    contact_number: str = Field(min_length=1)
    medical_concern: str = Field(min_length=1)
    appointment_datetime: datetime
    email: Optional[str] = None
    doctor_preference: Optional[str] = None


@dataclass(frozen=True)
class BookingIntent:
    action: str
    payload: BookingPayload


def is_booking_candidate(text: str, action_name: str = BOOKING_ACTION) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") and action_name in stripped


def parse_booking_intent(text: str, action_name: str = BOOKING_ACTION) -> BookingIntent:
    """Strictly parse a completed response into a BookingIntent.

    Raises BookingParseError when the text is not a booking action at all and
    BookingError when it is one but the payload is invalid.
    """
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        raise BookingParseError(f"not valid JSON: {exc.msg}") from exc

    if not isinstance(data, dict) or data.get("action") != action_name:
        raise BookingParseError("action missing or not a booking action")

    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise BookingError("booking payload missing")

    try:
        return BookingIntent(action=action_name, payload=BookingPayload.model_validate(payload))
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise BookingError(f"invalid booking fields: {', '.join(fields)}") from exc


# ---------------------------------------------------------------------------
# Per-turn stream filter
# ---------------------------------------------------------------------------

class _Mode(Enum):
    UNDECIDED   = "undecided"
    PASSTHROUGH = "passthrough"
    SUSPECTED   = "suspected"


class OutcomeKind(Enum):
    TEXT    = "text"      # ordinary conversational response
    BOOKING = "booking"   # valid booking; raw text was never forwarded
    INVALID = "invalid"   # booking detected but abandoned


@dataclass(frozen=True)
class BookingOutcome:
    kind: OutcomeKind
    intent: Optional[BookingIntent] = None
    replay_text: Optional[str] = None   # suppressed text to forward after a clear
    error: Optional[str] = None


class BookingStreamFilter:
    """Decides, token by token, what of one response reaches the far end."""

    def __init__(self, placeholder: str, action_name: str = BOOKING_ACTION) -> None:
        self._placeholder = placeholder
        self._action_name = action_name
        self._mode = _Mode.UNDECIDED
        self._held = ""

    @property
    def suppressing(self) -> bool:
        return self._mode is _Mode.SUSPECTED

    def feed(self, token: str) -> list[str]:
        """Return the tokens to forward for *token* (possibly none)."""
        if self._mode is _Mode.PASSTHROUGH:
            return [token]
        if self._mode is _Mode.SUSPECTED:
            return []

        self._held += token
        head = self._held.lstrip()
        if not head:
            return []
        if head.startswith("{"):
            self._mode = _Mode.SUSPECTED
            log.info("event=booking_suspected")
            return [self._placeholder]
        self._mode = _Mode.PASSTHROUGH
        held, self._held = self._held, ""
        return [held]

    def finish(self, full_text: str) -> BookingOutcome:
        if is_booking_candidate(full_text, self._action_name):
            try:
                intent = parse_booking_intent(full_text, self._action_name)
            except BookingParseError as exc:
                log.info("event=booking_parse_failed reason=%s fallback=text", exc)
            except BookingError as exc:
                log.warning("event=booking_abandoned reason=%s", exc)
                return BookingOutcome(OutcomeKind.INVALID, error=str(exc))
            else:
                log.info("event=booking_intent_detected name=%.40s", intent.payload.name)
                return BookingOutcome(OutcomeKind.BOOKING, intent=intent)

        if self._mode is _Mode.SUSPECTED:
            return BookingOutcome(OutcomeKind.TEXT, replay_text=full_text)
        if self._mode is _Mode.UNDECIDED and full_text.strip():
            return BookingOutcome(OutcomeKind.TEXT, replay_text=full_text)
        return BookingOutcome(OutcomeKind.TEXT)
