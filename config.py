"""
config.py — Receptionist Voice Engine · Runtime Configuration
==============================================================
Pydantic models for every tunable parameter across the engine.
Serialises to / deserialises from JSON.  Used by:
  • server.py    — GET/PUT /config endpoints, builds providers and stores
  • session.py   — endpointer timings and transcript heuristics
  • providers.py — Groq / Deepgram request parameters

Secrets (GROQ_API_KEY, DEEPGRAM_API_KEY) are read from the environment,
never from the config file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("receptionist.config")

# ---------------------------------------------------------------------------
# Default system prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a warm, polite, and professional AI hospital appointment receptionist.
Your ONLY responsibility is to collect appointment details and prepare them for booking.

Tone and behavior:
- Always sound calm, kind, and respectful.
- If the caller asks for jokes, chit-chat, or anything unrelated to appointments,
  politely decline, briefly explain your role, then guide them back to the appointment.
- Never mention implementation details like "JSON", "payload", field names or the word "null".
- Do NOT use Markdown formatting. Keep responses short and natural (1-2 sentences).
- Ask only ONE question at a time. Do NOT answer medical questions.

Collect, in this order: the medical concern, the preferred appointment date and time,
then the patient's full name, age and contact phone number. Email address and
preferred doctor or specialty are optional.

REQUIRED FIELDS: name, age, contact_number, medical_concern, appointment_datetime.

Once ALL required fields are collected, summarise the details in plain sentences and
ask the caller to confirm. Do NOT book until the caller explicitly confirms.

AFTER confirmation output ONLY a single valid JSON object, with no text before or after it:

{
  "action": "book_appointment",
  "payload": {
    "name": string,
    "age": number,
    "contact_number": string,
    "medical_concern": string,
    "appointment_datetime": string,
    "email": string or null,
    "doctor_preference": string or null
  }
}

appointment_datetime MUST be ISO 8601. Optional fields must be null if not provided.
"""

DEFAULT_PLACEHOLDER_MESSAGE = "Thank you. One moment while I book your appointment."
DEFAULT_FAILURE_MESSAGE = (
    "I'm sorry, I couldn't complete the booking because some details were missing. "
    "Could we go over your appointment details once more?"
)


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq LLM parameters (passed to AsyncGroq chat.completions.create)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    max_tokens: Optional[int] = Field(default=500, ge=1, description="Max response tokens")
    seed: Optional[int] = Field(default=None, description="Deterministic sampling seed")


class DeepgramConfig(BaseModel):
    """Deepgram live STT parameters (query string of the listen websocket)."""
    url: str = Field(default="wss://api.deepgram.com/v1/listen", description="Live listen endpoint")
    model: str = Field(default="nova-2", description="Deepgram model")
    language: str = Field(default="en", description="Language code")
    encoding: str = Field(default="linear16", description="Audio encoding")
    sample_rate: int = Field(default=16000, description="Audio sample rate (Hz)")
    channels: int = Field(default=1, ge=1, le=2, description="Audio channels")
    interim_results: bool = Field(default=True, description="Stream partial results")
    smart_format: bool = Field(default=True, description="Auto-formatting")
    punctuate: Optional[bool] = Field(default=None, description="Add punctuation")
    endpointing: Optional[int] = Field(default=None, ge=0, le=5000, description="Provider endpointing (ms)")

    def query_params(self) -> dict[str, str]:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": self.encoding,
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
            "interim_results": str(self.interim_results).lower(),
            "smart_format": str(self.smart_format).lower(),
        }
        if self.punctuate is not None:
            params["punctuate"] = str(self.punctuate).lower()
        if self.endpointing is not None:
            params["endpointing"] = str(self.endpointing)
        return params


class EndpointerConfig(BaseModel):
    """Silence-based endpointing timings (milliseconds)."""
    tick_interval_ms: int = Field(default=100, ge=10, le=1000, description="Endpointer tick period")
    silence_threshold_ms: int = Field(default=5000, ge=0, description="Silence before an utterance is suspected complete")
    final_transcript_buffer_ms: int = Field(default=1500, ge=0, description="Settle time for a stable transcript")
    wait_after_final_ms: int = Field(default=2000, ge=0, description="Settle time after a provider final hint")
    max_wait_ms: int = Field(default=5000, ge=0, description="Hard cap on the buffering stage")


class TranscriptConfig(BaseModel):
    """Empirical constants of the merge / new-utterance heuristics."""
    new_utterance_ratio: float = Field(default=0.5, gt=0.0, le=1.0, description="Length drop that hints at a new utterance")
    edge_overlap_chars: int = Field(default=10, ge=1, description="Edge window for continuation overlap")
    prefix_match_chars: int = Field(default=20, ge=1, description="Prefix of last-sent text checked for containment")
    start_match_chars: int = Field(default=10, ge=1, description="Leading characters compared for a shared start")


class BookingConfig(BaseModel):
    """Structured booking-intent detection."""
    action_name: str = Field(default="book_appointment", description="Action name marker")
    placeholder_message: str = Field(default=DEFAULT_PLACEHOLDER_MESSAGE, description="Sent while a booking is detected")
    failure_message: str = Field(default=DEFAULT_FAILURE_MESSAGE, description="Sent when a booking is abandoned")


class StorageConfig(BaseModel):
    """Local collaborator stores."""
    turns_path: str = Field(default="data/conversation_turns.jsonl", description="Conversation turn log")
    bookings_path: str = Field(default="data/bookings.jsonl", description="Booking log")
    sessions_path: Optional[str] = Field(default=None, description="browser_session_id → identity JSON map")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Complete runtime configuration for the engine."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    endpointer: EndpointerConfig = Field(default_factory=EndpointerConfig)
    transcript: TranscriptConfig = Field(default_factory=TranscriptConfig)
    booking: BookingConfig = Field(default_factory=BookingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Read *path*; a missing, unreadable or invalid file yields the defaults."""
        source = Path(path)
        if not source.is_file():
            log.info("event=config_defaults path=%s reason=missing", source)
            return cls()
        try:
            loaded = cls.model_validate_json(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", source, exc)
            return cls()
        log.info("event=config_loaded path=%s", source)
        return loaded

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        log.info("event=config_saved path=%s", target)

    def merge_patch(self, patch: dict) -> "EngineConfig":
        """Apply a ``PUT /config`` body and revalidate the result.

        Sections merge field by field, so ``{"deepgram": {"endpointing": 300}}``
        keeps the rest of the Deepgram section.  ``system_prompt`` and other
        scalars are replaced outright.  Raises ``ValidationError`` when the
        merged config breaks a bound; ``self`` is never modified.
        """
        merged = _overlay(self.model_dump(), patch)
        return EngineConfig.model_validate(merged)


def _overlay(current: dict, patch: dict) -> dict:
    merged = dict(current)
    for key, value in patch.items():
        section = merged.get(key)
        if isinstance(section, dict) and isinstance(value, dict):
            merged[key] = _overlay(section, value)
        else:
            merged[key] = value
    return merged
