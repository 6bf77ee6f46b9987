"""
protocol.py — wire protocol between the browser and a Session
==============================================================
One JSON object per text frame: ``{type, payload?, metadata?}``.

Inbound:   start_recording · stop_recording · audio_chunk{audio} ·
           chat_message{text} · interrupt
Outbound:  status{state, error?} · transcript{text, isFinal} ·
           agent_text{token, clear?} · conversation_turn{mode, user, agent}

``agent_audio{audio}`` is reserved for a synthesis stage; this engine does not
synthesise speech and never emits it.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import TransportError

START_RECORDING = "start_recording"
STOP_RECORDING  = "stop_recording"
AUDIO_CHUNK     = "audio_chunk"
CHAT_MESSAGE    = "chat_message"
INTERRUPT       = "interrupt"

STATUS            = "status"
TRANSCRIPT        = "transcript"
AGENT_TEXT        = "agent_text"
AGENT_AUDIO       = "agent_audio"
CONVERSATION_TURN = "conversation_turn"


class InboundMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    browser_session_id: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("browser_session_id", mode="before")
    @classmethod
    def _opaque_id(cls, value: Any) -> Any:
        # clients may send a numeric id; it is only ever compared as text
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class InboundMessage(BaseModel):
    type: str
    payload: Optional[dict[str, Any]] = None
    metadata: Optional[InboundMetadata] = None


class AudioChunkPayload(BaseModel):
    audio: str = Field(min_length=1, description="base64 PCM16 16 kHz mono")

    def pcm(self) -> bytes:
        try:
            return base64.b64decode(self.audio, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise TransportError(f"audio_chunk is not valid base64: {exc}") from exc


class ChatMessagePayload(BaseModel):
    text: str = ""


def parse_frame(raw: str | bytes) -> InboundMessage:
    """Parse one inbound frame.  Raises TransportError on anything unparseable."""
    try:
        return InboundMessage.model_validate_json(raw)
    except ValidationError as exc:
        raise TransportError(f"malformed frame: {exc.error_count()} error(s)") from exc


def parse_payload(message: InboundMessage, model: type[BaseModel]) -> BaseModel:
    try:
        return model.model_validate(message.payload or {})
    except ValidationError as exc:
        raise TransportError(f"malformed {message.type} payload") from exc


# ---------------------------------------------------------------------------
# Outbound builders
# ---------------------------------------------------------------------------

def outbound(type_: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": type_, "payload": payload}


def status(state: str, error: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"state": state}
    if error is not None:
        payload["error"] = error
    return outbound(STATUS, payload)


def transcript(text: str, is_final: bool) -> dict[str, Any]:
    return outbound(TRANSCRIPT, {"text": text, "isFinal": is_final})


def agent_text(token: str, clear: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {"token": token}
    if clear:
        payload["clear"] = True
    return outbound(AGENT_TEXT, payload)


def conversation_turn(
    mode: str,
    user_text: str,
    user_ts: str,
    agent_text_: str,
    agent_ts: str,
) -> dict[str, Any]:
    return outbound(CONVERSATION_TURN, {
        "mode":  mode,
        "user":  {"text": user_text,   "timestamp": user_ts},
        "agent": {"text": agent_text_, "timestamp": agent_ts},
    })
