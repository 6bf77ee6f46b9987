"""
providers.py — default streaming provider adapters
==================================================
  • GroqCompletionPort        AsyncGroq streaming chat completion
  • DeepgramTranscriptionPort raw Deepgram live websocket (interim + final)

When a credential is missing the engine degrades instead of failing session
creation: ``build_providers`` swaps in ``PlaceholderCompletionPort`` (answers
once with a "not configured" notice) or ``NullTranscriptionPort`` (accepts and
drops audio).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence
from urllib.parse import urlencode

import websockets
from groq import AsyncGroq

from config import DeepgramConfig, EngineConfig, GroqConfig
from errors import ConfigurationError, ProviderError
from ports import (
    CompletionHandle,
    CompletionPort,
    OnComplete,
    OnError,
    OnToken,
    OnTranscript,
    TranscriptEvent,
    TranscriptionPort,
)

log = logging.getLogger("receptionist.providers")

PLACEHOLDER_REPLY = "LLM is not configured. Please set GROQ_API_KEY."


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class GroqCompletionPort:
    """Streams chat completions from Groq with the receptionist system prompt."""

    def __init__(
        self,
        api_key: str,
        config: Optional[GroqConfig] = None,
        system_prompt: str = "",
        client: Optional[AsyncGroq] = None,
    ) -> None:
        if not api_key and client is None:
            raise ConfigurationError("GROQ_API_KEY is not set")
        self._config = config or GroqConfig()
        self._system_prompt = system_prompt
        self._client = client or AsyncGroq(api_key=api_key)

    def _request_kwargs(self) -> dict:
        cfg = self._config
        kwargs: dict = {"model": cfg.model, "stream": True}
        if cfg.temperature is not None:
            kwargs["temperature"] = cfg.temperature
        if cfg.top_p is not None:
            kwargs["top_p"] = cfg.top_p
        if cfg.max_tokens is not None:
            kwargs["max_tokens"] = cfg.max_tokens
        if cfg.seed is not None:
            kwargs["seed"] = cfg.seed
        return kwargs

    def start(
        self,
        history: Sequence[dict],
        on_token: OnToken,
        on_complete: OnComplete,
        on_error: OnError,
    ) -> CompletionHandle:
        messages = list(history)
        if self._system_prompt:
            messages = [{"role": "system", "content": self._system_prompt}] + messages

        handle = CompletionHandle()
        handle.task = asyncio.create_task(
            self._stream(handle, messages, on_token, on_complete, on_error),
            name="groq_completion",
        )
        return handle

    async def _stream(
        self,
        handle: CompletionHandle,
        messages: list[dict],
        on_token: OnToken,
        on_complete: OnComplete,
        on_error: OnError,
    ) -> None:
        tokens: list[str] = []
        log.info("event=groq_stream_start model=%s messages=%d", self._config.model, len(messages))
        try:
            stream = await self._client.chat.completions.create(messages=messages, **self._request_kwargs())
            async for chunk in stream:
                if handle.cancelled:
                    return
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    tokens.append(delta)
                    await on_token(delta)
        except asyncio.CancelledError:
            log.info("event=groq_stream_aborted")
            raise
        except Exception as exc:
            if handle.cancelled:
                return
            log.error("event=groq_stream_error error=%s", exc)
            await on_error(ProviderError(str(exc), code="llm_error"))
            return

        if handle.cancelled:
            return
        full_text = "".join(tokens)
        log.info("event=groq_stream_end chars=%d", len(full_text))
        await on_complete(full_text)


class PlaceholderCompletionPort:
    """Stand-in when no LLM credentials are configured."""

    def __init__(self, reply: str = PLACEHOLDER_REPLY) -> None:
        self._reply = reply

    def start(
        self,
        history: Sequence[dict],
        on_token: OnToken,
        on_complete: OnComplete,
        on_error: OnError,
    ) -> CompletionHandle:
        handle = CompletionHandle()

        async def _reply() -> None:
            await on_token(self._reply)
            await on_complete(self._reply)

        handle.task = asyncio.create_task(_reply(), name="placeholder_completion")
        return handle


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------

def parse_deepgram_message(raw: str | bytes) -> Optional[TranscriptEvent]:
    """Turn one Deepgram live message into a TranscriptEvent (or None)."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        log.debug("event=deepgram_unparseable_message")
        return None
    if not isinstance(msg, dict) or "channel" not in msg:
        return None
    alternatives = (msg.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    text = (alternatives[0].get("transcript") or "").strip()
    if not text:
        return None
    return TranscriptEvent(text=text, is_final=msg.get("is_final") is True)


class DeepgramStream:
    """One open Deepgram live connection: ``write`` audio, ``close`` to finish."""

    def __init__(self, ws, on_transcript: OnTranscript, on_error: OnError) -> None:
        self._ws = ws
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._closed = False
        self._receiver = asyncio.create_task(self._receive(), name="deepgram_receiver")

    async def _receive(self) -> None:
        try:
            async for raw in self._ws:
                event = parse_deepgram_message(raw)
                if event is not None and not self._closed:
                    await self._on_transcript(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closed:
                log.error("event=stt_error error=%s", exc)
                await self._on_error(ProviderError(str(exc), code="stt_error"))
        finally:
            log.info("event=deepgram_connection_closed")

    async def write(self, audio: bytes) -> None:
        if self._closed:
            return
        try:
            await self._ws.send(audio)
        except Exception as exc:
            log.warning("event=deepgram_send_error error=%s", exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.send(json.dumps({"type": "CloseStream"}))
            await self._ws.close()
        except Exception as exc:
            log.debug("event=deepgram_close_error error=%s", exc)
        self._receiver.cancel()
        try:
            await self._receiver
        except asyncio.CancelledError:
            pass


class DeepgramTranscriptionPort:
    """Opens raw Deepgram live websockets (linear16, 16 kHz, mono)."""

    def __init__(self, api_key: str, config: Optional[DeepgramConfig] = None) -> None:
        if not api_key:
            raise ConfigurationError("DEEPGRAM_API_KEY is not set")
        self._api_key = api_key
        self._config = config or DeepgramConfig()

    @property
    def url(self) -> str:
        return f"{self._config.url}?{urlencode(self._config.query_params())}"

    async def open(self, on_transcript: OnTranscript, on_error: OnError) -> DeepgramStream:
        log.info("event=starting_deepgram_stream model=%s", self._config.model)
        try:
            ws = await websockets.connect(
                self.url,
                additional_headers={"Authorization": f"Token {self._api_key}"},
            )
        except Exception as exc:
            raise ProviderError(f"deepgram connect failed: {exc}", code="stt_error") from exc
        log.info("event=deepgram_connected")
        return DeepgramStream(ws, on_transcript, on_error)


class _NullStream:
    async def write(self, audio: bytes) -> None:
        return None

    async def close(self) -> None:
        return None


class NullTranscriptionPort:
    """Stand-in when no STT credentials are configured: audio is dropped."""

    async def open(self, on_transcript: OnTranscript, on_error: OnError) -> _NullStream:
        log.warning("event=stt_disabled reason=not_configured")
        return _NullStream()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

@dataclass
class Providers:
    completion: CompletionPort
    transcription: TranscriptionPort


def build_providers(config: EngineConfig, env: Optional[Mapping[str, str]] = None) -> Providers:
    """Real adapters where credentials exist, placeholders elsewhere."""
    env = os.environ if env is None else env

    try:
        completion: CompletionPort = GroqCompletionPort(
            env.get("GROQ_API_KEY", ""),
            config.groq,
            system_prompt=config.system_prompt,
        )
    except ConfigurationError as exc:
        log.warning("event=llm_disabled reason=%s", exc)
        completion = PlaceholderCompletionPort()

    try:
        transcription: TranscriptionPort = DeepgramTranscriptionPort(
            env.get("DEEPGRAM_API_KEY", ""),
            config.deepgram,
        )
    except ConfigurationError as exc:
        log.warning("event=stt_disabled reason=%s", exc)
        transcription = NullTranscriptionPort()

    return Providers(completion=completion, transcription=transcription)
