"""Error taxonomy shared by the session engine and its collaborators."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class TransportError(EngineError):
    """An inbound frame could not be parsed.  The frame is dropped, the connection stays open."""


class ProviderError(EngineError):
    """A transcription or completion provider failed upstream."""

    def __init__(self, message: str, code: str = "provider_error") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(EngineError):
    """A provider credential is missing; callers degrade to a placeholder collaborator."""


class PersistenceError(EngineError):
    """A collaborator write failed.  Logged only; the in-memory turn is kept."""


class BookingError(EngineError):
    """A detected booking was abandoned (invalid payload or booking service failure)."""
