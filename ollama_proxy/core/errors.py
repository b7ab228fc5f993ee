# ollama_proxy/core/errors.py
from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors rendered to the client as ``{"error": message}``."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UpstreamUnavailable(ProxyError):
    """The Ollama server could not be reached or answered with a failure."""

    status_code = 500


class MalformedUpstreamResponse(ProxyError):
    status_code = 500


class AlreadyRunning(ProxyError):
    status_code = 409

    def __init__(self, message: str = "A generation is already running") -> None:
        super().__init__(message)


class NoActiveGeneration(ProxyError):
    # Informational; /stop reports it as success=false with status 200
    status_code = 200

    def __init__(self, message: str = "No active generation") -> None:
        super().__init__(message)


class MissingField(ProxyError):
    status_code = 400


class DecodeWarning(UserWarning):
    """A single streamed record that could not be decoded; the record is skipped."""

    def __init__(self, record: str, reason: str) -> None:
        super().__init__(f"{reason}: {record[:200]!r}")
        self.record = record
        self.reason = reason
