"""Exception hierarchy mapped onto HTTP responses by the service."""

from __future__ import annotations

from typing import Any, Dict


class RelayError(Exception):
    """Base exception carrying the HTTP status and client-facing message."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ClientInputError(RelayError):
    """Request body is unusable; no upstream call is made."""

    status_code = 400


class RequestTooLarge(RelayError):
    status_code = 413


class Unauthorized(RelayError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Unauthorized")


class ServerMisconfigured(RelayError):
    """Raised when the provider API key is not configured."""

    status_code = 500


class UpstreamError(RelayError):
    """Represents provider-specific HTTP or transport errors."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code or 500, details=details)
        self.provider = provider


class UpstreamStreamError(Exception):
    """Raised by stream decoders when the provider reports an error mid-stream."""
