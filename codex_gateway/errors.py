"""Error types shared by the gateway routes, dispatcher and OAuth flow."""
from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error rendered as an OpenAI-style ``{"error": {...}}`` body."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type}}


class BadRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class NotAuthenticatedError(BadRequestError):
    """Raised when the credential record lacks an access token or account id."""


class BadGatewayError(GatewayError):
    status_code = 502
    error_type = "upstream_error"


class UpstreamFailedError(BadGatewayError):
    """Raised when the upstream stream emits a ``response.failed`` event."""

    def __init__(self, message: str, *, event: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.event = event or {}


class TokenExchangeError(GatewayError):
    """Raised when the OAuth token endpoint is unreachable or rejects the code."""

    status_code = 502
    error_type = "oauth_error"

    def __init__(self, message: str, *, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class AuthConfigError(RuntimeError):
    """Raised when the auth.json file is unreadable or malformed."""
