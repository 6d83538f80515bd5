"""Exception hierarchy for RelayGate."""

from __future__ import annotations


class GatewayError(Exception):
    """Request-scoped error carrying an explicit HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PayloadTooLarge(GatewayError):
    """Request body exceeds the parsing ceiling (413)."""

    def __init__(self, message: str = "Request body too large") -> None:
        super().__init__(message, status_code=413)


class MalformedBody(GatewayError):
    """Request body could not be parsed (400)."""

    def __init__(self, message: str = "Malformed request body") -> None:
        super().__init__(message, status_code=400)


class Unauthorized(GatewayError):
    """Missing or invalid credentials (401)."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, status_code=401)


class Forbidden(GatewayError):
    """Credentials valid but access refused (403)."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message, status_code=403)


class NoKeysAvailable(GatewayError):
    """No upstream key can serve the request right now (503)."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No {provider} keys available", status_code=503)
        self.provider = provider


class UpstreamError(GatewayError):
    """Upstream provider could not be reached (502)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=502)


class ConfigError(RuntimeError):
    """Configuration or a required dependency failed validation."""


class StartupError(RuntimeError):
    """Startup sequence aborted before the listener was bound."""
