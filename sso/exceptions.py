"""
Error taxonomy shared by the engine, the stores and the federation resolver.

Only the routers translate these into HTTP responses.
"""

from typing import Any, Optional


class IdPError(Exception):
    """Base class for all identity provider errors."""

    error = "server_error"
    status_code = 500

    def __init__(self, message: str = "", *, error: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message
        if error:
            self.error = error


class ValidationError(IdPError):
    """Malformed or disallowed parameters; the message is safe to show."""

    error = "invalid_request"
    status_code = 400


class NotFoundError(IdPError):
    """Missing client, connector, code or token."""

    error = "not_found"
    status_code = 404


class ReplayError(IdPError):
    """
    A single-use credential was presented again.
    Carries the originating snapshot so the caller can revoke the whole grant.
    """

    error = "invalid_grant"
    status_code = 400

    def __init__(self, message: str = "", *, snapshot: Any = None):
        super().__init__(message)
        self.snapshot = snapshot


class ExpiredError(IdPError):
    """Past expiry; presented externally exactly like NotFoundError."""

    error = "not_found"
    status_code = 404


class UpstreamError(IdPError):
    """Federation exchange or userinfo failure; upstream detail is never surfaced."""

    error = "federation_failed"
    status_code = 502


class InternalError(IdPError):
    """Storage or signing failure."""

    error = "server_error"
    status_code = 500


class OAuthError(ValidationError):
    """Protocol error with an RFC 6749 error code."""

    def __init__(self, error: str, description: str = "", status_code: int = 400):
        super().__init__(description, error=error)
        self.description = description
        self.status_code = status_code


class InvalidCredentialsError(IdPError):
    error = "invalid_credentials"
    status_code = 401


class UsernameTakenError(IdPError):
    error = "username_taken"
    status_code = 409


class WeakPasswordError(ValidationError):
    error = "weak_password"


class ConnectorNotFoundError(NotFoundError):
    error = "connector_not_found"
