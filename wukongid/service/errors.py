from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailable(ServiceError):
    """A backing store could not be reached (503)."""
    status_code = 503
    error_code = "service_unavailable"


# Shown for unknown, expired and used codes alike so callers cannot probe state
OPAQUE_CODE_MESSAGE = "authorization code is invalid or expired; restart sign-in"


class AuthorizationCodeError(ValidationError):
    """A code could not be redeemed; maps to an OAuth ``invalid_grant``."""

    oauth_error = "invalid_grant"
    public_message = OPAQUE_CODE_MESSAGE


class CodeNotFound(AuthorizationCodeError):
    pass


class CodeAlreadyUsed(AuthorizationCodeError):
    pass


class CodeExpired(AuthorizationCodeError):
    pass


class ClientMismatch(AuthorizationCodeError):
    public_message = "authorization code was not issued to this client"


class RedirectMismatch(AuthorizationCodeError):
    public_message = "redirect_uri does not match the authorization request"


class InvalidGrantType(ValidationError):
    """Only ``authorization_code`` grants are supported (422)."""
    status_code = 422
    oauth_error = "unsupported_grant_type"


class InvalidToken(AuthenticationError):
    pass


class TokenExpired(InvalidToken):
    pass


class InvalidState(ValidationError):
    """The ``state`` parameter is not a base64url-encoded JSON object."""


class SessionNotFound(NotFoundError):
    pass


__all__ = [
    "OPAQUE_CODE_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StoreUnavailable",
    "AuthorizationCodeError",
    "CodeNotFound",
    "CodeAlreadyUsed",
    "CodeExpired",
    "ClientMismatch",
    "RedirectMismatch",
    "InvalidGrantType",
    "InvalidToken",
    "TokenExpired",
    "InvalidState",
    "SessionNotFound",
]
