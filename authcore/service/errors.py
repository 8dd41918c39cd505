from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class InvalidGrantError(BadRequestError):
    """Authorization code or PKCE verifier rejected at the token endpoint (400)."""
    error_code = "invalid_grant"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Bearer token signature, claims or expiry check failed (401)."""
    pass


class ConsentRequiredError(AuthenticationError):
    """Third-party client has no stored consent for the user (401)."""

    def __init__(self, message: str = "consent required", **kwargs) -> None:
        detail = {"reason": "consent_required", **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class KeyManagerNotInitializedError(ServerError):
    """Signing key requested before the key manager could load or create it."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidGrantError",
    "AuthenticationError",
    "InvalidTokenError",
    "ConsentRequiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "KeyManagerNotInitializedError",
]
