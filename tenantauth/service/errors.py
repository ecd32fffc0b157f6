from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that callers can branch on without parsing the message.
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown user, unknown client or wrong password; never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ClientSecretRequiredError(AuthenticationError):
    error_code = "client_secret_required"

    def __init__(self, message: str = "Client secret required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidClientError(AuthenticationError):
    """Client credentials do not match, or the token belongs to another client."""
    error_code = "invalid_client"

    def __init__(self, message: str = "Invalid client credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"

    def __init__(self, message: str = "Token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ClientMismatchError(InvalidClientError):
    """Refresh token presented by a client other than the one it was issued to."""
    error_code = "client_mismatch"

    def __init__(self, message: str = "Client mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredError(ValidationError):
    """One-time secret rejected; identical for every failure mode."""
    error_code = "invalid_or_expired"

    def __init__(self, message: str = "Invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthMethodDisabledError(ForbiddenError):
    """The app has switched off the requested sign-in method."""
    error_code = "auth_method_disabled"


class RegistrationDisabledError(ForbiddenError):
    error_code = "registration_disabled"

    def __init__(
        self, message: str = "Registration is not allowed for this application", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "Too many requests", *, retry_after: int = 1, **kwargs
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ClientSecretRequiredError",
    "InvalidClientError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "ClientMismatchError",
    "InvalidOrExpiredError",
    "ForbiddenError",
    "AuthMethodDisabledError",
    "RegistrationDisabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
