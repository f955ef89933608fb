from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - account_locked (423)
    - forbidden (403)
    - validation_error (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialError(AuthenticationError):
    """Login rejected; callers see a generic message regardless of subclass."""


class InvalidCredentials(CredentialError):
    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(CredentialError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str = "account locked", *, locked_until=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.locked_until = locked_until


class AccountDisabled(CredentialError):
    def __init__(self, message: str = "account disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """Access token rejected."""


class TokenExpired(TokenError):
    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class BadSignature(TokenError):
    def __init__(self, message: str = "invalid token signature", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedToken(TokenError):
    def __init__(self, message: str = "malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevoked(TokenError):
    def __init__(self, message: str = "token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenError(AuthenticationError):
    """Refresh token rejected."""


class InvalidRefreshToken(RefreshTokenError):
    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredRefreshToken(RefreshTokenError):
    def __init__(self, message: str = "refresh token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ServiceUnavailableError(ServiceError):
    """A required backing store is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "CredentialError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountDisabled",
    "TokenError",
    "TokenExpired",
    "BadSignature",
    "MalformedToken",
    "TokenRevoked",
    "RefreshTokenError",
    "InvalidRefreshToken",
    "ExpiredRefreshToken",
    "ForbiddenError",
    "ServiceUnavailableError",
]
