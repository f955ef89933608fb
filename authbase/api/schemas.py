from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "unauthorized",
    "account_locked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("invalid email")
        return value


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutAllRequest(BaseModel):
    principal_id: Optional[str] = Field(default=None, max_length=128)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    roles: List[str]
    enabled: bool
    email_verified: bool
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    principal: PrincipalResponse


class LogoutResponse(BaseModel):
    logged_out: bool


class LogoutAllResponse(BaseModel):
    principal_id: str
    sessions_removed: int


class MeResponse(BaseModel):
    principal_id: str
    email: str
    roles: List[str]
    permissions: List[str]
    expires_at: datetime
    active_sessions: int


class SecurityEventResponse(BaseModel):
    id: str
    event_type: str
    description: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
