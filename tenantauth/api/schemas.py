from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "invalid_credentials",
        "client_secret_required",
        "invalid_client",
        "client_mismatch",
        "token_expired",
        "token_invalid",
        "token_revoked",
        "invalid_or_expired",
        "forbidden",
        "auth_method_disabled",
        "registration_disabled",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error payload carried inside an error envelope."""

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


class ClientCredentials(BaseModel):
    client_id: str = Field(..., min_length=1)
    client_secret: Optional[str] = None


class LoginRequest(ClientCredentials):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    device_info: Optional[Dict[str, Any]] = None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)


class RevokeRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=1024)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class UserInfoResponse(BaseModel):
    sub: str
    aud: str
    tid: str
    roles: List[str] = Field(default_factory=list)
    iss: str
    iat: int
    exp: int


class AuthSettingsUpdate(BaseModel):
    email_password_enabled: Optional[bool] = None
    email_otp_enabled: Optional[bool] = None
    google_auth_enabled: Optional[bool] = None
    github_auth_enabled: Optional[bool] = None
    microsoft_auth_enabled: Optional[bool] = None
    require_email_verification: Optional[bool] = None
    allow_registration: Optional[bool] = None
