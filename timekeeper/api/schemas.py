from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from timekeeper.logging import get_correlation_id

MAX_PASSWORD_LENGTH = 256


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    mfa_code: Optional[str] = Field(default=None, max_length=10)
    device_label: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    session_id: str


class SessionInfo(BaseModel):
    id: str
    device_label: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime
    last_seen_at: Optional[datetime] = None
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class MFACodeRequest(BaseModel):
    code: str = Field(..., max_length=10)


class MFAEnrollmentResponse(BaseModel):
    secret: str
    otpauth_uri: str


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
