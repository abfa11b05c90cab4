from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "service_unavailable",
}

# Field caps sit above the service-level policy so the policy owns the error message
MAX_IDENTIFIER_LENGTH = 320
MAX_PASSWORD_FIELD_LENGTH = 1024


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    role: str = Field(default="user", max_length=32)
    invitation_code: Optional[str] = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username_or_email: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    role: Optional[str] = Field(default=None, max_length=32)


class ChangePasswordRequest(BaseModel):
    """Request to change password (requires the current password)."""

    model_config = ConfigDict(extra="forbid")

    old_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    confirm_new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    role: str
    tenant_id: str


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class InvitationResponse(BaseModel):
    invitation_code: str
    expires_in: int


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    created_at: datetime
    updated_at: datetime
