from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountkit.logging import get_correlation_id
from accountkit.service.errors import ERROR_CODES
from accountkit.storage.models import Account, TokenPair


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# Request bodies accept both camelCase and snake_case keys. Emptiness and
# format are judged by the service so every client sees the same error codes.


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", max_length=256)
    username: str = Field(default="", max_length=256)
    password: str = Field(default="", max_length=1024)
    confirm_password: str = Field(default="", alias="confirmPassword", max_length=1024)
    date_of_birth: Optional[str] = Field(default=None, alias="dateOfBirth", max_length=32)
    email: str = Field(default="", max_length=320)


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(default="", max_length=320)
    otp: str = Field(default="", max_length=16)


class LoginRequest(BaseModel):
    username: str = Field(default="", max_length=256)
    password: str = Field(default="", max_length=1024)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=2048)


class AccountResponse(BaseModel):
    """Public view of an account; the password hash is never included."""

    id: str
    name: str
    username: str
    email: str
    date_of_birth: Optional[str] = None
    email_verified: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            name=account.name,
            username=account.username,
            email=account.email,
            date_of_birth=account.date_of_birth.isoformat() if account.date_of_birth else None,
            email_verified=account.email_verified,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, tokens: TokenPair) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            refresh_expires_at=tokens.refresh_expires_at,
        )
