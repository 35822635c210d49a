from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_correlation_id
from authgate.storage.models import Session, User

# Upper bounds on raw request fields; policy limits are enforced by the service.
MAX_FIELD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_expired",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope; ``request_id`` echoes the request's correlation ID."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(
        default=None,
        max_length=MAX_FIELD_LENGTH,
        validation_alias=AliasChoices("name", "displayName", "display_name"),
    )
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    terms_accepted: bool = Field(
        default=False,
        validation_alias=AliasChoices("terms_accepted", "termsAccepted"),
    )


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    remember_me: bool = Field(
        default=False,
        validation_alias=AliasChoices("remember_me", "rememberMe"),
    )


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    email_verified: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            email_verified=user.email_verified,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    """Session metadata. Carries no cookie or token material."""

    created_at: datetime
    expires_at: datetime
    access_expires_at: datetime
    remember_me: bool = False

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            created_at=session.created_at,
            expires_at=session.expires_at,
            access_expires_at=session.access_expires_at,
            remember_me=session.remember_me,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    session: SessionResponse

    @classmethod
    def build(cls, user: User, session: Session) -> "AuthResponse":
        return cls(user=UserResponse.from_user(user), session=SessionResponse.from_session(session))


class LogoutResponse(BaseModel):
    logged_out: bool


class HealthResponse(BaseModel):
    status: str = Field(..., pattern="^(healthy|unhealthy)$")
    checks: dict[str, str]
