from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, Literal, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from docuflow.logging import get_correlation_id

MAX_TOKEN_LENGTH = 256
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

# zero-width characters plus the bidi embedding, override and isolate ranges
_INVISIBLE = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2066-\u2069]")

_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

ERROR_CODES = frozenset(
    {
        "invalid_input",
        "invalid_token",
        "unauthorized",
        "forbidden",
        "conflict",
        "rate_limited",
        "delivery_error",
        "downstream_update_failed",
        "generation_failed",
        "server_error",
    }
)


def _clean_text(value: str) -> str:
    return unicodedata.normalize("NFKC", _INVISIBLE.sub("", value))


def _email(value: str) -> str:
    address = _clean_text(value.strip().lower())
    if len(address) > 254:
        raise ValueError("email address too long")
    local, sep, domain = address.partition("@")
    labels = domain.split(".")
    if (
        not sep
        or not _LOCAL_PART.match(local)
        or len(labels) < 2
        or not all(_DOMAIN_LABEL.match(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return address


def _password(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters"
        )
    return value


def _display_name(value: str) -> str:
    cleaned = _clean_text(value).strip()
    if not cleaned:
        raise ValueError("full_name must not be blank")
    return cleaned


Email = Annotated[str, AfterValidator(_email)]
NewPassword = Annotated[str, AfterValidator(_password)]
RawToken = Annotated[str, Field(min_length=1, max_length=MAX_TOKEN_LENGTH)]
InviteRole = Literal["accountant", "client"]
Origin = Annotated[Optional[str], Field(max_length=2048)]


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Response wrapper; ``request_id`` matches the ``X-Request-ID`` header."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    token_type: str = "bearer"
    role: str


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    created_at: datetime
    is_active: bool


class PasswordResetRequest(BaseModel):
    email: Email
    origin: Origin = None


class PasswordResetRequested(BaseModel):
    """Identical for known and unknown emails outside the debug fields."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["sent"] = "sent"
    message: str
    email_sent: Optional[bool] = None
    delivery_error: Optional[str] = None
    debug_reset_link: Optional[str] = None
    debug_reset_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class PasswordResetConfirm(BaseModel):
    token: RawToken
    new_password: NewPassword


class InviteCreateRequest(BaseModel):
    email: Email
    role: InviteRole
    firm_id: Optional[str] = Field(default=None, max_length=64)
    origin: Origin = None


class InviteCreateResponse(BaseModel):
    invite_link: str
    token: str
    firm_id: str
    role: str
    email: str
    expires_at: datetime
    email_sent: bool
    delivery_error: Optional[str] = None


class InvitePreviewResponse(BaseModel):
    firm_id: str
    firm_name: str
    role: str
    email: str
    expires_at: datetime


class InviteAcceptRequest(BaseModel):
    token: RawToken
    role: InviteRole
    full_name: Annotated[str, Field(min_length=1, max_length=200), AfterValidator(_display_name)]
    password: NewPassword
    company_name: Optional[str] = Field(default=None, max_length=200)
    # accepted for compatibility with invite links; the token decides the firm
    firm_id: Optional[str] = Field(default=None, max_length=64)


class InviteAcceptResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    session_expires_at: datetime
    firm_id: str
    role: str
