from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password-reset"
    INVITE_ACCOUNTANT = "invite-accountant"
    INVITE_CLIENT = "invite-client"

    @property
    def is_invite(self) -> bool:
        return self in (TokenPurpose.INVITE_ACCOUNTANT, TokenPurpose.INVITE_CLIENT)

    @classmethod
    def for_invite_role(cls, role: str) -> "TokenPurpose":
        if role == "accountant":
            return cls.INVITE_ACCOUNTANT
        if role == "client":
            return cls.INVITE_CLIENT
        raise ValueError(f"no invite purpose for role {role!r}")


class ConsumeOutcome(str, Enum):
    """Result of the single conditional write that spends a token."""

    CONSUMED = "consumed"
    ALREADY_CONSUMED = "already_consumed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class Token:
    id: str
    subject_id: str
    purpose: TokenPurpose
    secret_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None
    # invite payload
    firm_id: Optional[str] = None
    role: Optional[str] = None
    target_email: Optional[str] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class User:
    id: str
    email: str
    full_name: Optional[str] = None
    role: str = "client"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class Firm:
    id: str
    name: str
    owner_user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FirmMembership:
    """Links an accountant or client account to the firm that invited it."""

    id: str
    firm_id: str
    user_id: str
    role: str
    company_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
