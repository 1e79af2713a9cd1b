"""Issue, deliver, verify and consume single-use tokens.

Two flows share one lifecycle: password resets (subject is a user id) and
firm invites (subject is ``"<firm_id>:<email>"``). A token moves from
issued to consumed exactly once; expiry is discovered lazily and a newer
token for the same subject and purpose deletes the older one.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urlencode

from docuflow.config import Settings
from docuflow.logging import get_logger, sanitize_error_message
from docuflow.service.auth import AuthContext, AuthService
from docuflow.service.email import EmailService
from docuflow.service.errors import (
    ConflictError,
    DeliveryError,
    DownstreamUpdateError,
    ForbiddenError,
    GenerationError,
    InvalidInputError,
    InvalidTokenError,
)
from docuflow.service.sessions import SessionInvalidator
from docuflow.service.tokens import TokenGenerator
from docuflow.storage.errors import DuplicateDigest
from docuflow.storage.models import (
    ConsumeOutcome,
    Firm,
    FirmMembership,
    Session,
    Token,
    TokenPurpose,
    User,
    utcnow,
)

logger = get_logger(__name__)

INVITE_ROLES = ("accountant", "client")
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
GENERIC_RESET_MESSAGE = "If an account exists for that email, a reset link has been sent."


class TokenStore(Protocol):
    def invalidate_active_tokens(self, subject_id: str, purpose: TokenPurpose) -> int: ...

    def insert_token(self, token: Token) -> Token: ...

    def find_token_by_digest(self, digest: str) -> Optional[Token]: ...

    def consume_token(self, token_id: str, now: datetime | None = None) -> ConsumeOutcome: ...

    def purge_stale_tokens(self, before: datetime) -> int: ...


class AccountStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_firm(self, firm_id: str) -> Optional[Firm]: ...

    def get_firm_by_owner(self, owner_user_id: str) -> Optional[Firm]: ...

    def create_member_account(
        self,
        *,
        email: str,
        full_name: Optional[str],
        role: str,
        firm_id: str,
        password_hash: str,
        password_algo: str,
        company_name: Optional[str] = None,
    ) -> tuple[User, FirmMembership]: ...


class LifecycleStore(TokenStore, AccountStore, Protocol):
    pass


@dataclass
class IssuedToken:
    token: Token
    raw_token: str = field(repr=False)

    @property
    def expires_at(self) -> datetime:
        return self.token.expires_at


@dataclass
class PasswordResetIssuance:
    """Outcome of a reset request.

    ``issued`` is False when no account matched; callers must answer the
    same way in both cases.
    """

    issued: bool
    message: str = GENERIC_RESET_MESSAGE
    email_sent: Optional[bool] = None
    delivery_error: Optional[str] = None
    link: Optional[str] = field(default=None, repr=False)
    raw_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None


@dataclass
class InviteIssuance:
    firm: Firm
    role: str
    email: str
    link: str = field(repr=False)
    raw_token: str = field(repr=False)
    expires_at: datetime
    email_sent: bool
    delivery_error: Optional[str] = None


@dataclass
class InvitePreview:
    firm_id: str
    firm_name: str
    role: str
    email: str
    expires_at: datetime


@dataclass
class RedemptionResult:
    purpose: TokenPurpose
    user_id: str
    session: Optional[Session] = None
    membership: Optional[FirmMembership] = None
    sessions_revoked: int = 0


def normalize_email(email: str) -> str:
    return email.strip().lower()


def invite_subject(firm_id: str, email: str) -> str:
    return f"{firm_id}:{normalize_email(email)}"


def _validate_password(password: Any) -> str:
    if not isinstance(password, str) or not password:
        raise InvalidInputError("password is required", detail={"field": "password"})
    if len(password) < PASSWORD_MIN_LENGTH:
        raise InvalidInputError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        raise InvalidInputError(
            f"password must be at most {PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )
    return password


class TokenLifecycleService:
    def __init__(
        self,
        store: LifecycleStore,
        settings: Settings,
        *,
        auth: AuthService,
        email: EmailService,
        sessions: Optional[SessionInvalidator] = None,
        generator: Optional[TokenGenerator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth
        self.email = email
        self.sessions = sessions or auth.sessions
        self.generator = generator or TokenGenerator(settings.token_bytes)

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        if purpose == TokenPurpose.PASSWORD_RESET:
            return timedelta(minutes=self.settings.password_reset_ttl_minutes)
        return timedelta(hours=self.settings.invite_ttl_hours)

    def link_origin(self, requested: Optional[str]) -> str:
        """Pick the origin for emailed links; only allowlisted origins are honoured."""
        if requested:
            candidate = requested.strip().rstrip("/")
            if candidate in self.settings.allowed_link_origins:
                return candidate
            logger.warning("link_origin_rejected", origin=candidate)
        return self.settings.app_base_url

    # -- issuance --------------------------------------------------------

    def issue(
        self,
        subject_id: str,
        purpose: TokenPurpose | str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> IssuedToken:
        purpose = TokenPurpose(purpose)
        payload = payload or {}
        superseded = self.store.invalidate_active_tokens(subject_id, purpose)
        for attempt in range(2):
            generated = self.generator.generate()
            now = utcnow()
            token = Token(
                id=str(uuid.uuid4()),
                subject_id=subject_id,
                purpose=purpose,
                secret_digest=generated.digest,
                expires_at=now + self.ttl_for(purpose),
                created_at=now,
                firm_id=payload.get("firm_id"),
                role=payload.get("role"),
                target_email=payload.get("target_email"),
            )
            try:
                self.store.insert_token(token)
            except DuplicateDigest:
                logger.warning("token_digest_collision", purpose=purpose.value, attempt=attempt + 1)
                continue
            logger.info(
                "token_issued",
                token_id=token.id,
                purpose=purpose.value,
                superseded=superseded,
                expires_at=token.expires_at.isoformat(),
            )
            return IssuedToken(token=token, raw_token=generated.raw)
        raise GenerationError("could not generate a unique token")

    async def request_password_reset(
        self, email: str, origin: Optional[str] = None
    ) -> PasswordResetIssuance:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.is_active:
            logger.info("password_reset_unknown_subject")
            return PasswordResetIssuance(issued=False)

        issued = self.issue(user.id, TokenPurpose.PASSWORD_RESET)
        link = f"{self.link_origin(origin)}/reset-password?{urlencode({'token': issued.raw_token})}"
        email_sent = True
        delivery_error = None
        try:
            await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                user.full_name,
                link,
                self.settings.password_reset_ttl_minutes,
            )
        except DeliveryError as exc:
            # the token stays issued; the user can simply ask again
            email_sent = False
            delivery_error = sanitize_error_message(str(exc))
            logger.warning(
                "password_reset_delivery_failed",
                user_id=user.id,
                stage=exc.stage,
                error=delivery_error,
            )
        return PasswordResetIssuance(
            issued=True,
            email_sent=email_sent,
            delivery_error=delivery_error,
            link=link,
            raw_token=issued.raw_token,
            expires_at=issued.expires_at,
        )

    def _owned_firm(self, principal: AuthContext, firm_id: Optional[str]) -> Firm:
        if principal.role != "firm":
            raise ForbiddenError("only firm accounts can send invites")
        firm = (
            self.store.get_firm(firm_id)
            if firm_id
            else self.store.get_firm_by_owner(principal.user_id)
        )
        if not firm or firm.owner_user_id != principal.user_id:
            logger.warning(
                "invite_firm_not_owned", user_id=principal.user_id, firm_id=firm_id
            )
            raise ForbiddenError("you can only invite into a firm you own")
        return firm

    async def create_invite(
        self,
        principal: AuthContext,
        email: str,
        role: str,
        firm_id: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> InviteIssuance:
        if role not in INVITE_ROLES:
            raise InvalidInputError(
                "role must be accountant or client", detail={"field": "role"}
            )
        target_email = normalize_email(email)
        if not target_email:
            raise InvalidInputError("email is required", detail={"field": "email"})
        firm = self._owned_firm(principal, firm_id)

        issued = self.issue(
            invite_subject(firm.id, target_email),
            TokenPurpose.for_invite_role(role),
            {"firm_id": firm.id, "role": role, "target_email": target_email},
        )
        query = urlencode({"token": issued.raw_token, "role": role, "firm": firm.id})
        link = f"{self.link_origin(origin)}/invite?{query}"

        email_sent = True
        delivery_error = None
        try:
            await asyncio.to_thread(
                self.email.send_invite,
                target_email,
                firm.name,
                role,
                link,
                self.settings.invite_ttl_hours,
            )
        except DeliveryError as exc:
            email_sent = False
            delivery_error = sanitize_error_message(str(exc))
            logger.warning(
                "invite_delivery_failed",
                firm_id=firm.id,
                stage=exc.stage,
                error=delivery_error,
            )
        logger.info("invite_created", firm_id=firm.id, role=role, email_sent=email_sent)
        return InviteIssuance(
            firm=firm,
            role=role,
            email=target_email,
            link=link,
            raw_token=issued.raw_token,
            expires_at=issued.expires_at,
            email_sent=email_sent,
            delivery_error=delivery_error,
        )

    # -- verification ----------------------------------------------------

    def _lookup(self, raw_token: str, purpose: TokenPurpose) -> Token:
        if not raw_token or not isinstance(raw_token, str):
            logger.warning("token_rejected", reason="missing", purpose=purpose.value)
            raise InvalidTokenError()
        token = self.store.find_token_by_digest(self.generator.digest(raw_token.strip()))
        if token is None:
            logger.warning("token_rejected", reason="not_found", purpose=purpose.value)
            raise InvalidTokenError()
        if token.purpose != purpose:
            logger.warning(
                "token_rejected",
                reason="purpose_mismatch",
                token_id=token.id,
                expected=purpose.value,
                actual=token.purpose.value,
            )
            raise InvalidTokenError()
        return token

    def _ensure_redeemable(self, token: Token) -> None:
        if token.consumed_at is not None:
            logger.warning("token_rejected", reason="already_consumed", token_id=token.id)
            raise InvalidTokenError()
        if token.is_expired():
            logger.warning("token_rejected", reason="expired", token_id=token.id)
            raise InvalidTokenError()

    def describe_invite(self, raw_token: str) -> InvitePreview:
        """Validate an invite without spending it."""
        token = self.store.find_token_by_digest(self.generator.digest((raw_token or "").strip()))
        if token is None or not token.purpose.is_invite:
            logger.warning("invite_preview_rejected", reason="not_found")
            raise InvalidTokenError()
        self._ensure_redeemable(token)
        firm = self.store.get_firm(token.firm_id) if token.firm_id else None
        if firm is None:
            logger.warning("invite_preview_rejected", reason="firm_missing", token_id=token.id)
            raise InvalidTokenError()
        return InvitePreview(
            firm_id=firm.id,
            firm_name=firm.name,
            role=token.role or "",
            email=token.target_email or "",
            expires_at=token.expires_at,
        )

    # -- redemption ------------------------------------------------------

    def _consume(self, token: Token) -> None:
        outcome = self.store.consume_token(token.id)
        if outcome != ConsumeOutcome.CONSUMED:
            logger.warning("token_rejected", reason=outcome.value, token_id=token.id)
            raise InvalidTokenError()
        logger.info("token_consumed", token_id=token.id, purpose=token.purpose.value)

    async def redeem(
        self,
        raw_token: str,
        purpose: TokenPurpose | str,
        action_payload: Mapping[str, Any],
    ) -> RedemptionResult:
        purpose = TokenPurpose(purpose)
        token = self._lookup(raw_token, purpose)
        if purpose == TokenPurpose.PASSWORD_RESET:
            return await self._redeem_password_reset(token, action_payload)
        return await self._redeem_invite(token, action_payload)

    async def _redeem_password_reset(
        self, token: Token, action_payload: Mapping[str, Any]
    ) -> RedemptionResult:
        new_password = _validate_password(action_payload.get("new_password"))
        self._ensure_redeemable(token)
        self._consume(token)

        user_id = token.subject_id
        try:
            if self.store.get_user(user_id) is None:
                raise LookupError(f"user {user_id} no longer exists")
            self.auth.save_password(user_id, new_password)
            revoked = await self.sessions.revoke_all(user_id)
        except Exception as exc:
            logger.error(
                "password_reset_side_effect_failed",
                token_id=token.id,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DownstreamUpdateError(
                "password could not be updated; request a new reset link"
            ) from exc
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return RedemptionResult(
            purpose=token.purpose, user_id=user_id, sessions_revoked=revoked
        )

    async def _redeem_invite(
        self, token: Token, action_payload: Mapping[str, Any]
    ) -> RedemptionResult:
        password = _validate_password(action_payload.get("password"))
        full_name = (action_payload.get("full_name") or "").strip()
        if not full_name:
            raise InvalidInputError("full_name is required", detail={"field": "full_name"})
        company_name = (action_payload.get("company_name") or "").strip() or None

        # the token payload decides firm and role; whatever the redeemer sent is ignored
        supplied_firm = action_payload.get("firm_id")
        if supplied_firm and supplied_firm != token.firm_id:
            logger.warning(
                "invite_firm_override_ignored",
                token_id=token.id,
                supplied_firm_id=supplied_firm,
                firm_id=token.firm_id,
            )
        supplied_role = action_payload.get("role")
        if supplied_role and supplied_role != token.role:
            logger.warning(
                "invite_role_override_ignored",
                token_id=token.id,
                supplied_role=supplied_role,
                role=token.role,
            )

        if not token.firm_id or not token.role or not token.target_email:
            logger.error("invite_payload_incomplete", token_id=token.id)
            raise InvalidTokenError()
        self._ensure_redeemable(token)
        if self.store.get_user_by_email(token.target_email) is not None:
            logger.warning("invite_email_already_registered", token_id=token.id)
            raise ConflictError(
                "an account with this email already exists; sign in instead",
                detail={"field": "email"},
            )

        # hash before consuming so a hashing failure leaves the token usable
        password_hash, password_algo = self.auth.hash_password(password)
        self._consume(token)
        try:
            user, membership = self.store.create_member_account(
                email=token.target_email,
                full_name=full_name,
                role=token.role,
                firm_id=token.firm_id,
                password_hash=password_hash,
                password_algo=password_algo,
                company_name=company_name,
            )
            session = await self.auth.start_session(user)
        except Exception as exc:
            logger.error(
                "invite_side_effect_failed",
                token_id=token.id,
                firm_id=token.firm_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DownstreamUpdateError(
                "invitation was accepted but the account could not be set up"
            ) from exc
        logger.info(
            "invite_accepted",
            user_id=user.id,
            firm_id=membership.firm_id,
            role=membership.role,
        )
        return RedemptionResult(
            purpose=token.purpose,
            user_id=user.id,
            session=session,
            membership=membership,
        )

    # -- housekeeping ----------------------------------------------------

    def purge_stale_tokens(self, retention: Optional[timedelta] = None) -> int:
        retention = retention or timedelta(days=self.settings.token_retention_days)
        removed = self.store.purge_stale_tokens(utcnow() - retention)
        logger.info("stale_tokens_purged", removed=removed)
        return removed
