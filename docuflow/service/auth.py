from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from docuflow.config import Settings
from docuflow.logging import get_logger
from docuflow.service.sessions import SessionInvalidator
from docuflow.storage.models import Session, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    """The caller behind a live session, as seen by route handlers."""

    user_id: str
    role: str
    email: str
    session_id: Optional[str] = None


class AuthService:
    """Password credentials and opaque bearer sessions.

    A session id is the bearer credential: ``Authorization: Bearer <id>``
    or a ``session_id`` header both resolve to the same stored session.
    Sessions are resolved against the store only, so a revocation takes
    effect on the next request.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: Optional[SessionInvalidator] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.sessions = sessions or SessionInvalidator(store)
        self._hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        self.store.save_password(user_id, *self.hash_password(password))

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if record is None:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        # hashes from any other scheme are never accepted, even if they match
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_rejected", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def start_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        return self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Optional[User], Optional[Session]]:
        """Check credentials and open a session; ``(None, None)`` on any failure."""
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active or not self.verify_password(user.id, password):
            return None, None
        session = await self.start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return user, session

    async def logout(self, session_id: str) -> None:
        self.store.revoke_session(session_id)

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            return None
        if session.expires_at <= utcnow():
            logger.info("session_expired", session_id=session_id)
            return None
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            return None
        return AuthContext(user_id=user.id, role=user.role, email=user.email, session_id=session.id)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str] = None
    ) -> Optional[AuthContext]:
        return await self.resolve_session(_bearer_credential(authorization) or session_id)


def _bearer_credential(header: Optional[str]) -> Optional[str]:
    scheme, _, credential = (header or "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credential.strip() or None
