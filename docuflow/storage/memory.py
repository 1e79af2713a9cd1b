from __future__ import annotations

import json
import threading
import uuid
from dataclasses import fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from docuflow.logging import get_logger
from docuflow.storage.errors import ConstraintViolation, DuplicateDigest
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


class MemoryStore:
    """In-memory backing store used by tests and single-process development.

    When ``fs_root`` is given the whole state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.firms: Dict[str, Firm] = {}
        self.memberships: Dict[str, FirmMembership] = {}
        self.tokens: Dict[str, Token] = {}
        # RLock for all data operations; consume_token relies on holding it
        # across the whole check-and-set
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users -----------------------------------------------------------

    def _email_taken(self, email: str) -> bool:
        needle = email.lower()
        return any(existing.email.lower() == needle for existing in self.users.values())

    def create_user(
        self,
        email: str,
        full_name: Optional[str] = None,
        *,
        role: str = "client",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == needle), None
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- sessions --------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- firms -----------------------------------------------------------

    def create_firm(self, name: str, owner_user_id: str) -> Firm:
        with self._data_lock:
            if owner_user_id not in self.users:
                raise ConstraintViolation(
                    "owner does not exist", {"owner_user_id": owner_user_id}
                )
            firm = Firm(id=str(uuid.uuid4()), name=name, owner_user_id=owner_user_id)
            self.firms[firm.id] = firm
            self._persist_state()
            return firm

    def get_firm(self, firm_id: str) -> Optional[Firm]:
        with self._data_lock:
            return self.firms.get(firm_id)

    def get_firm_by_owner(self, owner_user_id: str) -> Optional[Firm]:
        with self._data_lock:
            return next(
                (f for f in self.firms.values() if f.owner_user_id == owner_user_id),
                None,
            )

    def list_firm_memberships(self, firm_id: str) -> List[FirmMembership]:
        with self._data_lock:
            return sorted(
                (m for m in self.memberships.values() if m.firm_id == firm_id),
                key=lambda m: m.created_at,
            )

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
    ) -> tuple[User, FirmMembership]:
        """Create user, credential and membership in one step or not at all."""
        with self._data_lock:
            if firm_id not in self.firms:
                raise ConstraintViolation("firm does not exist", {"firm_id": firm_id})
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                role=role,
                meta={"invited_by_firm": firm_id},
            )
            membership = FirmMembership(
                id=str(uuid.uuid4()),
                firm_id=firm_id,
                user_id=user.id,
                role=role,
                company_name=company_name if role == "client" else None,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self.memberships[membership.id] = membership
            self._persist_state()
            return user, membership

    # -- tokens ----------------------------------------------------------

    def invalidate_active_tokens(self, subject_id: str, purpose: TokenPurpose) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, tok in self.tokens.items()
                if tok.subject_id == subject_id
                and tok.purpose == purpose
                and tok.consumed_at is None
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def insert_token(self, token: Token) -> Token:
        with self._data_lock:
            if any(t.secret_digest == token.secret_digest for t in self.tokens.values()):
                raise DuplicateDigest()
            if token.id in self.tokens:
                raise ConstraintViolation("token id already exists", {"field": "id"})
            self.tokens[token.id] = token
            self._persist_state()
            return token

    def find_token_by_digest(self, digest: str) -> Optional[Token]:
        with self._data_lock:
            return next(
                (t for t in self.tokens.values() if t.secret_digest == digest), None
            )

    def consume_token(self, token_id: str, now: datetime | None = None) -> ConsumeOutcome:
        now = now or utcnow()
        with self._data_lock:
            token = self.tokens.get(token_id)
            if token is None:
                return ConsumeOutcome.NOT_FOUND
            if token.consumed_at is not None:
                return ConsumeOutcome.ALREADY_CONSUMED
            if token.is_expired(now):
                return ConsumeOutcome.EXPIRED
            token.consumed_at = now
            self._persist_state()
            return ConsumeOutcome.CONSUMED

    def purge_stale_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, tok in self.tokens.items()
                if (tok.consumed_at is not None and tok.consumed_at < before)
                or tok.expires_at < before
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -----------------------------------------------------

    _RECORDS = {
        "users": User,
        "sessions": Session,
        "firms": Firm,
        "memberships": FirmMembership,
        "tokens": Token,
    }

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        # tokens are written by digest only; raw secrets never reach the store
        state = {
            name: [_encode(record) for record in getattr(self, name).values()]
            for name in self._RECORDS
        }
        state["credentials"] = [
            {"user_id": user_id, "password_hash": pwd_hash, "password_algo": algo}
            for user_id, (pwd_hash, algo) in self.credentials.items()
        ]
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, cls in self._RECORDS.items():
            rows = (_decode(cls, row) for row in data.get(name, []))
            setattr(self, name, {row.id: row for row in rows})
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            tokens=len(self.tokens),
            path=str(path),
        )
        return True


def _encode(record) -> dict:
    out = {}
    for item in fields(record):
        value = getattr(record, item.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[item.name] = value
    return out


def _decode(cls, data: dict):
    kwargs = {}
    for item in fields(cls):
        if item.name not in data:
            continue
        value = data[item.name]
        # annotations are strings under postponed evaluation
        if value is not None and "datetime" in item.type:
            value = datetime.fromisoformat(value)
        elif value is not None and "TokenPurpose" in item.type:
            value = TokenPurpose(value)
        kwargs[item.name] = value
    return cls(**kwargs)
