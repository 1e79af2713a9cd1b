from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "auth_session",
    "firm",
    "firm_membership",
    "auth_token",
)


def _is_uuid(value: Optional[str]) -> bool:
    """Id columns are UUID; anything else cannot match and would fail the cast."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for accounts, sessions, firms and tokens."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the token and account tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # row mapping
    @staticmethod
    def _meta(raw: Any) -> Optional[dict]:
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except ValueError:
                return None
        return raw

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name"),
            role=row.get("role", "client"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            meta=self._meta(row.get("meta")),
        )

    def _row_to_session(self, row: Dict[str, Any]) -> Session:
        raw_ip = row.get("ip_addr")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            meta=self._meta(row.get("meta")),
        )

    @staticmethod
    def _row_to_firm(row: Dict[str, Any]) -> Firm:
        return Firm(
            id=str(row["id"]),
            name=row["name"],
            owner_user_id=str(row["owner_user_id"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_membership(row: Dict[str, Any]) -> FirmMembership:
        return FirmMembership(
            id=str(row["id"]),
            firm_id=str(row["firm_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            company_name=row.get("company_name"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> Token:
        return Token(
            id=str(row["id"]),
            subject_id=row["subject_id"],
            purpose=TokenPurpose(row["purpose"]),
            secret_digest=row["secret_digest"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            consumed_at=row.get("consumed_at"),
            firm_id=str(row["firm_id"]) if row.get("firm_id") else None,
            role=row.get("role"),
            target_email=row.get("target_email"),
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: Optional[str] = None,
        *,
        role: str = "client",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            role=role,
            is_active=is_active,
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, role, is_active, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        full_name,
                        role,
                        is_active,
                        user.created_at,
                        json.dumps(user.meta) if user.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        # email is CITEXT, comparison is case-insensitive
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str) -> None:
        if not _is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    # firms
    def create_firm(self, name: str, owner_user_id: str) -> Firm:
        firm = Firm(id=str(uuid.uuid4()), name=name, owner_user_id=owner_user_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO firm (id, name, owner_user_id, created_at) VALUES (%s, %s, %s, %s)",
                    (firm.id, name, owner_user_id, firm.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "owner does not exist", {"owner_user_id": owner_user_id}
            )
        return firm

    def get_firm(self, firm_id: str) -> Optional[Firm]:
        if not _is_uuid(firm_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM firm WHERE id = %s", (firm_id,)).fetchone()
        return self._row_to_firm(row) if row else None

    def get_firm_by_owner(self, owner_user_id: str) -> Optional[Firm]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM firm WHERE owner_user_id = %s ORDER BY created_at LIMIT 1",
                (owner_user_id,),
            ).fetchone()
        return self._row_to_firm(row) if row else None

    def list_firm_memberships(self, firm_id: str) -> List[FirmMembership]:
        if not _is_uuid(firm_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM firm_membership WHERE firm_id = %s ORDER BY created_at",
                (firm_id,),
            ).fetchall()
        return [self._row_to_membership(row) for row in rows]

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
        """Create user, credential and membership in one transaction."""
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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, role, is_active, created_at, meta)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                    """,
                    (user.id, email, full_name, role, user.created_at, json.dumps(user.meta)),
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (user.id, password_hash, password_algo),
                )
                conn.execute(
                    """
                    INSERT INTO firm_membership (id, firm_id, user_id, role, company_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        membership.id,
                        firm_id,
                        user.id,
                        role,
                        membership.company_name,
                        membership.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("firm does not exist", {"firm_id": firm_id})
        return user, membership

    # tokens
    def invalidate_active_tokens(self, subject_id: str, purpose: TokenPurpose) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_token
                WHERE subject_id = %s AND purpose = %s AND consumed_at IS NULL
                """,
                (subject_id, TokenPurpose(purpose).value),
            )
            return result.rowcount

    def insert_token(self, token: Token) -> Token:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (
                        id, subject_id, purpose, secret_digest, expires_at, created_at,
                        firm_id, role, target_email
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.subject_id,
                        token.purpose.value,
                        token.secret_digest,
                        token.expires_at,
                        token.created_at,
                        token.firm_id,
                        token.role,
                        token.target_email,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            if "digest" in constraint:
                raise DuplicateDigest()
            raise ConstraintViolation("token already exists", {"constraint": constraint})
        return token

    def find_token_by_digest(self, digest: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE secret_digest = %s", (digest,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_token(self, token_id: str, now: datetime | None = None) -> ConsumeOutcome:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET consumed_at = %s
                WHERE id = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, token_id, now),
            ).fetchone()
            if row:
                return ConsumeOutcome.CONSUMED
            current = conn.execute(
                "SELECT consumed_at, expires_at FROM auth_token WHERE id = %s",
                (token_id,),
            ).fetchone()
        if not current:
            return ConsumeOutcome.NOT_FOUND
        if current.get("consumed_at") is not None:
            return ConsumeOutcome.ALREADY_CONSUMED
        return ConsumeOutcome.EXPIRED

    def purge_stale_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_token
                WHERE (consumed_at IS NOT NULL AND consumed_at < %s) OR expires_at < %s
                """,
                (before, before),
            )
            return result.rowcount
