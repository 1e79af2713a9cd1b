from __future__ import annotations

from typing import Protocol

from docuflow.logging import get_logger

logger = get_logger(__name__)


class SessionStore(Protocol):
    def revoke_user_sessions(self, user_id: str) -> int: ...


class SessionInvalidator:
    """Drop every session a subject holds after its credential changes."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    async def revoke_all(self, user_id: str) -> int:
        # a store failure must reach the caller; the reset is then reported as failed
        revoked = self.store.revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked
