"""Tests for MemoryStore token handling, account creation and persistence."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from docuflow.storage.errors import ConstraintViolation, DuplicateDigest
from docuflow.storage.memory import MemoryStore
from docuflow.storage.models import ConsumeOutcome, Token, TokenPurpose, utcnow


def _token(subject_id="user-1", purpose=TokenPurpose.PASSWORD_RESET, *, digest=None, ttl=timedelta(hours=1)):
    now = utcnow()
    return Token(
        id=str(uuid.uuid4()),
        subject_id=subject_id,
        purpose=purpose,
        secret_digest=digest or uuid.uuid4().hex * 2,
        expires_at=now + ttl,
        created_at=now,
    )


class TestTokenStorage:
    def test_insert_and_find_by_digest(self):
        store = MemoryStore()
        token = store.insert_token(_token())
        assert store.find_token_by_digest(token.secret_digest) is token
        assert store.find_token_by_digest("0" * 64) is None

    def test_duplicate_digest_rejected(self):
        store = MemoryStore()
        first = store.insert_token(_token())
        with pytest.raises(DuplicateDigest):
            store.insert_token(_token(subject_id="user-2", digest=first.secret_digest))

    def test_invalidate_active_only_touches_matching_unconsumed_tokens(self):
        store = MemoryStore()
        active = store.insert_token(_token())
        spent = store.insert_token(_token())
        assert store.consume_token(spent.id) == ConsumeOutcome.CONSUMED
        other_purpose = store.insert_token(_token(purpose=TokenPurpose.INVITE_CLIENT))
        other_subject = store.insert_token(_token(subject_id="user-2"))

        removed = store.invalidate_active_tokens("user-1", TokenPurpose.PASSWORD_RESET)

        assert removed == 1
        assert active.id not in store.tokens
        assert spent.id in store.tokens
        assert other_purpose.id in store.tokens
        assert other_subject.id in store.tokens

    def test_invalidate_without_active_tokens_is_noop(self):
        store = MemoryStore()
        assert store.invalidate_active_tokens("nobody", TokenPurpose.PASSWORD_RESET) == 0

    def test_consume_outcomes(self):
        store = MemoryStore()
        token = store.insert_token(_token())
        expired = store.insert_token(_token(ttl=timedelta(seconds=-1)))

        assert store.consume_token(token.id) == ConsumeOutcome.CONSUMED
        assert store.tokens[token.id].consumed_at is not None
        assert store.consume_token(token.id) == ConsumeOutcome.ALREADY_CONSUMED
        assert store.consume_token(expired.id) == ConsumeOutcome.EXPIRED
        assert store.tokens[expired.id].consumed_at is None
        assert store.consume_token("missing") == ConsumeOutcome.NOT_FOUND

    def test_consume_has_exactly_one_winner_across_threads(self):
        store = MemoryStore()
        token = store.insert_token(_token())
        barrier = threading.Barrier(16)

        def _attempt(_):
            barrier.wait()
            return store.consume_token(token.id)

        with ThreadPoolExecutor(max_workers=16) as pool:
            outcomes = list(pool.map(_attempt, range(16)))

        assert outcomes.count(ConsumeOutcome.CONSUMED) == 1
        assert outcomes.count(ConsumeOutcome.ALREADY_CONSUMED) == 15

    def test_purge_drops_old_consumed_and_expired_tokens(self):
        store = MemoryStore()
        fresh = store.insert_token(_token())
        store.insert_token(_token(ttl=timedelta(days=-40)))
        old_spent = store.insert_token(_token())
        store.consume_token(old_spent.id, now=utcnow() - timedelta(days=40))

        removed = store.purge_stale_tokens(utcnow() - timedelta(days=30))

        assert removed == 2
        assert set(store.tokens) == {fresh.id}


class TestAccounts:
    def test_email_uniqueness_is_case_insensitive(self):
        store = MemoryStore()
        store.create_user("Jane@Example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("jane@example.com")
        assert store.get_user_by_email("JANE@example.COM") is not None

    def test_revoke_user_sessions_counts_and_scopes(self):
        store = MemoryStore()
        alice = store.create_user("alice@example.com")
        bob = store.create_user("bob@example.com")
        store.create_session(alice.id)
        store.create_session(alice.id)
        bob_session = store.create_session(bob.id)

        assert store.revoke_user_sessions(alice.id) == 2
        assert store.revoke_user_sessions(alice.id) == 0
        assert store.get_session(bob_session.id) is not None

    def test_create_member_account_writes_user_credential_and_membership(self):
        store = MemoryStore()
        owner = store.create_user("owner@firm.test", role="firm")
        firm = store.create_firm("Firm", owner.id)

        user, membership = store.create_member_account(
            email="client@example.com",
            full_name="Casey Client",
            role="client",
            firm_id=firm.id,
            password_hash="hash",
            password_algo="argon2id",
            company_name="Casey Ltd",
        )

        assert user.role == "client"
        assert user.meta == {"invited_by_firm": firm.id}
        assert store.get_password_record(user.id) == ("hash", "argon2id")
        assert membership.firm_id == firm.id
        assert membership.company_name == "Casey Ltd"
        assert store.list_firm_memberships(firm.id) == [membership]

    def test_accountant_membership_drops_company_name(self):
        store = MemoryStore()
        owner = store.create_user("owner@firm.test", role="firm")
        firm = store.create_firm("Firm", owner.id)
        _, membership = store.create_member_account(
            email="acct@example.com",
            full_name="Avery Accountant",
            role="accountant",
            firm_id=firm.id,
            password_hash="hash",
            password_algo="argon2id",
            company_name="ignored",
        )
        assert membership.company_name is None

    def test_create_member_account_is_all_or_nothing(self):
        store = MemoryStore()
        owner = store.create_user("owner@firm.test", role="firm")
        firm = store.create_firm("Firm", owner.id)
        store.create_user("taken@example.com")
        users_before = dict(store.users)

        with pytest.raises(ConstraintViolation):
            store.create_member_account(
                email="taken@example.com",
                full_name="Dup",
                role="client",
                firm_id=firm.id,
                password_hash="hash",
                password_algo="argon2id",
            )
        with pytest.raises(ConstraintViolation):
            store.create_member_account(
                email="new@example.com",
                full_name="New",
                role="client",
                firm_id="no-such-firm",
                password_hash="hash",
                password_algo="argon2id",
            )

        assert store.users == users_before
        assert store.memberships == {}


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    owner = store.create_user("owner@firm.test", "Olivia", role="firm")
    store.save_password(owner.id, "hash", "argon2id")
    firm = store.create_firm("Firm", owner.id)
    token = _token(subject_id=f"{firm.id}:client@example.com", purpose=TokenPurpose.INVITE_CLIENT)
    token.firm_id = firm.id
    token.role = "client"
    token.target_email = "client@example.com"
    store.insert_token(token)
    store.consume_token(token.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_email("owner@firm.test").full_name == "Olivia"
    assert reloaded.get_password_record(owner.id) == ("hash", "argon2id")
    assert reloaded.get_firm_by_owner(owner.id).name == "Firm"
    restored = reloaded.find_token_by_digest(token.secret_digest)
    assert restored.purpose == TokenPurpose.INVITE_CLIENT
    assert restored.firm_id == firm.id
    assert restored.consumed_at is not None
    assert restored.expires_at == token.expires_at

