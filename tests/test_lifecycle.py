"""Issue and redeem flows for password resets and firm invites."""

import asyncio
from datetime import timedelta

import pytest

from docuflow.service.errors import (
    ConflictError,
    DownstreamUpdateError,
    ForbiddenError,
    GenerationError,
    InvalidInputError,
    InvalidTokenError,
)
from docuflow.service.auth import AuthContext
from docuflow.service.lifecycle import GENERIC_RESET_MESSAGE, invite_subject
from docuflow.service.tokens import TokenGenerator
from docuflow.storage.errors import DuplicateDigest
from docuflow.storage.models import TokenPurpose, utcnow

OLD_PASSWORD = "correct-horse-1"


def _user(runtime, email="user@x.com", password=OLD_PASSWORD):
    user = runtime.store.create_user(email, "Uma User")
    runtime.auth.save_password(user.id, password)
    return user


def _stored(runtime, raw):
    return runtime.store.find_token_by_digest(TokenGenerator.digest(raw))


class TestPasswordReset:
    async def test_reset_round_trip(self, runtime, mailer):
        user = _user(runtime)
        _, first_session = await runtime.auth.login("user@x.com", OLD_PASSWORD)
        await runtime.auth.start_session(user)

        outcome = await runtime.tokens.request_password_reset("User@X.com")
        assert outcome.issued is True
        assert outcome.email_sent is True
        raw = outcome.raw_token
        assert mailer.resets[0]["to"] == "user@x.com"
        assert mailer.resets[0]["link"] == f"http://localhost:5173/reset-password?token={raw}"

        result = await runtime.tokens.redeem(
            raw, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
        )

        assert result.user_id == user.id
        assert result.sessions_revoked == 2
        assert runtime.store.get_session(first_session.id) is None
        assert not [s for s in runtime.store.sessions.values() if s.user_id == user.id]

        logged_in, _ = await runtime.auth.login("user@x.com", "hunter2x")
        assert logged_in.id == user.id
        stale, _ = await runtime.auth.login("user@x.com", OLD_PASSWORD)
        assert stale is None

        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem(
                raw, TokenPurpose.PASSWORD_RESET, {"new_password": "another-pass"}
            )

    async def test_only_digest_is_stored(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")
        stored = _stored(runtime, outcome.raw_token)
        assert stored is not None
        assert stored.secret_digest != outcome.raw_token
        assert all(t.secret_digest != outcome.raw_token for t in runtime.store.tokens.values())
        assert stored.expires_at - stored.created_at == timedelta(minutes=60)

    async def test_unknown_email_reports_success_without_token(self, runtime, mailer):
        _user(runtime)
        unknown = await runtime.tokens.request_password_reset("ghost@x.com")

        assert unknown.issued is False
        assert unknown.message == GENERIC_RESET_MESSAGE
        assert unknown.raw_token is None
        assert runtime.store.tokens == {}
        assert mailer.resets == []

    async def test_inactive_user_gets_no_token(self, runtime, mailer):
        runtime.store.create_user("gone@x.com", is_active=False)
        outcome = await runtime.tokens.request_password_reset("gone@x.com")
        assert outcome.issued is False
        assert runtime.store.tokens == {}

    async def test_expired_token_is_rejected(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")
        _stored(runtime, outcome.raw_token).expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(InvalidTokenError) as excinfo:
            await runtime.tokens.redeem(
                outcome.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
            )
        assert excinfo.value.message == "Invalid or expired token"
        assert _stored(runtime, outcome.raw_token).consumed_at is None

    async def test_newer_token_supersedes_older(self, runtime, mailer):
        _user(runtime)
        first = await runtime.tokens.request_password_reset("user@x.com")
        second = await runtime.tokens.request_password_reset("user@x.com")

        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem(
                first.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
            )
        result = await runtime.tokens.redeem(
            second.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
        )
        assert result.purpose == TokenPurpose.PASSWORD_RESET
        assert len(runtime.store.tokens) == 1

    async def test_concurrent_redemption_has_one_winner(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")

        results = await asyncio.gather(
            *[
                runtime.tokens.redeem(
                    outcome.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": f"hunter2x-{i}"}
                )
                for i in range(5)
            ],
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert all(isinstance(r, InvalidTokenError) for r in losers)

    async def test_wrong_purpose_does_not_spend_token(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")

        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem(
                outcome.raw_token,
                TokenPurpose.INVITE_CLIENT,
                {"password": "hunter2x", "full_name": "Mallory"},
            )
        assert _stored(runtime, outcome.raw_token).consumed_at is None

    async def test_unknown_token_rejected(self, runtime):
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem("f" * 64, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"})
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem("", TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"})

    async def test_weak_password_leaves_token_usable(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")

        with pytest.raises(InvalidInputError):
            await runtime.tokens.redeem(
                outcome.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "short"}
            )
        assert _stored(runtime, outcome.raw_token).consumed_at is None

    async def test_delivery_failure_keeps_token_redeemable(self, runtime, mailer):
        _user(runtime)
        mailer.fail_stage = "envelope"

        outcome = await runtime.tokens.request_password_reset("user@x.com")

        assert outcome.issued is True
        assert outcome.email_sent is False
        assert outcome.delivery_error.startswith("envelope: ")
        assert "@" not in outcome.delivery_error
        assert outcome.link.endswith(outcome.raw_token)
        result = await runtime.tokens.redeem(
            outcome.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
        )
        assert result.purpose == TokenPurpose.PASSWORD_RESET

    async def test_side_effect_failure_is_distinct_and_token_stays_spent(
        self, runtime, mailer, monkeypatch
    ):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")

        def _broken(user_id, password):
            raise RuntimeError("credential store offline")

        monkeypatch.setattr(runtime.tokens.auth, "save_password", _broken)
        with pytest.raises(DownstreamUpdateError) as excinfo:
            await runtime.tokens.redeem(
                outcome.raw_token, TokenPurpose.PASSWORD_RESET, {"new_password": "hunter2x"}
            )
        assert excinfo.value.error_code == "downstream_update_failed"
        assert _stored(runtime, outcome.raw_token).consumed_at is not None

    def test_allowlisted_origin_is_used_for_links(self, runtime):
        assert runtime.tokens.link_origin("https://app.docuflow.test/") == "https://app.docuflow.test"
        assert runtime.tokens.link_origin("https://evil.test") == "http://localhost:5173"
        assert runtime.tokens.link_origin(None) == "http://localhost:5173"


class TestIssuance:
    def test_digest_collision_is_retried_once(self, runtime, monkeypatch):
        real_insert = runtime.store.insert_token
        calls = []

        def _flaky(token):
            calls.append(token.secret_digest)
            if len(calls) == 1:
                raise DuplicateDigest()
            return real_insert(token)

        monkeypatch.setattr(runtime.store, "insert_token", _flaky)
        issued = runtime.tokens.issue("user-1", TokenPurpose.PASSWORD_RESET)

        assert len(calls) == 2
        assert calls[0] != calls[1]
        assert issued.token.secret_digest == calls[1]

    def test_second_collision_raises_generation_error(self, runtime, monkeypatch):
        def _always(token):
            raise DuplicateDigest()

        monkeypatch.setattr(runtime.store, "insert_token", _always)
        with pytest.raises(GenerationError):
            runtime.tokens.issue("user-1", TokenPurpose.PASSWORD_RESET)

    def test_purpose_strings_are_accepted(self, runtime):
        issued = runtime.tokens.issue("user-1", "password-reset")
        assert issued.token.purpose == TokenPurpose.PASSWORD_RESET

    def test_purge_removes_only_stale_tokens(self, runtime):
        fresh = runtime.tokens.issue("user-1", TokenPurpose.PASSWORD_RESET)
        old = runtime.tokens.issue("user-2", TokenPurpose.PASSWORD_RESET)
        runtime.store.tokens[old.token.id].expires_at = utcnow() - timedelta(days=45)

        assert runtime.tokens.purge_stale_tokens() == 1
        assert set(runtime.store.tokens) == {fresh.token.id}


class TestInvites:
    async def test_invite_payload_binds_firm_not_request(self, runtime, mailer, firm_factory):
        _, firm_one, principal = firm_factory()
        _, firm_two, _ = firm_factory(email="owner@firm-two.test", name="Firm Two")

        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")
        assert invite.email_sent is True
        assert mailer.invites[0]["firm_name"] == "Firm One"
        assert f"firm={firm_one.id}" in invite.link
        assert "role=client" in invite.link

        result = await runtime.tokens.redeem(
            invite.raw_token,
            TokenPurpose.INVITE_CLIENT,
            {
                "password": "client-pass-1",
                "full_name": "Casey Client",
                "company_name": "Casey Ltd",
                "firm_id": firm_two.id,
                "role": "accountant",
            },
        )

        assert result.membership.firm_id == firm_one.id
        assert result.membership.role == "client"
        assert result.membership.company_name == "Casey Ltd"
        assert runtime.store.list_firm_memberships(firm_two.id) == []
        user = runtime.store.get_user(result.user_id)
        assert user.role == "client"
        assert user.email == "client@example.com"
        assert result.sessions_revoked == 0

        ctx = await runtime.auth.resolve_session(result.session.id)
        assert ctx.user_id == user.id

    async def test_invite_token_is_single_use(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "acct@example.com", "accountant")
        payload = {"password": "acct-pass-1", "full_name": "Avery Accountant"}

        await runtime.tokens.redeem(invite.raw_token, TokenPurpose.INVITE_ACCOUNTANT, payload)
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem(invite.raw_token, TokenPurpose.INVITE_ACCOUNTANT, payload)

    async def test_invite_subject_is_firm_and_email(self, runtime, mailer, firm_one):
        _, firm, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "Client@Example.com", "client")
        stored = _stored(runtime, invite.raw_token)
        assert stored.subject_id == invite_subject(firm.id, "client@example.com")
        assert stored.target_email == "client@example.com"
        assert stored.expires_at - stored.created_at == timedelta(hours=48)

    async def test_reinvite_supersedes_but_roles_are_independent(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        first_client = await runtime.tokens.create_invite(principal, "pat@example.com", "client")
        accountant = await runtime.tokens.create_invite(principal, "pat@example.com", "accountant")
        second_client = await runtime.tokens.create_invite(principal, "pat@example.com", "client")

        assert _stored(runtime, first_client.raw_token) is None
        assert _stored(runtime, accountant.raw_token) is not None
        assert _stored(runtime, second_client.raw_token) is not None

    async def test_wrong_invite_role_rejected(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.redeem(
                invite.raw_token,
                TokenPurpose.INVITE_ACCOUNTANT,
                {"password": "client-pass-1", "full_name": "Casey Client"},
            )
        assert _stored(runtime, invite.raw_token).consumed_at is None

    async def test_existing_account_conflicts_before_consuming(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        runtime.store.create_user("client@example.com")
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")

        with pytest.raises(ConflictError):
            await runtime.tokens.redeem(
                invite.raw_token,
                TokenPurpose.INVITE_CLIENT,
                {"password": "client-pass-1", "full_name": "Casey Client"},
            )
        assert _stored(runtime, invite.raw_token).consumed_at is None

    async def test_missing_full_name_is_invalid_input(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")
        with pytest.raises(InvalidInputError):
            await runtime.tokens.redeem(
                invite.raw_token, TokenPurpose.INVITE_CLIENT, {"password": "client-pass-1"}
            )

    async def test_account_setup_failure_after_consume(self, runtime, mailer, firm_one, monkeypatch):
        _, _, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")

        def _broken(**kwargs):
            raise RuntimeError("membership table locked")

        monkeypatch.setattr(runtime.store, "create_member_account", _broken)
        with pytest.raises(DownstreamUpdateError):
            await runtime.tokens.redeem(
                invite.raw_token,
                TokenPurpose.INVITE_CLIENT,
                {"password": "client-pass-1", "full_name": "Casey Client"},
            )
        assert _stored(runtime, invite.raw_token).consumed_at is not None
        assert runtime.store.get_user_by_email("client@example.com") is None

    async def test_only_firm_owners_can_invite(self, runtime, mailer, firm_factory):
        _, firm_one, _ = firm_factory()
        _, _, other_principal = firm_factory(email="owner@firm-two.test", name="Firm Two")
        client = AuthContext(user_id="someone", role="client", email="c@example.com")

        with pytest.raises(ForbiddenError):
            await runtime.tokens.create_invite(client, "new@example.com", "client")
        with pytest.raises(ForbiddenError):
            await runtime.tokens.create_invite(
                other_principal, "new@example.com", "client", firm_id=firm_one.id
            )
        assert runtime.store.tokens == {}

    async def test_invalid_role_rejected(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        with pytest.raises(InvalidInputError):
            await runtime.tokens.create_invite(principal, "new@example.com", "firm")

    async def test_invite_delivery_failure_still_returns_link(self, runtime, mailer, firm_one):
        _, _, principal = firm_one
        mailer.fail_stage = "connect"
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")
        assert invite.email_sent is False
        assert invite.delivery_error.startswith("connect: ")
        assert _stored(runtime, invite.raw_token) is not None

    async def test_describe_invite_does_not_spend_it(self, runtime, mailer, firm_one):
        _, firm, principal = firm_one
        invite = await runtime.tokens.create_invite(principal, "client@example.com", "client")

        preview = runtime.tokens.describe_invite(invite.raw_token)
        assert preview.firm_name == "Firm One"
        assert preview.firm_id == firm.id
        assert preview.role == "client"
        assert preview.email == "client@example.com"

        await runtime.tokens.redeem(
            invite.raw_token,
            TokenPurpose.INVITE_CLIENT,
            {"password": "client-pass-1", "full_name": "Casey Client"},
        )
        with pytest.raises(InvalidTokenError):
            runtime.tokens.describe_invite(invite.raw_token)

    async def test_describe_rejects_reset_tokens(self, runtime, mailer):
        _user(runtime)
        outcome = await runtime.tokens.request_password_reset("user@x.com")
        with pytest.raises(InvalidTokenError):
            runtime.tokens.describe_invite(outcome.raw_token)
