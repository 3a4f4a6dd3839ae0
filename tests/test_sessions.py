"""Session lifecycle tests against the in-memory store."""

from datetime import timedelta

import pytest

from podauth.service.errors import (
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenRevokedError,
    ValidationError,
)
from podauth.service.sessions import SessionManager
from podauth.service.tokens import TokenManager
from podauth.storage.memory import MemoryStore
from podauth.storage.models import Session, utcnow

WEBID = "https://alice.example/profile/card#me"


class ExplodingTokens:
    async def issue(self, session):
        raise RuntimeError("signer unavailable")


class LogoutAfterReadStore(MemoryStore):
    """Deletes a session right after it is read, like a logout landing mid-update."""

    def __init__(self):
        super().__init__()
        self.logout_on_read = set()

    def touch_session(self, session_id, at=None):
        super().touch_session(session_id, at)
        if session_id in self.logout_on_read:
            self.delete_session(session_id)

    def get_session(self, session_id):
        session = super().get_session(session_id)
        if session_id in self.logout_on_read:
            self.delete_session(session_id)
        return session


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(signing_key):
    return TokenManager(signing_key, issuer="podauth-test")


@pytest.fixture
def sessions(store, tokens):
    return SessionManager(store, tokens)


def expire(store: MemoryStore, session_id: str) -> None:
    session = store.get_session(session_id)
    session.expires_at = utcnow() - timedelta(seconds=1)
    store.save_session(session)


class TestCreateAndValidate:
    async def test_create_persists_session_and_returns_token(self, sessions, store, tokens):
        session, token = await sessions.create("user-1", WEBID)

        stored = store.get_session(session.id)
        assert stored is not None
        assert stored.user_id == "user-1"
        assert stored.webid == WEBID
        assert session.id.startswith("sess_")
        assert session.token_hash.startswith("hash_")
        assert session.expires_at - session.created_at == timedelta(hours=24)

        claims = await tokens.validate(token)
        assert claims.session_id == session.id

    @pytest.mark.parametrize("user_id,webid", [("", WEBID), ("user-1", "")])
    async def test_create_requires_identity(self, sessions, user_id, webid):
        with pytest.raises(ValidationError):
            await sessions.create(user_id, webid)

    async def test_failed_token_issue_removes_session(self, store):
        sessions = SessionManager(store, ExplodingTokens())

        with pytest.raises(RuntimeError):
            await sessions.create("user-1", WEBID)

        assert store.list_sessions_for_user("user-1") == []

    async def test_validate_returns_session_and_touches_it(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        before = store.get_session(session.id).last_activity

        validated = await sessions.validate(session.id)

        assert validated.id == session.id
        assert store.get_session(session.id).last_activity >= before

    async def test_validate_unknown_session(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.validate("sess_missing")

    async def test_validate_empty_id(self, sessions):
        with pytest.raises(ValidationError):
            await sessions.validate("")

    async def test_expired_session_is_deleted_then_not_found(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        expire(store, session.id)

        with pytest.raises(SessionExpiredError):
            await sessions.validate(session.id)

        assert store.get_session(session.id) is None
        with pytest.raises(SessionNotFoundError):
            await sessions.validate(session.id)

    async def test_validate_token_binds_token_to_session(self, sessions):
        session, token = await sessions.create("user-1", WEBID)

        validated = await sessions.validate_token(token)

        assert validated.id == session.id

    async def test_token_outlives_deleted_session(self, sessions):
        session, token = await sessions.create("user-1", WEBID)
        await sessions.invalidate(session.id)

        with pytest.raises(SessionNotFoundError):
            await sessions.validate_token(token)

    async def test_token_with_mismatched_identity(self, sessions, store, tokens):
        session, _ = await sessions.create("user-1", WEBID)
        forged_view = store.get_session(session.id)
        forged_view.user_id = "user-2"
        token = await tokens.issue(forged_view)

        with pytest.raises(InvalidTokenError):
            await sessions.validate_token(token)


class TestRefresh:
    async def test_refresh_outside_window_keeps_expiry(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        original_expiry = store.get_session(session.id).expires_at

        refreshed, token = await sessions.refresh(session.id)

        assert refreshed.expires_at == original_expiry
        assert token

    async def test_refresh_inside_window_extends_expiry(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        stored = store.get_session(session.id)
        stored.expires_at = utcnow() + timedelta(minutes=30)
        store.save_session(stored)

        refreshed, token = await sessions.refresh(session.id)

        assert refreshed.expires_at > utcnow() + timedelta(hours=23)
        assert store.get_session(session.id).expires_at == refreshed.expires_at
        validated = await sessions.validate_token(token)
        assert validated.id == session.id

    async def test_refresh_of_expired_session(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        expire(store, session.id)

        with pytest.raises(SessionExpiredError):
            await sessions.refresh(session.id)

    async def test_refresh_token_keeps_old_token_usable(self, sessions):
        session, token = await sessions.create("user-1", WEBID)

        new_token = await sessions.refresh_token(token)

        assert new_token != token
        assert (await sessions.validate_token(token)).id == session.id
        assert (await sessions.validate_token(new_token)).id == session.id

    async def test_refresh_token_rejects_revoked(self, sessions, tokens):
        _, token = await sessions.create("user-1", WEBID)
        await tokens.revoke(token, "logout")

        with pytest.raises(TokenRevokedError):
            await sessions.refresh_token(token)


class TestInvalidation:
    async def test_invalidate_is_idempotent(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)

        await sessions.invalidate(session.id)
        await sessions.invalidate(session.id)

        assert store.get_session(session.id) is None

    async def test_invalidate_all_for_user(self, sessions, store):
        for _ in range(3):
            await sessions.create("user-1", WEBID)
        other, _ = await sessions.create("user-2", "https://bob.example/profile/card#me")

        removed = await sessions.invalidate_all_for_user("user-1")

        assert removed == 3
        assert store.list_sessions_for_user("user-1") == []
        assert store.get_session(other.id) is not None

    async def test_list_for_user_drops_expired(self, sessions, store):
        live, _ = await sessions.create("user-1", WEBID)
        stale, _ = await sessions.create("user-1", WEBID)
        expire(store, stale.id)

        active = await sessions.list_for_user("user-1")

        assert [s.id for s in active] == [live.id]
        assert store.get_session(stale.id) is None

    async def test_cleanup_expired_mixed_batch(self, sessions, store):
        created = [await sessions.create("user-1", WEBID) for _ in range(5)]
        for session, _ in created[:3]:
            expire(store, session.id)

        removed = await sessions.cleanup_expired()

        assert removed == 3
        remaining = {s.id for s in store.list_sessions_for_user("user-1")}
        assert remaining == {session.id for session, _ in created[3:]}
        assert await sessions.cleanup_expired() == 0


class TestAccountContext:
    async def test_set_and_clear(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)

        updated = await sessions.set_account_context(session.id, "acct-1", "owner")
        assert updated.has_account_context
        assert store.get_session(session.id).account_id == "acct-1"
        assert [s.id for s in store.list_sessions_for_account("acct-1")] == [session.id]

        cleared = await sessions.clear_account_context(session.id)
        assert not cleared.has_account_context
        assert store.get_session(session.id).role_id is None

    @pytest.mark.parametrize("account_id,role_id", [("", "owner"), ("acct-1", "")])
    async def test_partial_context_rejected(self, sessions, store, account_id, role_id):
        session, _ = await sessions.create("user-1", WEBID)

        with pytest.raises(ValidationError):
            await sessions.set_account_context(session.id, account_id, role_id)

        assert not store.get_session(session.id).has_account_context

    async def test_context_flows_into_refreshed_token(self, sessions, tokens):
        session, _ = await sessions.create("user-1", WEBID)
        await sessions.set_account_context(session.id, "acct-1", "owner")

        _, token = await sessions.refresh(session.id)

        claims = await tokens.validate(token)
        assert claims.account_id == "acct-1"
        assert claims.role_id == "owner"


class TestSessionModel:
    def test_session_missing_fields_is_invalid(self):
        now = utcnow()
        session = Session(
            id="sess_1",
            user_id="user-1",
            webid="",
            token_hash="hash_1",
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(hours=1),
        )

        assert session.is_valid() is False
        assert session.is_expired() is False

    def test_expiry_boundary_is_expired(self):
        now = utcnow()
        session = Session(
            id="sess_1",
            user_id="user-1",
            webid=WEBID,
            token_hash="hash_1",
            created_at=now,
            last_activity=now,
            expires_at=now,
        )

        assert session.is_expired(now) is True

    async def test_set_context_on_expired_session(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        expire(store, session.id)

        with pytest.raises(SessionExpiredError):
            await sessions.set_account_context(session.id, "acct-1", "owner")

        assert store.get_session(session.id) is None

    async def test_clear_context_on_expired_session(self, sessions, store):
        session, _ = await sessions.create("user-1", WEBID)
        await sessions.set_account_context(session.id, "acct-1", "owner")
        expire(store, session.id)

        with pytest.raises(SessionExpiredError):
            await sessions.clear_account_context(session.id)

        assert store.get_session(session.id) is None

    async def test_context_on_unknown_session(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.set_account_context("sess_missing", "acct-1", "owner")
        with pytest.raises(SessionNotFoundError):
            await sessions.clear_account_context("sess_missing")


class TestConcurrentLogout:
    @pytest.fixture
    def racing_store(self):
        return LogoutAfterReadStore()

    @pytest.fixture
    def racing_sessions(self, racing_store, tokens):
        return SessionManager(racing_store, tokens)

    async def test_refresh_does_not_resurrect_session(self, racing_sessions, racing_store):
        session, _ = await racing_sessions.create("user-1", WEBID)
        stored = racing_store.get_session(session.id)
        stored.expires_at = utcnow() + timedelta(minutes=30)
        racing_store.save_session(stored)
        racing_store.logout_on_read.add(session.id)

        with pytest.raises(SessionNotFoundError):
            await racing_sessions.refresh(session.id)

        racing_store.logout_on_read.clear()
        assert racing_store.get_session(session.id) is None
        with pytest.raises(SessionNotFoundError):
            await racing_sessions.validate(session.id)

    async def test_set_context_does_not_resurrect_session(self, racing_sessions, racing_store):
        session, _ = await racing_sessions.create("user-1", WEBID)
        racing_store.logout_on_read.add(session.id)

        with pytest.raises(SessionNotFoundError):
            await racing_sessions.set_account_context(session.id, "acct-1", "owner")

        racing_store.logout_on_read.clear()
        assert racing_store.get_session(session.id) is None

    async def test_clear_context_does_not_resurrect_session(self, racing_sessions, racing_store):
        session, _ = await racing_sessions.create("user-1", WEBID)
        racing_store.logout_on_read.add(session.id)

        with pytest.raises(SessionNotFoundError):
            await racing_sessions.clear_account_context(session.id)

        racing_store.logout_on_read.clear()
        assert racing_store.get_session(session.id) is None
