"""MemoryStore behaviour, including snapshot persistence across instances."""

import threading
from datetime import timedelta

import pytest

from podauth.storage.errors import ConstraintViolation
from podauth.storage.memory import MemoryAuditLog, MemoryRevocationStore, MemoryStore
from podauth.storage.models import (
    ExternalIdentity,
    PasswordCredential,
    PasswordResetToken,
    RevocationEntry,
    Session,
    TokenAuditEvent,
    utcnow,
)


def make_session(session_id: str, user_id: str = "user-1", expires_in: int = 3600) -> Session:
    now = utcnow()
    return Session(
        id=session_id,
        user_id=user_id,
        webid=f"https://{user_id}.example/card#me",
        token_hash=f"hash_{session_id}",
        created_at=now,
        last_activity=now,
        expires_at=now + timedelta(seconds=expires_in),
    )


class TestUsers:
    def test_create_and_lookup(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com", webid="https://alice.example/card#me")

        assert store.get_user(user.id).email == "alice@example.com"
        assert store.get_user_by_email("alice@example.com").id == user.id
        assert store.get_user_by_webid("https://alice.example/card#me").id == user.id
        assert store.get_user_by_email("nobody@example.com") is None

    def test_duplicate_email(self):
        store = MemoryStore()
        store.create_user("alice@example.com")

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("alice@example.com")

        assert exc_info.value.detail == {"field": "email"}

    def test_duplicate_webid(self):
        store = MemoryStore()
        store.create_user("a@example.com", webid="https://alice.example/card#me")

        with pytest.raises(ConstraintViolation):
            store.create_user("b@example.com", webid="https://alice.example/card#me")

    def test_returned_records_are_copies(self):
        store = MemoryStore()
        user = store.create_user("alice@example.com")
        user.email = "mutated@example.com"

        assert store.get_user(user.id).email == "alice@example.com"


class TestSessions:
    def test_save_list_delete(self):
        store = MemoryStore()
        store.save_session(make_session("s1"))
        store.save_session(make_session("s2"))
        store.save_session(make_session("s3", user_id="user-2"))

        assert {s.id for s in store.list_sessions_for_user("user-1")} == {"s1", "s2"}
        assert store.delete_session("s1") is True
        assert store.delete_session("s1") is False
        assert store.delete_user_sessions("user-1") == 1
        assert store.get_session("s3") is not None

    def test_update_only_touches_existing_rows(self):
        store = MemoryStore()
        session = make_session("s1")
        store.save_session(session)
        session.set_account_context("acct-1", "owner")

        assert store.update_session(session) is True
        assert store.get_session("s1").account_id == "acct-1"

        store.delete_session("s1")
        assert store.update_session(session) is False
        assert store.get_session("s1") is None

    def test_account_queries(self):
        store = MemoryStore()
        session = make_session("s1")
        session.set_account_context("acct-1", "owner")
        store.save_session(session)
        store.save_session(make_session("s2"))

        assert [s.id for s in store.list_sessions_for_account("acct-1")] == ["s1"]
        assert [
            s.id for s in store.list_sessions_for_user_and_account("user-1", "acct-1")
        ] == ["s1"]
        assert store.list_sessions_for_user_and_account("user-2", "acct-1") == []

    def test_delete_expired(self):
        store = MemoryStore()
        store.save_session(make_session("live"))
        store.save_session(make_session("dead", expires_in=-1))

        assert store.delete_expired_sessions() == 1
        assert store.get_session("dead") is None
        assert store.get_session("live") is not None

    def test_touch(self):
        store = MemoryStore()
        store.save_session(make_session("s1"))
        later = utcnow() + timedelta(minutes=5)

        store.touch_session("s1", later)

        assert store.get_session("s1").last_activity == later

    def test_touch_missing(self):
        with pytest.raises(ConstraintViolation):
            MemoryStore().touch_session("missing")

    def test_concurrent_saves(self):
        store = MemoryStore()

        def worker(start):
            for i in range(start, start + 50):
                store.save_session(make_session(f"s{i}"))

        threads = [threading.Thread(target=worker, args=(n * 50,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.list_sessions_for_user("user-1")) == 200


class TestCredentialsAndResetTokens:
    def test_credential_lifecycle(self):
        store = MemoryStore()
        store.save_credential(PasswordCredential("user-1", "hash", "salt"))

        with pytest.raises(ConstraintViolation):
            store.save_credential(PasswordCredential("user-1", "hash2", "salt2"))

        store.update_credential(PasswordCredential("user-1", "hash2", "salt2"))
        assert store.get_credential("user-1").password_hash == "hash2"
        assert store.delete_credential("user-1") is True
        assert store.has_credential("user-1") is False

    def test_update_missing_credential(self):
        with pytest.raises(ConstraintViolation):
            MemoryStore().update_credential(PasswordCredential("user-1", "h", "s"))

    def test_reset_tokens(self):
        store = MemoryStore()
        expires = utcnow() + timedelta(hours=1)
        store.save_reset_token(PasswordResetToken("t1", "user-1", "a@example.com", expires))
        store.save_reset_token(PasswordResetToken("t2", "user-1", "a@example.com", expires))

        assert store.mark_reset_token_used("t1") is True
        assert store.mark_reset_token_used("missing") is False
        assert store.get_reset_token("t1").used is True
        assert store.delete_reset_token("t2") is True
        assert store.delete_user_reset_tokens("user-1") == 1


class TestIdentities:
    def test_link_is_unique_per_provider_account(self):
        store = MemoryStore()
        store.link_identity(ExternalIdentity("user-1", "google", "g-1"))

        with pytest.raises(ConstraintViolation):
            store.link_identity(ExternalIdentity("user-2", "google", "g-1"))

        assert store.is_identity_linked("google", "g-1")
        assert store.unlink_identity("google", "g-1") is True
        assert store.unlink_identity("google", "g-1") is False


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("alice@example.com", webid="https://alice.example/card#me")
        store.save_session(make_session("s1", user_id=user.id))
        store.save_credential(PasswordCredential(user.id, "hash", "salt"))
        store.link_identity(ExternalIdentity(user.id, "google", "g-1"))

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user_by_email("alice@example.com").id == user.id
        session = reloaded.get_session("s1")
        assert session.expires_at.tzinfo is not None
        assert reloaded.get_credential(user.id).salt == "salt"
        assert reloaded.find_identity("google", "g-1").user_id == user.id
        assert (tmp_path / "state" / "podauth_store.json").exists()

    def test_fresh_root_starts_empty(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        assert store.get_user_by_email("alice@example.com") is None


class TestRevocationAndAudit:
    async def test_revocation_store(self):
        store = MemoryRevocationStore()
        await store.add(RevocationEntry("live", "u", "logout", utcnow() + timedelta(hours=1)))
        await store.add(RevocationEntry("dead", "u", "logout", utcnow() - timedelta(seconds=1)))

        assert await store.contains("live") is True
        assert await store.contains("dead") is False
        assert await store.cleanup_expired() == 1
        assert len(store) == 1
        await store.remove("live")
        assert len(store) == 0

    async def test_audit_query(self):
        log = MemoryAuditLog()
        await log.record(TokenAuditEvent("token_issued", True, user_id="u1"))
        await log.record(TokenAuditEvent("token_expired", False, user_id="u1"))
        await log.record(TokenAuditEvent("token_issued", True, user_id="u2"))

        assert len(log.query(event_type="token_issued")) == 2
        assert len(log.query(user_id="u1", success=False)) == 1
        assert len(log.events) == 3
