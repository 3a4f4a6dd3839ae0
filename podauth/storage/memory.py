from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from podauth.logging import get_logger
from podauth.storage.errors import ConstraintViolation
from podauth.storage.models import (
    ExternalIdentity,
    PasswordCredential,
    PasswordResetToken,
    RevocationEntry,
    Session,
    TokenAuditEvent,
    User,
    utcnow,
)

_DATETIME_FIELDS = frozenset(
    {"created_at", "updated_at", "expires_at", "last_activity", "revoked_at", "timestamp"}
)


class MemoryStore:
    """In-memory backing store for users, sessions, credentials and identity links.

    When ``fs_root`` is given, every mutation is snapshotted to
    ``<fs_root>/state/podauth_store.json`` and reloaded on construction, so a
    single-process deployment survives restarts without an external database.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root) if fs_root else None
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, PasswordCredential] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.identities: Dict[tuple[str, str], ExternalIdentity] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        if self.fs_root is not None:
            loaded = self._load_state()
            self.logger.info(
                "memory_store_initialized", fs_root=str(self.fs_root), loaded=loaded
            )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        user_id: Optional[str] = None,
        webid: Optional[str] = None,
        name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if user_id and user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if webid and any(existing.webid == webid for existing in self.users.values()):
                raise ConstraintViolation("webid already exists", {"field": "webid"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                webid=webid,
                name=name,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_webid(self, webid: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.webid == webid), None)
            return replace(user) if user else None

    # -- sessions ------------------------------------------------------------

    def save_session(self, session: Session) -> None:
        with self._data_lock:
            self.sessions[session.id] = replace(session)
            self._persist_state()

    def update_session(self, session: Session) -> bool:
        with self._data_lock:
            if session.id not in self.sessions:
                return False
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return True

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def list_sessions_for_account(self, account_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.account_id == account_id]

    def list_sessions_for_user_and_account(
        self, user_id: str, account_id: str
    ) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.account_id == account_id
            ]

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                raise ConstraintViolation("session not found", {"session_id": session_id})
            sess.touch(at)
            self._persist_state()

    # -- password credentials -----------------------------------------------

    def save_credential(self, credential: PasswordCredential) -> None:
        with self._data_lock:
            if credential.user_id in self.credentials:
                raise ConstraintViolation(
                    "credential already exists", {"user_id": credential.user_id}
                )
            self.credentials[credential.user_id] = replace(credential)
            self._persist_state()

    def update_credential(self, credential: PasswordCredential) -> None:
        with self._data_lock:
            if credential.user_id not in self.credentials:
                raise ConstraintViolation(
                    "credential not found", {"user_id": credential.user_id}
                )
            self.credentials[credential.user_id] = replace(credential)
            self._persist_state()

    def get_credential(self, user_id: str) -> Optional[PasswordCredential]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return replace(cred) if cred else None

    def delete_credential(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.credentials.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def has_credential(self, user_id: str) -> bool:
        with self._data_lock:
            return user_id in self.credentials

    # -- password reset tokens ----------------------------------------------

    def save_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            if token.token in self.reset_tokens:
                raise ConstraintViolation("reset token already exists", {})
            self.reset_tokens[token.token] = replace(token)
            self._persist_state()

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            return replace(record) if record else None

    def list_reset_tokens_for_user(self, user_id: str) -> List[PasswordResetToken]:
        with self._data_lock:
            return [replace(t) for t in self.reset_tokens.values() if t.user_id == user_id]

    def mark_reset_token_used(self, token: str) -> bool:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if record is None:
                return False
            record.used = True
            self._persist_state()
            return True

    def delete_reset_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.reset_tokens.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_reset_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [k for k, t in self.reset_tokens.items() if t.user_id == user_id]
            for key in stale:
                self.reset_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_reset_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [k for k, t in self.reset_tokens.items() if t.is_expired(now)]
            for key in stale:
                self.reset_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- external identities ------------------------------------------------

    def link_identity(self, identity: ExternalIdentity) -> None:
        key = (identity.provider, identity.external_id)
        with self._data_lock:
            existing = self.identities.get(key)
            if existing is not None:
                raise ConstraintViolation(
                    "external identity already linked",
                    {"provider": identity.provider, "user_id": existing.user_id},
                )
            self.identities[key] = replace(identity)
            self._persist_state()

    def find_identity(self, provider: str, external_id: str) -> Optional[ExternalIdentity]:
        with self._data_lock:
            identity = self.identities.get((provider, external_id))
            return replace(identity) if identity else None

    def list_identities_for_user(self, user_id: str) -> List[ExternalIdentity]:
        with self._data_lock:
            return [replace(i) for i in self.identities.values() if i.user_id == user_id]

    def list_identities_for_provider(self, provider: str) -> List[ExternalIdentity]:
        with self._data_lock:
            return [replace(i) for i in self.identities.values() if i.provider == provider]

    def is_identity_linked(self, provider: str, external_id: str) -> bool:
        with self._data_lock:
            return (provider, external_id) in self.identities

    def unlink_identity(self, provider: str, external_id: str) -> bool:
        with self._data_lock:
            removed = self.identities.pop((provider, external_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    def unlink_all_identities(self, user_id: str) -> int:
        with self._data_lock:
            stale = [k for k, i in self.identities.items() if i.user_id == user_id]
            for key in stale:
                self.identities.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- snapshot persistence -----------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "podauth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize(self, record: Any) -> dict:
        data = asdict(record)
        for key in _DATETIME_FIELDS.intersection(data):
            if data[key] is not None:
                data[key] = self._serialize_datetime(data[key])
        return data

    def _deserialize(self, cls: type, data: dict) -> Any:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS.intersection(kwargs):
            if kwargs[key] is not None:
                kwargs[key] = self._deserialize_datetime(kwargs[key])
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
            "identities": [self._serialize(i) for i in self.identities.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.credentials = {
            c["user_id"]: self._deserialize(PasswordCredential, c)
            for c in data.get("credentials", [])
        }
        self.reset_tokens = {
            t["token"]: self._deserialize(PasswordResetToken, t)
            for t in data.get("reset_tokens", [])
        }
        self.identities = {}
        for raw in data.get("identities", []):
            identity = self._deserialize(ExternalIdentity, raw)
            self.identities[(identity.provider, identity.external_id)] = identity
        return True


class MemoryRevocationStore:
    """Process-local revocation list keyed by token id."""

    def __init__(self) -> None:
        self._entries: Dict[str, RevocationEntry] = {}
        self._lock = threading.Lock()

    async def add(self, entry: RevocationEntry) -> None:
        with self._lock:
            self._entries[entry.token_id] = replace(entry)

    async def contains(self, token_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(token_id)
            return entry is not None and not entry.is_expired()

    async def remove(self, token_id: str) -> None:
        with self._lock:
            self._entries.pop(token_id, None)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            stale = [tid for tid, entry in self._entries.items() if entry.is_expired(now)]
            for tid in stale:
                self._entries.pop(tid, None)
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MemoryAuditLog:
    """Append-only token audit trail kept in memory."""

    def __init__(self) -> None:
        self.events: List[TokenAuditEvent] = []
        self._lock = threading.Lock()

    async def record(self, event: TokenAuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def query(
        self,
        *,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[TokenAuditEvent]:
        with self._lock:
            return [
                e
                for e in self.events
                if (event_type is None or e.event_type == event_type)
                and (user_id is None or e.user_id == user_id)
                and (success is None or e.success == success)
            ]
