from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from podauth.logging import get_logger
from podauth.service.errors import (
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from podauth.service.passwords import generate_session_id, generate_token_hash
from podauth.service.tokens import TokenManager
from podauth.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def save_session(self, session: Session) -> None: ...

    def update_session(self, session: Session) -> bool: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def list_sessions_for_account(self, account_id: str) -> List[Session]: ...

    def list_sessions_for_user_and_account(
        self, user_id: str, account_id: str
    ) -> List[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None: ...


class SessionManager:
    """Creates, validates, refreshes and retires sessions.

    Each session is paired with a signed token from the ``TokenManager``. The
    session row is the source of truth; a token whose session is gone is
    rejected by ``validate_token`` even while its signature is still valid.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenManager,
        *,
        session_ttl: timedelta = timedelta(hours=24),
        refresh_threshold: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.session_ttl = session_ttl
        self.refresh_threshold = refresh_threshold

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create(self, user_id: str, webid: str) -> Tuple[Session, str]:
        if not user_id:
            raise ValidationError("user_id is required")
        if not webid:
            raise ValidationError("webid is required")
        now = self._now()
        session = Session(
            id=generate_session_id(),
            user_id=user_id,
            webid=webid,
            token_hash=generate_token_hash(),
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_ttl,
        )
        self.store.save_session(session)
        try:
            token = await self.tokens.issue(session)
        except Exception:
            try:
                self.store.delete_session(session.id)
            except Exception as cleanup_exc:
                logger.error(
                    "session_compensating_delete_failed",
                    session_id=session.id,
                    error=str(cleanup_exc),
                )
            raise
        logger.info("session_created", session_id=session.id, user_id=user_id)
        return session, token

    def _update(self, session: Session) -> None:
        if not self.store.update_session(session):
            logger.info("session_gone_before_update", session_id=session.id)
            raise SessionNotFoundError("session not found")

    def _load_valid(self, session_id: str, now: datetime) -> Session:
        if not session_id:
            raise ValidationError("session_id is required")
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError("session not found")
        if not session.is_valid(now):
            self.store.delete_session(session_id)
            logger.info("session_expired_removed", session_id=session_id)
            raise SessionExpiredError("session has expired")
        return session

    async def validate(self, session_id: str) -> Session:
        now = self._now()
        session = self._load_valid(session_id, now)
        session.touch(now)
        try:
            self.store.touch_session(session.id, now)
        except Exception as exc:
            logger.warning(
                "session_touch_failed", session_id=session.id, error=str(exc)
            )
        return session

    async def validate_token(self, token: str) -> Session:
        """Validate a bearer token and the session it is bound to."""
        claims = await self.tokens.validate(token)
        session = await self.validate(claims.session_id)
        if session.user_id != claims.user_id or session.webid != claims.webid:
            logger.warning(
                "session_token_mismatch",
                session_id=session.id,
                token_id=claims.token_id,
            )
            raise InvalidTokenError("token does not match its session")
        return session

    async def refresh(self, session_id: str) -> Tuple[Session, str]:
        session = await self.validate(session_id)
        now = self._now()
        if session.expires_at - now > self.refresh_threshold:
            # Outside the refresh window: rotate the token, keep the session as is
            return session, await self.tokens.issue(session)

        session.expires_at = now + self.session_ttl
        session.touch(now)
        self._update(session)
        logger.info(
            "session_refreshed",
            session_id=session.id,
            expires_at=session.expires_at.isoformat(),
        )
        return session, await self.tokens.issue(session)

    async def refresh_token(self, token: str) -> str:
        """Exchange a valid token for a fresh one bound to the same session.

        The presented token is not revoked and stays usable until it expires.
        """
        session = await self.validate_token(token)
        _, new_token = await self.refresh(session.id)
        return new_token

    async def invalidate(self, session_id: str) -> None:
        removed = self.store.delete_session(session_id)
        logger.info("session_invalidated", session_id=session_id, removed=removed)

    async def invalidate_all_for_user(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("user_sessions_invalidated", user_id=user_id, removed=removed)
        return removed

    async def list_for_user(self, user_id: str) -> List[Session]:
        """Active sessions for ``user_id``; expired ones found along the way are deleted."""
        now = self._now()
        active = []
        for session in self.store.list_sessions_for_user(user_id):
            if session.is_valid(now):
                active.append(session)
            else:
                self.store.delete_session(session.id)
        return active

    async def set_account_context(
        self, session_id: str, account_id: str, role_id: str
    ) -> Session:
        if not account_id or not role_id:
            raise ValidationError("account_id and role_id are both required")
        session = self._load_valid(session_id, self._now())
        session.set_account_context(account_id, role_id)
        self._update(session)
        logger.info(
            "session_account_context_set",
            session_id=session_id,
            account_id=account_id,
            role_id=role_id,
        )
        return session

    async def clear_account_context(self, session_id: str) -> Session:
        session = self._load_valid(session_id, self._now())
        session.clear_account_context()
        self._update(session)
        logger.info("session_account_context_cleared", session_id=session_id)
        return session

    async def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_cleaned_up", removed=removed)
        return removed
