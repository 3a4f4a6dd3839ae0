from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    webid: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Session:
    """One authenticated login, independent of the token presented for it."""

    id: str
    user_id: str
    webid: str
    token_hash: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    account_id: Optional[str] = None
    role_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if not (self.id and self.user_id and self.webid and self.token_hash):
            return False
        return not self.is_expired(now)

    @property
    def has_account_context(self) -> bool:
        return bool(self.account_id and self.role_id)

    def set_account_context(self, account_id: str, role_id: str) -> None:
        if not account_id or not role_id:
            raise ValueError("account_id and role_id are both required")
        self.account_id = account_id
        self.role_id = role_id

    def clear_account_context(self) -> None:
        self.account_id = None
        self.role_id = None

    def touch(self, at: Optional[datetime] = None) -> None:
        self.last_activity = at or utcnow()


@dataclass
class PasswordCredential:
    user_id: str
    password_hash: str
    salt: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def update_password(self, password_hash: str, salt: str) -> None:
        self.password_hash = password_hash
        self.salt = salt
        self.updated_at = utcnow()


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if not (self.token and self.user_id and self.email):
            return False
        return not self.used and not self.is_expired(now)


@dataclass
class ExternalIdentity:
    """Link between a local user and an account at an external provider."""

    user_id: str
    provider: str
    external_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ExternalProfile:
    id: str
    provider: str
    email: str
    name: Optional[str] = None
    username: Optional[str] = None

    def is_valid(self) -> bool:
        return bool(self.id and self.provider and self.email)


@dataclass
class OAuthToken:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return (now or utcnow()) < self.expires_at


@dataclass
class RevocationEntry:
    token_id: str
    user_id: str
    reason: str
    expires_at: datetime
    revoked_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class TokenAuditEvent:
    event_type: str
    success: bool
    token_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
