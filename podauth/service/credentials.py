from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from podauth.logging import get_logger
from podauth.service.email import MessageSender
from podauth.service.errors import (
    CredentialNotFoundError,
    InvalidCredentialsError,
    ResetTokenExpiredError,
    ResetTokenNotFoundError,
    ResetTokenUsedError,
    ServerError,
    UserNotFoundError,
    ValidationError,
)
from podauth.service.passwords import PasswordHasher, PasswordPolicy, SecureTokenGenerator
from podauth.storage.models import PasswordCredential, PasswordResetToken, User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def save_credential(self, credential: PasswordCredential) -> None: ...

    def update_credential(self, credential: PasswordCredential) -> None: ...

    def get_credential(self, user_id: str) -> Optional[PasswordCredential]: ...

    def delete_credential(self, user_id: str) -> bool: ...

    def has_credential(self, user_id: str) -> bool: ...


class ResetTokenStore(Protocol):
    def save_reset_token(self, token: PasswordResetToken) -> None: ...

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def list_reset_tokens_for_user(self, user_id: str) -> List[PasswordResetToken]: ...

    def mark_reset_token_used(self, token: str) -> bool: ...

    def delete_reset_token(self, token: str) -> bool: ...

    def delete_user_reset_tokens(self, user_id: str) -> int: ...

    def delete_expired_reset_tokens(self, now: Optional[datetime] = None) -> int: ...


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class CredentialService:
    """Local password management: set, change, verify and reset by email."""

    def __init__(
        self,
        credentials: CredentialStore,
        reset_tokens: ResetTokenStore,
        users: UserLookup,
        *,
        hasher: Optional[PasswordHasher] = None,
        policy: Optional[PasswordPolicy] = None,
        token_generator: Optional[SecureTokenGenerator] = None,
        sender: Optional[MessageSender] = None,
        reset_ttl: timedelta = timedelta(hours=1),
        base_url: str = "http://localhost:8000",
        support_url: Optional[str] = None,
    ) -> None:
        self.credentials = credentials
        self.reset_tokens = reset_tokens
        self.users = users
        self.hasher = hasher or PasswordHasher()
        self.policy = policy or PasswordPolicy()
        self.token_generator = token_generator or SecureTokenGenerator()
        self.sender = sender
        self.reset_ttl = reset_ttl
        self.base_url = base_url.rstrip("/")
        self.support_url = support_url or f"{self.base_url}/support"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def validate_password(self, password: str) -> None:
        self.policy.validate(password)

    def set_password(self, user_id: str, password: str) -> None:
        if not user_id:
            raise ValidationError("user_id is required")
        self.policy.validate(password)
        password_hash, salt = self.hasher.hash(password)
        self._store_hash(user_id, password_hash, salt)
        logger.info("password_set", user_id=user_id)

    def _store_hash(self, user_id: str, password_hash: str, salt: str) -> None:
        existing = self.credentials.get_credential(user_id)
        if existing is not None:
            existing.update_password(password_hash, salt)
            self.credentials.update_credential(existing)
        else:
            self.credentials.save_credential(
                PasswordCredential(user_id=user_id, password_hash=password_hash, salt=salt)
            )

    def verify_password(self, user_id: str, password: str) -> bool:
        credential = self.credentials.get_credential(user_id)
        if credential is None:
            return False
        if not self.hasher.verify(password, credential.password_hash, credential.salt):
            return False
        if self.hasher.needs_rehash(credential.password_hash):
            password_hash, salt = self.hasher.hash(password)
            self._store_hash(user_id, password_hash, salt)
            logger.info("password_rehashed", user_id=user_id)
        return True

    def has_password(self, user_id: str) -> bool:
        return self.credentials.has_credential(user_id)

    def remove_password(self, user_id: str) -> None:
        if not self.credentials.delete_credential(user_id):
            raise CredentialNotFoundError("no password set for user")
        self.reset_tokens.delete_user_reset_tokens(user_id)
        logger.info("password_removed", user_id=user_id)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        if not self.verify_password(user_id, current_password):
            logger.warning("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError("invalid credentials")
        self.set_password(user_id, new_password)

    def initiate_password_reset(self, email: str) -> None:
        """Send a reset link to ``email`` if it belongs to a user.

        Unknown addresses return silently so callers cannot enumerate accounts.
        """
        user = self.users.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return

        now = self._now()
        reset = PasswordResetToken(
            token=self.token_generator.generate(),
            user_id=user.id,
            email=email,
            expires_at=now + self.reset_ttl,
            created_at=now,
        )
        self.reset_tokens.save_reset_token(reset)
        logger.info("password_reset_initiated", user_id=user.id)

        if self.sender is None:
            return
        data = {
            "user_name": user.name or email.split("@")[0],
            "reset_url": f"{self.base_url}/auth/reset-password?token={reset.token}",
            "expiry_time": reset.expires_at.strftime("%Y-%m-%d %H:%M UTC"),
            "support_url": self.support_url,
        }
        if not self.sender.send_templated("password_reset", data, email):
            raise ServerError("failed to send password reset email")

    def complete_password_reset(self, token: str, new_password: str) -> None:
        reset = self.reset_tokens.get_reset_token(token) if token else None
        if reset is None:
            raise ResetTokenNotFoundError("password reset token is invalid")
        if not reset.is_valid(self._now()):
            if reset.used:
                raise ResetTokenUsedError("password reset token has already been used")
            if reset.is_expired(self._now()):
                raise ResetTokenExpiredError("password reset token has expired")
            raise ResetTokenNotFoundError("password reset token is invalid")
        if self.users.get_user(reset.user_id) is None:
            raise UserNotFoundError("user not found")

        self.set_password(reset.user_id, new_password)
        self.reset_tokens.mark_reset_token_used(token)
        logger.info("password_reset_completed", user_id=reset.user_id)

    def cleanup_expired_reset_tokens(self) -> int:
        removed = self.reset_tokens.delete_expired_reset_tokens(self._now())
        if removed:
            logger.info("expired_reset_tokens_cleaned_up", removed=removed)
        return removed
