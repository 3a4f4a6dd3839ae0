from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from podauth.logging import get_logger
from podauth.service.errors import (
    InvalidTokenError,
    RefreshNotNeededError,
    ServerError,
    TokenExpiredError,
    TokenRevokedError,
)
from podauth.storage.models import RevocationEntry, Session, TokenAuditEvent

logger = get_logger(__name__)

SIGNING_ALGORITHM = "RS256"
DEFAULT_AUDIENCE = "solid-pod-server"
_REQUIRED_CLAIMS = ("session_id", "user_id", "webid")


class RevocationStore(Protocol):
    async def add(self, entry: RevocationEntry) -> None: ...

    async def contains(self, token_id: str) -> bool: ...

    async def remove(self, token_id: str) -> None: ...

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int: ...


class AuditSink(Protocol):
    async def record(self, event: TokenAuditEvent) -> None: ...


@dataclass
class TokenClaims:
    """Verified contents of a signed session token."""

    token_id: str
    session_id: str
    user_id: str
    webid: str
    issuer: str
    subject: str
    audience: List[str]
    issued_at: datetime
    expires_at: datetime
    account_id: Optional[str] = None
    role_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        audience = payload.get("aud") or []
        if isinstance(audience, str):
            audience = [audience]
        return cls(
            token_id=payload.get("jti", ""),
            session_id=payload.get("session_id", ""),
            user_id=payload.get("user_id", ""),
            webid=payload.get("webid", ""),
            issuer=payload.get("iss", ""),
            subject=payload.get("sub", ""),
            audience=list(audience),
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload.get("exp", 0), tz=timezone.utc),
            account_id=payload.get("account_id") or None,
            role_id=payload.get("role_id") or None,
        )


class TokenManager:
    """Issues, validates, refreshes and revokes RS256 session tokens.

    Every validation outcome is written to the audit sink (when configured)
    and to the structured log. Revocations are kept in a process-local cache
    in front of the optional revocation store.
    """

    def __init__(
        self,
        private_key_pem: str,
        *,
        issuer: str,
        audience: str = DEFAULT_AUDIENCE,
        key_id: str = "default",
        token_ttl: timedelta = timedelta(hours=1),
        refresh_threshold: timedelta = timedelta(minutes=15),
        revocation_store: Optional[RevocationStore] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        private_key = serialization.load_pem_private_key(
            private_key_pem.encode(), password=None
        )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("token signing requires an RSA private key")
        self._private_key_pem = private_key_pem
        self.public_key_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode()
        )
        self.issuer = issuer
        self.audience = audience
        self.key_id = key_id
        self.token_ttl = token_ttl
        self.refresh_threshold = refresh_threshold
        self.revocation_store = revocation_store
        self.audit_sink = audit_sink
        self._revoked: Dict[str, datetime] = {}
        self._revoked_lock = threading.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def public_jwk(self) -> Dict[str, Any]:
        """Verification key in JWK form, tagged with this manager's key id."""
        key = jwk.construct(self.public_key_pem, SIGNING_ALGORITHM).to_dict()
        key.update({"kid": self.key_id, "use": "sig"})
        return key

    async def _audit(
        self,
        event_type: str,
        *,
        success: bool,
        token_id: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        event = TokenAuditEvent(
            event_type=event_type,
            success=success,
            token_id=token_id,
            user_id=user_id,
            session_id=session_id,
            reason=reason,
            timestamp=self._now(),
        )
        log = logger.info if success else logger.warning
        log(
            "token_audit",
            event_type=event_type,
            token_id=token_id,
            user_id=user_id,
            session_id=session_id,
            reason=reason,
            success=success,
        )
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record(event)
        except Exception as exc:
            logger.error("token_audit_sink_failed", event_type=event_type, error=str(exc))

    def _sign(self, claims: Dict[str, Any]) -> str:
        return jwt.encode(
            claims,
            self._private_key_pem,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.key_id},
        )

    def _claims_for(
        self,
        *,
        session_id: str,
        user_id: str,
        webid: str,
        account_id: Optional[str],
        role_id: Optional[str],
    ) -> Dict[str, Any]:
        now = self._now()
        claims: Dict[str, Any] = {
            "session_id": session_id,
            "user_id": user_id,
            "webid": webid,
            "iss": self.issuer,
            "sub": user_id,
            "aud": [self.audience],
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int((now + self.token_ttl).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        if account_id:
            claims["account_id"] = account_id
        if role_id:
            claims["role_id"] = role_id
        return claims

    async def issue(self, session: Session) -> str:
        claims = self._claims_for(
            session_id=session.id,
            user_id=session.user_id,
            webid=session.webid,
            account_id=session.account_id,
            role_id=session.role_id,
        )
        token = self._sign(claims)
        await self._audit(
            "token_issued",
            success=True,
            token_id=claims["jti"],
            user_id=session.user_id,
            session_id=session.id,
        )
        return token

    def _decode(self, token: str, *, verify_exp: bool = True) -> Dict[str, Any]:
        """Verify signature, algorithm, issuer and audience; return raw claims."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError("malformed token") from exc
        if header.get("alg") != SIGNING_ALGORITHM:
            raise InvalidTokenError(
                "unexpected signing algorithm", detail={"alg": header.get("alg")}
            )
        try:
            return jwt.decode(
                token,
                self.public_key_pem,
                algorithms=[SIGNING_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": verify_exp, "leeway": 0},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError("token has expired") from exc
        except JWTClaimsError as exc:
            raise InvalidTokenError(f"invalid token claims: {exc}") from exc
        except JWTError as exc:
            raise InvalidTokenError("token signature verification failed") from exc

    async def validate(self, token: str) -> TokenClaims:
        try:
            payload = self._decode(token)
        except TokenExpiredError as exc:
            await self._audit("token_expired", success=False, reason=exc.message)
            raise
        except InvalidTokenError as exc:
            await self._audit("token_validation_failed", success=False, reason=exc.message)
            raise

        claims = TokenClaims.from_payload(payload)
        missing = [name for name in _REQUIRED_CLAIMS if not payload.get(name)]
        if missing or not claims.token_id:
            await self._audit(
                "missing_required_claims",
                success=False,
                token_id=claims.token_id or None,
                user_id=claims.user_id or None,
                reason=f"missing claims: {', '.join(missing or ['jti'])}",
            )
            raise InvalidTokenError("token is missing required claims")

        if await self._check_revoked(claims.token_id):
            await self._audit(
                "revoked_token_used",
                success=False,
                token_id=claims.token_id,
                user_id=claims.user_id,
                session_id=claims.session_id,
                reason="token is revoked",
            )
            raise TokenRevokedError("token has been revoked")

        await self._audit(
            "token_validated",
            success=True,
            token_id=claims.token_id,
            user_id=claims.user_id,
            session_id=claims.session_id,
        )
        return claims

    async def _check_revoked(self, token_id: str) -> bool:
        with self._revoked_lock:
            expires_at = self._revoked.get(token_id)
            if expires_at is not None:
                if self._now() < expires_at:
                    return True
                self._revoked.pop(token_id, None)
        if self.revocation_store is None:
            return False
        try:
            return await self.revocation_store.contains(token_id)
        except Exception as exc:
            # Store outages fall back to the local cache only
            logger.error("revocation_lookup_failed", token_id=token_id, error=str(exc))
            return False

    async def is_revoked(self, token: str) -> bool:
        """Whether ``token`` carries a revoked token id; signature is still checked."""
        payload = self._decode(token, verify_exp=False)
        return await self._check_revoked(payload.get("jti", ""))

    async def refresh(self, token: str) -> str:
        claims = await self.validate(token)
        remaining = claims.expires_at - self._now()
        if remaining > self.refresh_threshold:
            raise RefreshNotNeededError(
                "token does not need refresh yet",
                detail={"remaining_seconds": int(remaining.total_seconds())},
            )
        new_claims = self._claims_for(
            session_id=claims.session_id,
            user_id=claims.user_id,
            webid=claims.webid,
            account_id=claims.account_id,
            role_id=claims.role_id,
        )
        new_token = self._sign(new_claims)
        await self._audit(
            "token_refreshed",
            success=True,
            token_id=new_claims["jti"],
            user_id=claims.user_id,
            session_id=claims.session_id,
            reason=f"replaces {claims.token_id}",
        )
        return new_token

    async def revoke(self, token: str, reason: str) -> None:
        payload = self._decode(token, verify_exp=False)
        token_id = payload.get("jti")
        if not token_id:
            raise InvalidTokenError("token has no identifier to revoke")
        entry = RevocationEntry(
            token_id=token_id,
            user_id=payload.get("user_id", ""),
            reason=reason,
            revoked_at=self._now(),
            expires_at=datetime.fromtimestamp(payload.get("exp", 0), tz=timezone.utc),
        )
        with self._revoked_lock:
            self._revoked[token_id] = entry.expires_at
        if self.revocation_store is not None:
            try:
                await self.revocation_store.add(entry)
            except Exception as exc:
                logger.error("revocation_persist_failed", token_id=token_id, error=str(exc))
        await self._audit(
            "token_revoked",
            success=True,
            token_id=token_id,
            user_id=entry.user_id or None,
            session_id=payload.get("session_id"),
            reason=reason,
        )

    async def revoke_all_for_user(self, user_id: str, reason: str) -> None:
        """Record bulk revocation intent.

        Issued token ids are not indexed per user, so outstanding tokens die
        with their sessions; callers pair this with
        ``SessionManager.invalidate_all_for_user``.
        """
        await self._audit(
            "all_user_tokens_revoked", success=True, user_id=user_id, reason=reason
        )

    async def cleanup_expired_revocations(self) -> int:
        now = self._now()
        with self._revoked_lock:
            stale = [tid for tid, expires_at in self._revoked.items() if expires_at <= now]
            for tid in stale:
                self._revoked.pop(tid, None)
        removed = len(stale)
        if self.revocation_store is not None:
            try:
                removed = await self.revocation_store.cleanup_expired(now)
            except Exception as exc:
                logger.error("revocation_cleanup_failed", error=str(exc))
                raise ServerError("failed to clean up expired revocations") from exc
        if removed:
            logger.info("revocations_cleaned_up", removed=removed)
        return removed
