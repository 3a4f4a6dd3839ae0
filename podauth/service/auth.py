from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Protocol, Tuple, Union

from podauth.logging import get_logger
from podauth.service.credentials import CredentialService
from podauth.service.errors import (
    ExternalIdentityNotFoundError,
    InvalidCredentialsError,
    ServiceError,
    TrustVerificationError,
    UnsupportedError,
    UserNotFoundError,
)
from podauth.service.identity import IdentityStore, UserDirectory
from podauth.service.oauth import OAuthProvider
from podauth.service.sessions import SessionManager
from podauth.service.tokens import TokenManager
from podauth.service.webid_oidc import WebIDOIDCVerifier
from podauth.storage.models import Session

logger = get_logger(__name__)


class AuthMethod(str, Enum):
    WEBID_OIDC = "webid-oidc"
    PASSWORD = "password"
    OAUTH = "oauth"


@dataclass(frozen=True)
class PasswordLogin:
    email: str
    password: str

    def __repr__(self) -> str:
        return f"PasswordLogin(email={self.email!r}, password='***')"


@dataclass(frozen=True)
class WebIDLogin:
    webid: str
    id_token: str


@dataclass(frozen=True)
class OAuthLogin:
    provider: str
    code: str


Credentials = Union[PasswordLogin, WebIDLogin, OAuthLogin]


@dataclass
class Principal:
    """Who an authenticator proved the caller to be."""

    user_id: str
    webid: str
    method: AuthMethod


@dataclass
class AuthResult:
    session: Session
    token: str
    method: AuthMethod


class Authenticator(Protocol):
    method: AuthMethod

    async def authenticate(self, credentials) -> Principal: ...


def _with_context(exc: ServiceError, context: str) -> ServiceError:
    """Same error kind as ``exc`` with ``context`` prefixed to the message."""
    wrapped = type(exc)(
        f"{context}: {exc.message}",
        status_code=exc.status_code,
        error_code=exc.error_code,
        detail=exc.detail,
    )
    wrapped.__cause__ = exc
    return wrapped


class PasswordAuthenticator:
    """Email + password. Every failure is the same ``InvalidCredentialsError``."""

    method = AuthMethod.PASSWORD

    def __init__(self, users: UserDirectory, credentials: CredentialService) -> None:
        self.users = users
        self.credentials = credentials

    async def authenticate(self, credentials: PasswordLogin) -> Principal:
        user = self.users.get_user_by_email(credentials.email) if credentials.email else None
        if user is None or not self.credentials.verify_password(user.id, credentials.password):
            raise InvalidCredentialsError("invalid credentials")
        return Principal(user_id=user.id, webid=user.webid or "", method=self.method)


class WebIDAuthenticator:
    method = AuthMethod.WEBID_OIDC

    def __init__(self, users: UserDirectory, verifier: WebIDOIDCVerifier) -> None:
        self.users = users
        self.verifier = verifier

    async def authenticate(self, credentials: WebIDLogin) -> Principal:
        try:
            claims = await self.verifier.verify(credentials.id_token)
        except TrustVerificationError as exc:
            raise _with_context(exc, "WebID-OIDC validation failed") from exc
        if claims.webid != credentials.webid:
            raise TrustVerificationError("WebID does not match the verified token")
        user = self.users.get_user_by_webid(credentials.webid)
        if user is None:
            raise InvalidCredentialsError("invalid credentials")
        return Principal(user_id=user.id, webid=credentials.webid, method=self.method)


class OAuthAuthenticator:
    """Authenticates existing provider links; never creates accounts."""

    method = AuthMethod.OAUTH

    def __init__(
        self,
        users: UserDirectory,
        identities: IdentityStore,
        providers: Mapping[str, OAuthProvider],
    ) -> None:
        self.users = users
        self.identities = identities
        self.providers = dict(providers)

    def provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise UnsupportedError(
                f"Unsupported OAuth provider: {name}", detail={"provider": name}
            )
        return provider

    async def authenticate(self, credentials: OAuthLogin) -> Principal:
        provider = self.provider(credentials.provider)
        token = await provider.exchange_code(credentials.code)
        profile = await provider.fetch_profile(token)
        identity = self.identities.find_identity(credentials.provider, profile.id)
        if identity is None:
            raise ExternalIdentityNotFoundError(
                "external identity is not linked to any user",
                detail={"provider": credentials.provider},
            )
        user = self.users.get_user(identity.user_id)
        if user is None:
            raise UserNotFoundError("user not found")
        return Principal(user_id=user.id, webid=user.webid or "", method=self.method)


class AuthService:
    """Single entry point turning any supported credential into a session."""

    def __init__(
        self,
        sessions: SessionManager,
        tokens: TokenManager,
        *,
        password: PasswordAuthenticator,
        webid: WebIDAuthenticator,
        oauth: OAuthAuthenticator,
    ) -> None:
        self.sessions = sessions
        self.tokens = tokens
        self.oauth = oauth
        self._authenticators: Dict[type, Authenticator] = {
            PasswordLogin: password,
            WebIDLogin: webid,
            OAuthLogin: oauth,
        }

    async def authenticate(self, credentials: Credentials) -> AuthResult:
        authenticator = self._authenticators.get(type(credentials))
        if authenticator is None:
            raise UnsupportedError(
                "unsupported authentication method",
                detail={"credentials": type(credentials).__name__},
            )
        method = authenticator.method
        try:
            principal = await authenticator.authenticate(credentials)
            session, token = await self.sessions.create(principal.user_id, principal.webid)
        except InvalidCredentialsError:
            logger.warning("auth_failed", method=method.value, error_code="invalid_credentials")
            raise
        except ServiceError as exc:
            logger.warning("auth_failed", method=method.value, error_code=exc.error_code)
            raise _with_context(exc, f"{method.value} authentication failed") from exc

        logger.info(
            "auth_succeeded",
            method=method.value,
            user_id=principal.user_id,
            session_id=session.id,
        )
        return AuthResult(session=session, token=token, method=method)

    async def login_with_password(self, email: str, password: str) -> AuthResult:
        return await self.authenticate(PasswordLogin(email=email, password=password))

    async def login_with_webid(self, webid: str, id_token: str) -> AuthResult:
        return await self.authenticate(WebIDLogin(webid=webid, id_token=id_token))

    async def login_with_oauth(self, provider: str, code: str) -> AuthResult:
        return await self.authenticate(OAuthLogin(provider=provider, code=code))

    def oauth_authorization_url(
        self, provider: str, state: Optional[str] = None
    ) -> Tuple[str, str]:
        """Return ``(url, state)``; a random state is generated when omitted."""
        state = state or uuid.uuid4().hex
        return self.oauth.provider(provider).authorization_url(state), state

    async def validate_session(self, session_id: str) -> Session:
        return await self.sessions.validate(session_id)

    async def validate_token(self, token: str) -> Session:
        return await self.sessions.validate_token(token)

    async def refresh_session(self, session_id: str) -> Tuple[Session, str]:
        return await self.sessions.refresh(session_id)

    async def user_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_for_user(user_id)

    async def logout(self, session_id: str, token: Optional[str] = None) -> None:
        """End one session. A presented token is revoked as well."""
        await self.sessions.invalidate(session_id)
        if token:
            await self.tokens.revoke(token, "logout")

    async def logout_everywhere(self, user_id: str, reason: str = "logout_all") -> int:
        await self.tokens.revoke_all_for_user(user_id, reason)
        return await self.sessions.invalidate_all_for_user(user_id)

    async def cleanup_expired_sessions(self) -> int:
        return await self.sessions.cleanup_expired()
