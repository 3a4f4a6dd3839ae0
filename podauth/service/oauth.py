from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from podauth.logging import get_logger
from podauth.service.errors import ExternalAuthError, UnsupportedError
from podauth.storage.models import ExternalProfile, OAuthToken

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid profile email",
        "auth_params": {"access_type": "offline", "prompt": "consent"},
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "user:email",
        "auth_params": {"allow_signup": "true"},
        # GitHub omits expires_in for OAuth app tokens
        "default_token_ttl": timedelta(hours=24),
    },
}


class OAuthProvider(Protocol):
    name: str

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> OAuthToken: ...

    async def fetch_profile(self, token: OAuthToken) -> ExternalProfile: ...


class OAuthClient:
    """Authorization-code client for one entry of ``OAUTH_PROVIDERS``."""

    def __init__(
        self,
        name: str,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if name not in OAUTH_PROVIDERS:
            raise UnsupportedError(f"Unsupported OAuth provider: {name}")
        self.name = name
        self.config = OAUTH_PROVIDERS[name]
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=False
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.config["scope"],
            "state": state,
        }
        params.update(self.config.get("auth_params", {}))
        return f"{self.config['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthToken:
        if not code:
            raise ExternalAuthError("authorization code is required")
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.config["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ExternalAuthError("OAuth code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise ExternalAuthError("OAuth code exchange failed") from exc

        access_token = result.get("access_token") if isinstance(result, dict) else None
        if not access_token:
            logger.error("oauth_no_access_token", provider=self.name)
            raise ExternalAuthError("OAuth provider returned no access token")

        expires_at = None
        if result.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=int(result["expires_in"])
            )
        elif self.config.get("default_token_ttl"):
            expires_at = datetime.now(timezone.utc) + self.config["default_token_ttl"]
        return OAuthToken(
            access_token=access_token,
            token_type=result.get("token_type") or "Bearer",
            refresh_token=result.get("refresh_token"),
            expires_at=expires_at,
            scope=result.get("scope"),
        )

    async def fetch_profile(self, token: OAuthToken) -> ExternalProfile:
        if not token.is_valid():
            raise ExternalAuthError("OAuth access token is missing or expired")
        headers = {"Authorization": f"Bearer {token.access_token}"}
        if self.name == "github":
            headers["Accept"] = "application/vnd.github+json"
        try:
            async with self._client() as client:
                response = await client.get(self.config["userinfo_url"], headers=headers)
                response.raise_for_status()
                userinfo = response.json()
                if not isinstance(userinfo, dict):
                    raise ExternalAuthError("OAuth provider returned malformed profile")
                profile = self._parse_userinfo(userinfo)
                if not profile.email and self.config.get("emails_url"):
                    profile.email = await self._primary_email(client, headers) or ""
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ExternalAuthError("OAuth profile fetch failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_userinfo_error", provider=self.name, error=str(exc))
            raise ExternalAuthError("OAuth profile fetch failed") from exc

        if not profile.id:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise ExternalAuthError("OAuth profile has no user id")
        return profile

    async def _primary_email(
        self, client: httpx.AsyncClient, headers: Dict[str, str]
    ) -> Optional[str]:
        response = await client.get(self.config["emails_url"], headers=headers)
        if response.status_code != 200:
            return None
        emails = response.json()
        if not isinstance(emails, list):
            return None
        return next(
            (
                e.get("email")
                for e in emails
                if isinstance(e, dict) and e.get("primary") and e.get("verified")
            ),
            None,
        )

    def _parse_userinfo(self, userinfo: dict) -> ExternalProfile:
        """Parse user info from the provider into an ``ExternalProfile``."""
        if self.name == "github":
            raw_id = userinfo.get("id")
            return ExternalProfile(
                id=str(raw_id) if raw_id is not None else "",
                provider=self.name,
                email=userinfo.get("email") or "",
                name=userinfo.get("name"),
                username=userinfo.get("login"),
            )
        email = userinfo.get("email") or ""
        return ExternalProfile(
            id=str(userinfo.get("id") or userinfo.get("sub") or ""),
            provider=self.name,
            email=email,
            name=userinfo.get("name"),
            username=email.split("@")[0] if email else None,
        )


def build_oauth_providers(
    settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, OAuthProvider]:
    """Instantiate every provider that has client credentials configured."""
    credentials = {
        "google": (settings.oauth_google_client_id, settings.oauth_google_client_secret),
        "github": (settings.oauth_github_client_id, settings.oauth_github_client_secret),
    }
    providers: Dict[str, OAuthProvider] = {}
    for name, (client_id, client_secret) in credentials.items():
        if not client_id or not client_secret:
            continue
        providers[name] = OAuthClient(
            name,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=f"{settings.app_base_url.rstrip('/')}/auth/oauth/{name}/callback",
            timeout=settings.oauth_timeout_seconds,
            transport=transport,
        )
    return providers
