from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from podauth.logging import get_logger
from podauth.service.errors import TrustVerificationError

logger = get_logger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"
WEBID_DOCUMENT_ACCEPT = "text/turtle, application/rdf+xml, application/ld+json, */*"
ACCEPTED_ALGORITHMS = ["RS256", "RS384", "RS512"]
_REQUIRED_CONFIG_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


@dataclass
class OIDCConfiguration:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: Optional[str] = None
    scopes_supported: List[str] = field(default_factory=list)
    response_types_supported: List[str] = field(default_factory=list)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "OIDCConfiguration":
        missing = [name for name in _REQUIRED_CONFIG_FIELDS if not document.get(name)]
        if missing:
            raise TrustVerificationError(
                "OIDC configuration is incomplete", detail={"missing": missing}
            )
        return cls(
            issuer=document["issuer"],
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=document["jwks_uri"],
            userinfo_endpoint=document.get("userinfo_endpoint"),
            scopes_supported=list(document.get("scopes_supported") or []),
            response_types_supported=list(document.get("response_types_supported") or []),
        )


@dataclass
class WebIDClaims:
    subject: str
    webid: str
    issuer: str
    audience: List[str]
    expires_at: datetime
    issued_at: Optional[datetime] = None


def issuer_origin(webid: str) -> str:
    """``scheme://authority`` of a WebID URL."""
    parsed = urlparse(webid)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise TrustVerificationError("webid is not an http(s) URL")
    return f"{parsed.scheme}://{parsed.netloc}"


class WebIDOIDCVerifier:
    """Verifies WebID-OIDC ID tokens against the WebID's own identity provider.

    Trust is established in order: the WebID named by the token is used to
    discover its OIDC configuration, the WebID document must mention itself,
    the signing key is taken from the discovered key set, and only then is
    the token signature checked. Any failed step raises
    ``TrustVerificationError``; there is no partial result.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        cache_ttl: timedelta = timedelta(hours=1),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._transport = transport
        self._cache: Dict[str, Tuple[OIDCConfiguration, datetime]] = {}
        self._cache_lock = threading.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=True
        )

    async def _get(
        self, client: httpx.AsyncClient, url: str, *, accept: str, step: str
    ) -> httpx.Response:
        try:
            response = await client.get(url, headers={"Accept": accept})
        except httpx.TimeoutException as exc:
            logger.warning("webid_oidc_timeout", step=step, url=url)
            raise TrustVerificationError(f"{step} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("webid_oidc_http_error", step=step, url=url, error=str(exc))
            raise TrustVerificationError(f"{step} request failed") from exc
        if response.status_code != 200:
            logger.warning(
                "webid_oidc_bad_status", step=step, url=url, status=response.status_code
            )
            raise TrustVerificationError(
                f"{step} returned status {response.status_code}"
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, step: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TrustVerificationError(f"{step} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise TrustVerificationError(f"{step} returned unexpected JSON")
        return payload

    def cached_configuration(self, webid: str) -> Optional[OIDCConfiguration]:
        with self._cache_lock:
            cached = self._cache.get(webid)
            if cached is None:
                return None
            config, expires_at = cached
            if self._now() >= expires_at:
                self._cache.pop(webid, None)
                return None
            return config

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    async def discover(
        self, webid: str, client: Optional[httpx.AsyncClient] = None
    ) -> OIDCConfiguration:
        cached = self.cached_configuration(webid)
        if cached is not None:
            return cached
        if client is None:
            async with self._client() as own_client:
                return await self.discover(webid, own_client)

        url = issuer_origin(webid) + DISCOVERY_PATH
        response = await self._get(client, url, accept="application/json", step="discovery")
        config = OIDCConfiguration.from_document(self._json(response, "discovery"))
        with self._cache_lock:
            self._cache[webid] = (config, self._now() + self.cache_ttl)
        logger.info("webid_oidc_discovered", webid=webid, issuer=config.issuer)
        return config

    async def validate_webid_document(
        self, webid: str, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        if client is None:
            async with self._client() as own_client:
                return await self.validate_webid_document(webid, own_client)
        response = await self._get(
            client, webid, accept=WEBID_DOCUMENT_ACCEPT, step="webid document"
        )
        if webid not in response.text:
            raise TrustVerificationError("webid document does not reference the webid")

    async def fetch_signing_key(
        self,
        config: OIDCConfiguration,
        key_id: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> Dict[str, Any]:
        if client is None:
            async with self._client() as own_client:
                return await self.fetch_signing_key(config, key_id, own_client)
        response = await self._get(
            client, config.jwks_uri, accept="application/json", step="key set"
        )
        keys = self._json(response, "key set").get("keys") or []
        for key in keys:
            if isinstance(key, dict) and key.get("kid") == key_id:
                if key.get("kty") != "RSA":
                    raise TrustVerificationError("signing key is not an RSA key")
                return key
        raise TrustVerificationError("no signing key matches the token key id")

    async def verify(self, id_token: str) -> WebIDClaims:
        try:
            unverified = jwt.get_unverified_claims(id_token)
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise TrustVerificationError("malformed id token") from exc

        webid = unverified.get("webid")
        if not webid or not isinstance(webid, str):
            raise TrustVerificationError("id token has no webid claim")
        key_id = header.get("kid")
        if not key_id:
            raise TrustVerificationError("id token header has no key id")

        async with self._client() as client:
            config = await self.discover(webid, client)
            await self.validate_webid_document(webid, client)
            key = await self.fetch_signing_key(config, key_id, client)

        try:
            payload = jwt.decode(
                id_token,
                key,
                algorithms=ACCEPTED_ALGORITHMS,
                options={"verify_aud": False, "leeway": 0},
            )
        except ExpiredSignatureError as exc:
            raise TrustVerificationError("id token has expired") from exc
        except JWTError as exc:
            logger.warning("webid_oidc_signature_rejected", webid=webid, error=str(exc))
            raise TrustVerificationError("id token signature verification failed") from exc

        claims = self._map_claims(payload)
        logger.info("webid_oidc_verified", webid=claims.webid, issuer=claims.issuer)
        return claims

    def _map_claims(self, payload: Dict[str, Any]) -> WebIDClaims:
        subject = payload.get("sub") or ""
        webid = payload.get("webid") or ""
        issuer = payload.get("iss") or ""
        if not subject or not webid or not issuer:
            raise TrustVerificationError("id token is missing subject, webid or issuer")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise TrustVerificationError("id token has no expiry")
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if self._now() >= expires_at:
            raise TrustVerificationError("id token has expired")
        audience = payload.get("aud") or []
        if isinstance(audience, str):
            audience = [audience]
        iat = payload.get("iat")
        return WebIDClaims(
            subject=subject,
            webid=webid,
            issuer=issuer,
            audience=list(audience),
            expires_at=expires_at,
            issued_at=(
                datetime.fromtimestamp(iat, tz=timezone.utc)
                if isinstance(iat, (int, float))
                else None
            ),
        )
