"""WebID-OIDC trust verification against a mocked identity provider."""

import time
from datetime import timedelta

import httpx
import pytest
from jose import jwt

from podauth.service.errors import TrustVerificationError
from podauth.service.tokens import TokenManager
from podauth.service.webid_oidc import (
    DISCOVERY_PATH,
    OIDCConfiguration,
    WebIDOIDCVerifier,
    issuer_origin,
)

WEBID = "https://alice.example/profile/card#me"
ISSUER = "https://alice.example"
KEY_ID = "idp-key"


class FakeIdentityProvider:
    """Serves discovery, the WebID profile and the key set for alice.example."""

    def __init__(self, signing_key: str, *, key_id: str = KEY_ID):
        self.signing_key = signing_key
        self.jwk = TokenManager(signing_key, issuer=ISSUER, key_id=key_id).public_jwk()
        self.requests = []
        self.config = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
        }
        self.profile = f"<{WEBID}> a <http://xmlns.com/foaf/0.1/Person> ."
        self.overrides = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if request.url.path in self.overrides:
            return self.overrides[request.url.path](request)
        if request.url.path == DISCOVERY_PATH:
            return httpx.Response(200, json=self.config)
        if request.url.path == "/profile/card":
            return httpx.Response(200, text=self.profile)
        if request.url.path == "/jwks":
            return httpx.Response(200, json={"keys": [self.jwk]})
        return httpx.Response(404)

    def verifier(self, **kwargs) -> WebIDOIDCVerifier:
        return WebIDOIDCVerifier(transport=httpx.MockTransport(self.handler), **kwargs)

    def id_token(
        self, *, key: str = None, kid: str = KEY_ID, algorithm: str = "RS256", **overrides
    ) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "sub": "alice",
            "aud": "pod-server-client",
            "webid": WEBID,
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        headers = {"kid": kid} if kid else {}
        return jwt.encode(claims, key or self.signing_key, algorithm=algorithm, headers=headers)


@pytest.fixture
def idp(signing_key):
    return FakeIdentityProvider(signing_key)


class TestVerify:
    async def test_valid_token_yields_claims(self, idp):
        claims = await idp.verifier().verify(idp.id_token())

        assert claims.webid == WEBID
        assert claims.subject == "alice"
        assert claims.issuer == ISSUER
        assert claims.audience == ["pod-server-client"]
        assert claims.issued_at is not None
        assert idp.requests == [DISCOVERY_PATH, "/profile/card", "/jwks"]

    async def test_discovery_is_cached(self, idp):
        verifier = idp.verifier()
        await verifier.verify(idp.id_token())
        await verifier.verify(idp.id_token())

        assert idp.requests.count(DISCOVERY_PATH) == 1
        assert verifier.cached_configuration(WEBID).issuer == ISSUER

    async def test_expired_cache_entry_is_refetched(self, idp):
        verifier = idp.verifier(cache_ttl=timedelta(seconds=-1))
        await verifier.verify(idp.id_token())
        await verifier.verify(idp.id_token())

        assert idp.requests.count(DISCOVERY_PATH) == 2

    async def test_discovery_failure(self, idp):
        idp.overrides[DISCOVERY_PATH] = lambda request: httpx.Response(404)

        with pytest.raises(TrustVerificationError) as exc_info:
            await idp.verifier().verify(idp.id_token())

        assert "discovery" in exc_info.value.message
        assert exc_info.value.error_code == "trust_verification_failed"

    async def test_incomplete_discovery_document(self, idp):
        del idp.config["jwks_uri"]

        with pytest.raises(TrustVerificationError) as exc_info:
            await idp.verifier().verify(idp.id_token())

        assert exc_info.value.detail == {"missing": ["jwks_uri"]}

    async def test_discovery_timeout(self, idp):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        idp.overrides[DISCOVERY_PATH] = timeout

        with pytest.raises(TrustVerificationError) as exc_info:
            await idp.verifier().verify(idp.id_token())

        assert "timed out" in exc_info.value.message

    async def test_webid_document_must_mention_webid(self, idp):
        idp.profile = "<https://mallory.example/card#me> a <http://xmlns.com/foaf/0.1/Person> ."

        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token())

        assert "/jwks" not in idp.requests

    @pytest.mark.parametrize("algorithm", ["RS384", "RS512"])
    async def test_other_rsa_algorithms(self, idp, algorithm):
        idp.jwk["alg"] = algorithm

        claims = await idp.verifier().verify(idp.id_token(algorithm=algorithm))

        assert claims.webid == WEBID

    async def test_hmac_token_rejected(self, idp):
        forged = jwt.encode(
            {"iss": ISSUER, "sub": "alice", "webid": WEBID, "exp": int(time.time()) + 600},
            "shared-secret",
            algorithm="HS256",
            headers={"kid": KEY_ID},
        )

        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(forged)

    async def test_unknown_key_id(self, idp):
        with pytest.raises(TrustVerificationError) as exc_info:
            await idp.verifier().verify(idp.id_token(kid="rotated-away"))

        assert "key id" in exc_info.value.message

    async def test_non_rsa_key_rejected(self, idp):
        idp.jwk = {"kty": "EC", "kid": KEY_ID, "crv": "P-256", "x": "a", "y": "b"}

        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token())

    async def test_signature_from_other_key(self, idp, other_signing_key):
        with pytest.raises(TrustVerificationError) as exc_info:
            await idp.verifier().verify(idp.id_token(key=other_signing_key))

        assert "signature" in exc_info.value.message

    async def test_expired_id_token(self, idp):
        now = int(time.time())

        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token(iat=now - 1200, exp=now - 600))

    async def test_missing_webid_claim_fails_before_network(self, idp):
        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token(webid=None))

        assert idp.requests == []

    async def test_missing_key_id_header(self, idp):
        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token(kid=None))

        assert idp.requests == []

    async def test_missing_subject(self, idp):
        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify(idp.id_token(sub=None))

    async def test_malformed_token(self, idp):
        with pytest.raises(TrustVerificationError):
            await idp.verifier().verify("garbage")


class TestHelpers:
    def test_issuer_origin_strips_path_and_fragment(self):
        assert issuer_origin(WEBID) == "https://alice.example"
        assert issuer_origin("http://localhost:3000/alice#me") == "http://localhost:3000"

    @pytest.mark.parametrize("webid", ["alice", "ftp://alice.example/card", "https://"])
    def test_issuer_origin_rejects_non_http(self, webid):
        with pytest.raises(TrustVerificationError):
            issuer_origin(webid)

    def test_configuration_from_document(self):
        config = OIDCConfiguration.from_document(
            {
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/authorize",
                "token_endpoint": f"{ISSUER}/token",
                "jwks_uri": f"{ISSUER}/jwks",
                "scopes_supported": ["openid", "webid"],
            }
        )

        assert config.userinfo_endpoint is None
        assert config.scopes_supported == ["openid", "webid"]

    async def test_clear_cache(self, idp):
        verifier = idp.verifier()
        await verifier.discover(WEBID)
        verifier.clear_cache()

        assert verifier.cached_configuration(WEBID) is None
