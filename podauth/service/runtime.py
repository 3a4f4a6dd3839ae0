from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from podauth.config import get_settings, reset_settings_cache
from podauth.logging import get_logger
from podauth.service.auth import (
    AuthService,
    OAuthAuthenticator,
    PasswordAuthenticator,
    WebIDAuthenticator,
)
from podauth.service.cleanup_worker import CleanupWorker
from podauth.service.credentials import CredentialService
from podauth.service.email import EmailService
from podauth.service.identity import (
    IdentityLinkingService,
    RegistrationService,
    pod_webid_generator,
)
from podauth.service.oauth import build_oauth_providers
from podauth.service.passwords import PasswordHasher, PasswordPolicy, SecureTokenGenerator
from podauth.service.sessions import SessionManager
from podauth.service.tokens import TokenManager
from podauth.service.webid_oidc import WebIDOIDCVerifier
from podauth.storage.memory import MemoryAuditLog, MemoryRevocationStore, MemoryStore
from podauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton service graph built from ``Settings``."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            persist_store_state=settings.persist_store_state,
            test_mode=settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=settings.shared_fs_root if settings.persist_store_state else None
        )

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.revocations: Union[RedisCache, MemoryRevocationStore]
        self.audit: Union[RedisCache, MemoryAuditLog]
        if self.cache is not None:
            self.revocations = self.cache
            self.audit = self.cache
        else:
            if settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_unavailable",
                    message="Token revocations and audit events are in-memory only.",
                )
            self.revocations = MemoryRevocationStore()
            self.audit = MemoryAuditLog()

        self.tokens = TokenManager(
            settings.signing_key_pem(),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            key_id=settings.jwt_key_id,
            token_ttl=settings.token_ttl,
            refresh_threshold=settings.token_refresh_threshold,
            revocation_store=self.revocations,
            audit_sink=self.audit,
        )
        self.sessions = SessionManager(
            self.store,
            self.tokens,
            session_ttl=settings.session_ttl,
            refresh_threshold=settings.session_refresh_threshold,
        )
        self.verifier = WebIDOIDCVerifier(
            timeout=settings.oidc_discovery_timeout_seconds,
            cache_ttl=timedelta(seconds=settings.oidc_cache_ttl_seconds),
        )
        self.oauth_providers = build_oauth_providers(settings)
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.credentials = CredentialService(
            self.store,
            self.store,
            self.store,
            hasher=PasswordHasher(),
            policy=PasswordPolicy.from_settings(settings),
            token_generator=SecureTokenGenerator(settings.secure_token_bytes),
            sender=self.email,
            reset_ttl=settings.password_reset_ttl,
            base_url=settings.app_base_url,
            support_url=settings.support_url,
        )
        self.linking = IdentityLinkingService(self.store, self.store)
        self.registration = RegistrationService(
            self.store,
            self.linking,
            webid_generator=pod_webid_generator(settings.app_base_url),
        )
        self.auth = AuthService(
            self.sessions,
            self.tokens,
            password=PasswordAuthenticator(self.store, self.credentials),
            webid=WebIDAuthenticator(self.store, self.verifier),
            oauth=OAuthAuthenticator(self.store, self.store, self.oauth_providers),
        )
        self.cleanup_worker = CleanupWorker(
            self.sessions,
            self.tokens,
            self.credentials,
            interval=settings.cleanup_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_providers=sorted(self.oauth_providers),
            session_ttl_minutes=settings.session_ttl_minutes,
            token_ttl_minutes=settings.token_ttl_minutes,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
