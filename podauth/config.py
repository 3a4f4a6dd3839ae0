from __future__ import annotations

import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from podauth.logging import get_logger

logger = get_logger(__name__)

SIGNING_KEY_FILENAME = ".jwt_signing_key.pem"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def generate_private_key_pem(key_size: int = 2048) -> str:
    """Generate an RSA private key serialized as unencrypted PKCS#8 PEM."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _load_or_create_signing_key(fs_root: Path) -> str:
    """Return the persisted signing key under ``fs_root``, creating it if absent."""
    key_path = fs_root / SIGNING_KEY_FILENAME

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "signing_key_dir_setup",
            error=str(exc),
            path=str(fs_root),
        )

    if key_path.exists() and not key_path.is_symlink():
        try:
            persisted = key_path.read_text().strip()
            if persisted.startswith("-----BEGIN"):
                return persisted
        except OSError as exc:
            logger.error("signing_key_read_failed", error=str(exc), path=str(key_path))

    generated = generate_private_key_pem()
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_signing_key_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(key_path))
    except OSError as exc:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
        raise RuntimeError(
            "Unable to persist signing key; set JWT_PRIVATE_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("signing_key_generated", path=str(key_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication and session engine."""

    shared_fs_root: str = env_field("/srv/podauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    persist_store_state: bool = env_field(True, "PERSIST_STORE_STATE")
    test_mode: bool = env_field(False, "TEST_MODE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    support_url: str | None = env_field(None, "SUPPORT_URL")

    # Session lifecycle
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")
    session_refresh_threshold_minutes: int = env_field(
        60, "SESSION_REFRESH_THRESHOLD_MINUTES"
    )
    cleanup_interval_seconds: int = env_field(
        3600,
        "CLEANUP_INTERVAL_SECONDS",
        description="How often expired sessions, revocations and reset tokens are swept",
    )

    # Signed session tokens
    token_ttl_minutes: int = env_field(60, "TOKEN_TTL_MINUTES")
    token_refresh_threshold_minutes: int = env_field(
        15, "TOKEN_REFRESH_THRESHOLD_MINUTES"
    )
    jwt_issuer: str = env_field("podauth", "JWT_ISSUER")
    jwt_audience: str = env_field("solid-pod-server", "JWT_AUDIENCE")
    jwt_key_id: str = env_field("default", "JWT_KEY_ID")
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM encoded RSA private key"
    )

    # Password security
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_symbol: bool = env_field(True, "PASSWORD_REQUIRE_SYMBOL")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    secure_token_bytes: int = env_field(32, "SECURE_TOKEN_BYTES")

    # WebID-OIDC
    oidc_discovery_timeout_seconds: float = env_field(
        30.0, "OIDC_DISCOVERY_TIMEOUT_SECONDS"
    )
    oidc_cache_ttl_seconds: int = env_field(3600, "OIDC_CACHE_TTL_SECONDS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_timeout_seconds: float = env_field(30.0, "OAUTH_TIMEOUT_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Pod Server", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_minutes",
        "token_ttl_minutes",
        "password_reset_ttl_minutes",
        "cleanup_interval_seconds",
        "oidc_cache_ttl_seconds",
        "password_min_length",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("session_refresh_threshold_minutes", "token_refresh_threshold_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("oidc_discovery_timeout_seconds", "oauth_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.session_ttl_minutes)

    @property
    def session_refresh_threshold(self) -> timedelta:
        return timedelta(minutes=self.session_refresh_threshold_minutes)

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(minutes=self.token_ttl_minutes)

    @property
    def token_refresh_threshold(self) -> timedelta:
        return timedelta(minutes=self.token_refresh_threshold_minutes)

    @property
    def password_reset_ttl(self) -> timedelta:
        return timedelta(minutes=self.password_reset_ttl_minutes)

    def signing_key_pem(self) -> str:
        """Configured signing key, or one persisted under ``shared_fs_root``."""
        if self.jwt_private_key:
            # Env files often carry PEM with escaped newlines
            return self.jwt_private_key.replace("\\n", "\n")
        return _load_or_create_signing_key(Path(self.shared_fs_root))


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
