from __future__ import annotations

import base64
import hashlib
import re
import secrets
import string
import unicodedata
from dataclasses import dataclass, field
from typing import Tuple

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from podauth.logging import get_logger
from podauth.service.errors import PasswordTooWeakError, ValidationError

logger = get_logger(__name__)

SALT_BYTES = 16
# argon2 accepts secrets up to 2**32 - 1 bytes
ARGON2_MAX_INPUT_BYTES = 2**32 - 1

WEAK_PASSWORD_PATTERNS: Tuple[str, ...] = (
    "password",
    "123456",
    "qwerty",
    "abc123",
    "letmein",
    "welcome",
    "monkey",
    "dragon",
    "master",
    "admin",
)


def _ascending_runs(alphabet: str, width: int = 4) -> Tuple[str, ...]:
    return tuple(alphabet[i : i + width] for i in range(len(alphabet) - width + 1))


_SEQUENTIAL_RUNS = _ascending_runs(string.digits) + _ascending_runs(string.ascii_lowercase)
_REPEATED_RUN = re.compile(r"(.)\1\1", re.DOTALL)


class PasswordHasher:
    """Salted argon2id hashing with the salt stored beside the hash.

    The hashed input is ``password + salt`` encoded as UTF-8 and truncated to
    ``max_input_bytes``; verification applies the same combination so long
    passwords keep verifying after truncation.
    """

    def __init__(self, *, max_input_bytes: int = ARGON2_MAX_INPUT_BYTES) -> None:
        self.max_input_bytes = max_input_bytes
        self._hasher = Argon2Hasher(type=Type.ID)

    def _combine(self, password: str, salt: str) -> bytes:
        combined = (password + salt).encode("utf-8")
        if len(combined) > self.max_input_bytes:
            combined = combined[: self.max_input_bytes]
        return combined

    def hash(self, password: str) -> Tuple[str, str]:
        if not password:
            raise ValidationError("password cannot be empty")
        salt = base64.b64encode(secrets.token_bytes(SALT_BYTES)).decode("ascii")
        digest = self._hasher.hash(self._combine(password, salt))
        return digest, salt

    def verify(self, password: str, password_hash: str, salt: str) -> bool:
        if not password or not password_hash or not salt:
            return False
        try:
            return self._hasher.verify(password_hash, self._combine(password, salt))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error=str(exc))
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        return self._hasher.check_needs_rehash(password_hash)


def _is_symbol(ch: str) -> bool:
    return unicodedata.category(ch)[0] in ("P", "S")


@dataclass
class PasswordPolicy:
    """Password strength rules; every unmet rule is reported at once."""

    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    weak_patterns: Tuple[str, ...] = field(default=WEAK_PASSWORD_PATTERNS)

    @classmethod
    def from_settings(cls, settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digit=settings.password_require_digit,
            require_symbol=settings.password_require_symbol,
        )

    def violations(self, password: str) -> list[str]:
        problems: list[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters long")
        if self.require_uppercase and not any(ch.isupper() for ch in password):
            problems.append("must contain at least one uppercase letter")
        if self.require_lowercase and not any(ch.islower() for ch in password):
            problems.append("must contain at least one lowercase letter")
        if self.require_digit and not any(ch.isdigit() for ch in password):
            problems.append("must contain at least one digit")
        if self.require_symbol and not any(_is_symbol(ch) for ch in password):
            problems.append("must contain at least one special character")

        lowered = password.lower()
        if any(pattern in lowered for pattern in self.weak_patterns):
            problems.append("must not contain common weak patterns")
        if any(run in lowered for run in _SEQUENTIAL_RUNS):
            problems.append("must not contain sequential characters")
        if _REPEATED_RUN.search(password):
            problems.append("must not contain three or more repeated characters")
        return problems

    def validate(self, password: str) -> None:
        problems = self.violations(password)
        if problems:
            raise PasswordTooWeakError(
                "password does not meet requirements: " + "; ".join(problems),
                detail={"violations": problems},
            )


class SecureTokenGenerator:
    """URL-safe random tokens backed by the ``secrets`` module."""

    DEFAULT_LENGTH = 32

    def __init__(self, length: int = DEFAULT_LENGTH) -> None:
        self.length = length if length > 0 else self.DEFAULT_LENGTH

    def generate(self) -> str:
        return secrets.token_urlsafe(self.length)


def generate_session_id() -> str:
    digest = hashlib.sha256(secrets.token_bytes(32)).digest()
    return "sess_" + digest[:16].hex()


def generate_token_hash() -> str:
    return "hash_" + hashlib.sha256(secrets.token_bytes(32)).hexdigest()
