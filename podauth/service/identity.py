from __future__ import annotations

import uuid
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from podauth.logging import get_logger
from podauth.service.errors import (
    AlreadyLinkedError,
    ConflictError,
    ExternalIdentityInvalidError,
    ExternalIdentityNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from podauth.storage.errors import ConstraintViolation
from podauth.storage.models import ExternalIdentity, ExternalProfile, User

logger = get_logger(__name__)

DEFAULT_POD_BASE_URL = "http://localhost:8000"


class IdentityStore(Protocol):
    def link_identity(self, identity: ExternalIdentity) -> None: ...

    def find_identity(self, provider: str, external_id: str) -> Optional[ExternalIdentity]: ...

    def list_identities_for_user(self, user_id: str) -> List[ExternalIdentity]: ...

    def list_identities_for_provider(self, provider: str) -> List[ExternalIdentity]: ...

    def is_identity_linked(self, provider: str, external_id: str) -> bool: ...

    def unlink_identity(self, provider: str, external_id: str) -> bool: ...

    def unlink_all_identities(self, user_id: str) -> int: ...


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        *,
        user_id: Optional[str] = None,
        webid: Optional[str] = None,
        name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_webid(self, webid: str) -> Optional[User]: ...


def _require(**values: str) -> None:
    for name, value in values.items():
        if not value:
            raise ValidationError(f"{name} is required", detail={"field": name})


class IdentityLinkingService:
    """Links external provider accounts to local users.

    ``(provider, external_id)`` is unique across all users; the store enforces
    it atomically and the pre-check here only produces a friendlier error.
    """

    def __init__(self, identities: IdentityStore, users: UserDirectory) -> None:
        self.identities = identities
        self.users = users

    def _require_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if user is None:
            raise UserNotFoundError("user not found", detail={"user_id": user_id})
        return user

    def link(self, user_id: str, provider: str, profile: ExternalProfile) -> ExternalIdentity:
        _require(user_id=user_id, provider=provider)
        if not profile.is_valid():
            raise ExternalIdentityInvalidError("external profile is missing required fields")
        self._require_user(user_id)

        existing = self.identities.find_identity(provider, profile.id)
        if existing is not None:
            raise AlreadyLinkedError(
                "external identity is already linked",
                detail={"provider": provider, "same_user": existing.user_id == user_id},
            )

        identity = ExternalIdentity(user_id=user_id, provider=provider, external_id=profile.id)
        try:
            self.identities.link_identity(identity)
        except ConstraintViolation as exc:
            raise AlreadyLinkedError(
                "external identity is already linked", detail={"provider": provider}
            ) from exc
        logger.info("identity_linked", user_id=user_id, provider=provider)
        return identity

    def unlink(self, user_id: str, provider: str, external_id: str) -> None:
        _require(user_id=user_id, provider=provider, external_id=external_id)
        self._require_user(user_id)
        identity = self.identities.find_identity(provider, external_id)
        if identity is None or identity.user_id != user_id:
            raise ExternalIdentityNotFoundError(
                "external identity is not linked to this user",
                detail={"provider": provider},
            )
        self.identities.unlink_identity(provider, external_id)
        logger.info("identity_unlinked", user_id=user_id, provider=provider)

    def linked_identities(self, user_id: str) -> List[ExternalIdentity]:
        _require(user_id=user_id)
        self._require_user(user_id)
        return self.identities.list_identities_for_user(user_id)

    def unlink_all(self, user_id: str) -> int:
        _require(user_id=user_id)
        self._require_user(user_id)
        removed = self.identities.unlink_all_identities(user_id)
        logger.info("identities_unlinked", user_id=user_id, removed=removed)
        return removed

    def is_linked(self, provider: str, external_id: str) -> Tuple[bool, Optional[str]]:
        """Return ``(linked, user_id)`` for an external account."""
        _require(provider=provider, external_id=external_id)
        identity = self.identities.find_identity(provider, external_id)
        if identity is None:
            return False, None
        return True, identity.user_id

    def identities_for_provider(self, provider: str) -> List[ExternalIdentity]:
        _require(provider=provider)
        return self.identities.list_identities_for_provider(provider)


def pod_webid_generator(base_url: str) -> Callable[[str], str]:
    """WebIDs hosted on this server: ``{base_url}/{user_id}/profile/card#me``."""
    base = base_url.rstrip("/")

    def generate(user_id: str) -> str:
        return f"{base}/{user_id}/profile/card#me"

    return generate


class RegistrationService:
    """Creates local accounts from external profiles."""

    def __init__(
        self,
        users: UserDirectory,
        linking: IdentityLinkingService,
        *,
        webid_generator: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.users = users
        self.linking = linking
        self.webid_generator = webid_generator or pod_webid_generator(DEFAULT_POD_BASE_URL)

    def register_with_external_identity(self, provider: str, profile: ExternalProfile) -> User:
        """Create a user for ``profile`` and link it.

        The two writes are not atomic. If linking fails after the user was
        created, the error propagates and the new user is left in place.
        """
        _require(provider=provider)
        if not profile.is_valid():
            raise ExternalIdentityInvalidError("external profile is missing required fields")
        linked, _ = self.linking.is_linked(provider, profile.id)
        if linked:
            raise AlreadyLinkedError(
                "external identity is already linked", detail={"provider": provider}
            )

        user_id = str(uuid.uuid4())
        try:
            user = self.users.create_user(
                profile.email,
                user_id=user_id,
                webid=self.webid_generator(user_id),
                name=profile.name,
                meta={"registration_provider": provider},
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "could not create user", detail={"field": exc.detail.get("field")}
            ) from exc

        try:
            self.linking.link(user.id, provider, profile)
        except Exception as exc:
            # TODO: delete the orphaned user once UserDirectory exposes delete_user
            logger.error(
                "registration_link_failed",
                user_id=user.id,
                provider=provider,
                error=str(exc),
            )
            raise
        logger.info("user_registered", user_id=user.id, provider=provider)
        return user

    def link_external_identity(
        self, user_id: str, provider: str, profile: ExternalProfile
    ) -> ExternalIdentity:
        return self.linking.link(user_id, provider, profile)

    def unlink_external_identity(self, user_id: str, provider: str, external_id: str) -> None:
        self.linking.unlink(user_id, provider, external_id)

    def linked_identities(self, user_id: str) -> List[ExternalIdentity]:
        return self.linking.linked_identities(user_id)
