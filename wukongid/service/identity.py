from __future__ import annotations

import re
import uuid
from typing import Any, Iterable, Optional, Protocol, Tuple

from wukongid.logging import get_logger
from wukongid.service.errors import StoreUnavailable, ValidationError
from wukongid.storage.errors import StorageUnavailable
from wukongid.storage.models import Identity, utcnow

logger = get_logger(__name__)

DEV_EXTERNAL_ID = "dev-user-mock"
DEV_DISPLAY_NAME = "Development User"
DEV_EMAIL = "dev@localhost"

_KEEP: Any = object()

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_PLATFORM_LOGIN_METHODS = (
    ("REGISTERED_PLATFORM_EMAIL", "email"),
    ("REGISTERED_PLATFORM_GOOGLE", "google"),
    ("REGISTERED_PLATFORM_APPLE", "apple"),
    ("REGISTERED_PLATFORM_MICROSOFT", "microsoft"),
    ("REGISTERED_PLATFORM_AZURE", "microsoft"),
    ("REGISTERED_PLATFORM_GITHUB", "github"),
)


class IdentityStore(Protocol):
    def find_by_external_id(self, external_id: str) -> Optional[Identity]: ...

    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def upsert_identity(self, identity: Identity) -> Identity: ...


def validate_email(value: str) -> str:
    """Return the normalized (lower-cased) address or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def external_id_for(provider: str, provider_user_id: str) -> str:
    return f"{provider}:{provider_user_id}"


def derive_login_method(
    platforms: Optional[Iterable[Any]], fallback: Optional[str] = None
) -> Optional[str]:
    """Pick a login method from a provider's registered platform list."""
    if fallback:
        return fallback
    names = [p for p in (platforms or []) if isinstance(p, str)]
    if not names:
        return None
    present = set(names)
    for platform, method in _PLATFORM_LOGIN_METHODS:
        if platform in present:
            return method
    return names[0].lower()


class IdentityService:
    """Resolves provider hand-offs into stored identities."""

    def __init__(self, store: IdentityStore, *, owner_external_id: Optional[str] = None) -> None:
        self.store = store
        self.owner_external_id = owner_external_id

    def get(self, subject_id: str) -> Optional[Identity]:
        try:
            return self.store.find_by_external_id(subject_id)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc

    def upsert(
        self,
        external_id: str,
        *,
        display_name: Optional[str] = _KEEP,
        email: Optional[str] = _KEEP,
        login_method: Optional[str] = _KEEP,
        role: Optional[str] = None,
    ) -> Identity:
        """Create or update by external id, leaving omitted fields untouched.

        Without an explicit role the configured owner is promoted to admin.
        """
        existing = self.get(external_id)
        if role is None and self.owner_external_id and external_id == self.owner_external_id:
            role = "admin"

        def pick(value: Any, current: Any) -> Any:
            return current if value is _KEEP else value

        identity = Identity(
            id=existing.id if existing else "",
            external_id=external_id,
            display_name=pick(display_name, existing.display_name if existing else None),
            email=pick(email, existing.email if existing else None),
            login_method=pick(login_method, existing.login_method if existing else None),
            role=role or (existing.role if existing else "user"),
            last_signed_in=utcnow(),
        )
        try:
            stored = self.store.upsert_identity(identity)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        logger.info(
            "identity_upserted",
            subject_id=external_id,
            created=existing is None,
            role=stored.role,
        )
        return stored

    def resolve_provider_identity(
        self,
        provider: str,
        provider_user_id: Optional[str] = None,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Tuple[Identity, bool]:
        """Turn a ``(provider, providerUserId, profile)`` hand-off into an identity.

        Returns the stored identity and whether it was newly created. The
        email provider keys on the validated address and registers unknown
        addresses on first use.
        """
        provider = (provider or "").strip().lower()
        if not provider:
            raise ValidationError("provider is required")
        if provider == "email":
            if not email:
                raise ValidationError("email is required")
            try:
                address = validate_email(email)
            except ValueError as exc:
                raise ValidationError(str(exc), detail={"field": "email"}) from exc
            external_id = external_id_for("email", address)
            created = self.get(external_id) is None
            identity = self.upsert(
                external_id,
                display_name=name or address.split("@", 1)[0],
                email=address,
                login_method="email",
            )
            return identity, created

        user_id = provider_user_id or uuid.uuid4().hex
        external_id = external_id_for(provider, user_id)
        created = self.get(external_id) is None
        identity = self.upsert(
            external_id,
            display_name=name or f"{provider} User",
            email=email or f"{user_id}@{provider}.example.com",
            login_method=provider,
        )
        return identity, created

    def development_identity(self) -> Identity:
        existing = self.get(DEV_EXTERNAL_ID)
        if existing:
            return existing
        logger.warning("development_identity_created", subject_id=DEV_EXTERNAL_ID)
        return self.upsert(
            DEV_EXTERNAL_ID,
            display_name=DEV_DISPLAY_NAME,
            email=DEV_EMAIL,
            login_method="mock",
            role="admin",
        )
