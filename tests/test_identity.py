"""Tests for identity resolution."""

import pytest

from wukongid.service.errors import ValidationError
from wukongid.service.identity import (
    DEV_EXTERNAL_ID,
    IdentityService,
    derive_login_method,
    validate_email,
)
from wukongid.storage.memory import MemoryStore

OWNER = "email:owner@example.com"


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-key")


@pytest.fixture
def identities(memory_store):
    return IdentityService(memory_store, owner_external_id=OWNER)


class TestUpsert:
    def test_owner_promoted_to_admin(self, identities):
        assert identities.upsert(OWNER, display_name="Owner").role == "admin"
        assert identities.upsert("email:guest@example.com").role == "user"

    def test_explicit_role_wins_over_owner(self, identities):
        assert identities.upsert(OWNER, role="user").role == "user"

    def test_omitted_fields_are_kept(self, identities):
        identities.upsert("github:1", display_name="Octo", email="octo@example.com")

        updated = identities.upsert("github:1", login_method="github")

        assert updated.display_name == "Octo"
        assert updated.email == "octo@example.com"
        assert updated.login_method == "github"

    def test_role_kept_on_update(self, identities):
        identities.upsert("github:1", role="admin")
        assert identities.upsert("github:1", display_name="Octo").role == "admin"


class TestResolveProviderIdentity:
    def test_email_auto_registers(self, identities):
        identity, created = identities.resolve_provider_identity(
            "email", email="Alice@Example.com"
        )

        assert created
        assert identity.external_id == "email:alice@example.com"
        assert identity.display_name == "alice"
        assert identity.login_method == "email"

    def test_email_second_sign_in_not_created(self, identities):
        identities.resolve_provider_identity("email", email="alice@example.com")
        _, created = identities.resolve_provider_identity("email", email="alice@example.com")
        assert not created

    @pytest.mark.parametrize("email", [None, "", "not-an-email", "a@b", "a b@example.com"])
    def test_email_validated(self, identities, email):
        with pytest.raises(ValidationError):
            identities.resolve_provider_identity("email", email=email)

    def test_other_provider_defaults(self, identities):
        identity, created = identities.resolve_provider_identity("github", "12345")

        assert created
        assert identity.external_id == "github:12345"
        assert identity.display_name == "github User"
        assert identity.email == "12345@github.example.com"
        assert identity.login_method == "github"

    def test_other_provider_generates_id(self, identities):
        identity, _ = identities.resolve_provider_identity("google")
        assert identity.external_id.startswith("google:")
        assert len(identity.external_id) > len("google:")

    def test_provider_required(self, identities):
        with pytest.raises(ValidationError):
            identities.resolve_provider_identity("  ")


class TestHelpers:
    def test_development_identity(self, identities):
        dev = identities.development_identity()

        assert dev.external_id == DEV_EXTERNAL_ID
        assert dev.display_name == "Development User"
        assert dev.email == "dev@localhost"
        assert dev.role == "admin"
        assert identities.development_identity().id == dev.id

    @pytest.mark.parametrize(
        "platforms,fallback,expected",
        [
            (["REGISTERED_PLATFORM_GITHUB", "REGISTERED_PLATFORM_EMAIL"], None, "email"),
            (["REGISTERED_PLATFORM_AZURE"], None, "microsoft"),
            (["REGISTERED_PLATFORM_WECHAT"], None, "registered_platform_wechat"),
            (["REGISTERED_PLATFORM_GOOGLE"], "apple", "apple"),
            ([], None, None),
            (None, None, None),
        ],
    )
    def test_derive_login_method(self, platforms, fallback, expected):
        assert derive_login_method(platforms, fallback) == expected

    def test_validate_email_normalizes(self):
        assert validate_email("  Bob@Example.COM ") == "bob@example.com"
