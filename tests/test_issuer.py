"""Unit tests for the token and session issuer.

Covers:
- Code exchange and the token response shape
- Access-token user info
- Session credential minting and verification
- ID assertion verification
- Canonical state encoding
"""

import base64
import json
from datetime import timedelta

import pytest

from wukongid.service.broker import TOKEN_NAMESPACE, AuthorizationBroker
from wukongid.service.errors import (
    CodeAlreadyUsed,
    InvalidState,
    InvalidToken,
    RedirectMismatch,
    TokenExpired,
)
from wukongid.service.identity import IdentityService
from wukongid.service.issuer import TokenIssuer
from wukongid.storage.memory import MemoryStore, MemoryTokenStore
from wukongid.storage.models import utcnow

CLIENT = "wukong-console"
REDIRECT = "https://console.example.com/api/oauth/callback"
SUBJECT = "email:alice@example.com"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-key")


@pytest.fixture
def token_store():
    return MemoryTokenStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(memory_store, token_store, settings, clock):
    broker = AuthorizationBroker(token_store)
    return TokenIssuer(broker, token_store, memory_store, settings, clock=clock)


@pytest.fixture
def alice(memory_store):
    return IdentityService(memory_store).upsert(
        SUBJECT, display_name="Alice", email="alice@example.com", login_method="email"
    )


def _forge(payload: dict, header: dict | None = None, signature: str = "sig") -> str:
    def seg(obj):
        raw = json.dumps(obj, separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{seg(header or {'alg': 'HS256', 'typ': 'JWT'})}.{seg(payload)}.{signature}"


class TestExchange:
    """Tests for authorization code exchange."""

    async def test_exchange_returns_token_response(self, issuer, alice):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)

        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        assert tokens.token_type == "Bearer"
        assert tokens.scope == "openid profile email"
        assert tokens.expires_in == 3600
        assert tokens.access_token
        assert set(tokens.to_dict()) == {
            "access_token",
            "token_type",
            "expires_in",
            "scope",
            "id_token",
        }

    async def test_id_token_claims(self, issuer, alice, clock):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)
        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        claims = issuer.verify_id_assertion(tokens.id_token, CLIENT)

        assert claims["sub"] == SUBJECT
        assert claims["aud"] == CLIENT
        assert claims["iss"] == "http://localhost:8081"
        assert claims["typ"] == "id"
        assert claims["exp"] - claims["iat"] == 3600

    async def test_exchange_propagates_broker_errors(self, issuer, alice):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)

        with pytest.raises(RedirectMismatch):
            await issuer.exchange(code, CLIENT, "https://elsewhere.example.com/")

        await issuer.exchange(code, CLIENT, REDIRECT)
        with pytest.raises(CodeAlreadyUsed):
            await issuer.exchange(code, CLIENT, REDIRECT)


class TestUserInfo:
    """Tests for access-token user info."""

    async def test_user_info_resolves_identity(self, issuer, alice):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)
        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        info = await issuer.user_info(tokens.access_token)

        assert info.subject_id == SUBJECT
        assert info.client_id == CLIENT
        assert info.name == "Alice"
        assert info.email == "alice@example.com"
        assert info.login_method == "email"

    async def test_unknown_access_token(self, issuer):
        with pytest.raises(InvalidToken):
            await issuer.user_info("not-a-token")

    async def test_expired_access_token(self, issuer, token_store, alice):
        past = utcnow() - timedelta(seconds=5)
        await token_store.put(
            TOKEN_NAMESPACE,
            "stale-token",
            {
                "subject_id": SUBJECT,
                "client_id": CLIENT,
                "issued_at": (past - timedelta(hours=1)).isoformat(),
                "expires_at": past.isoformat(),
            },
            utcnow() + timedelta(minutes=1),
        )

        with pytest.raises(TokenExpired):
            await issuer.user_info("stale-token")

    async def test_name_falls_back_when_missing(self, issuer, memory_store):
        IdentityService(memory_store).upsert("github:42", display_name=None)
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, "github:42")
        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        info = await issuer.user_info(tokens.access_token)

        assert info.name == "Unknown User"

    def test_user_info_from_session(self, issuer, alice):
        credential = issuer.mint_session(SUBJECT, "Alice")

        info = issuer.user_info_from_session(credential)

        assert info.subject_id == SUBJECT
        assert info.name == "Alice"

    def test_user_info_from_invalid_session(self, issuer):
        with pytest.raises(InvalidToken):
            issuer.user_info_from_session("garbage")


class TestSessionCredential:
    """Tests for minting and verifying session credentials."""

    def test_round_trip(self, issuer, clock):
        credential = issuer.mint_session(SUBJECT, "Alice", session_id="abc123")

        identity = issuer.verify_session(credential)

        assert identity.subject_id == SUBJECT
        assert identity.client_id == CLIENT
        assert identity.display_name == "Alice"
        assert identity.session_id == "abc123"
        assert identity.expires_at - identity.issued_at == 365 * 24 * 3600

    def test_expired_credential_rejected(self, issuer, clock):
        credential = issuer.mint_session(SUBJECT, "Alice", ttl=timedelta(seconds=60))
        assert issuer.verify_session(credential) is not None

        clock.now += 61

        assert issuer.verify_session(credential) is None

    def test_tampered_payload_rejected(self, issuer):
        credential = issuer.mint_session(SUBJECT, "Alice")
        header, _, signature = credential.split(".")
        forged = _forge(
            {"sub": "email:mallory@example.com", "client_id": CLIENT, "name": "M",
             "exp": 9_999_999_999, "typ": "session"}
        ).split(".")[1]

        assert issuer.verify_session(f"{header}.{forged}.{signature}") is None

    def test_wrong_secret_rejected(self, issuer, memory_store, token_store, settings):
        other = TokenIssuer(
            issuer.broker,
            token_store,
            memory_store,
            settings.model_copy(update={"jwt_secret": "another-secret-another-secret-xx"}),
        )
        credential = other.mint_session(SUBJECT, "Alice")

        assert issuer.verify_session(credential) is None

    def test_none_algorithm_rejected(self, issuer):
        token = _forge(
            {"sub": SUBJECT, "client_id": CLIENT, "name": "Alice",
             "exp": 9_999_999_999, "typ": "session"},
            header={"alg": "none", "typ": "JWT"},
            signature="",
        )
        assert issuer.verify_session(token) is None

    @pytest.mark.parametrize("value", [None, "", "a.b", "a.b.c.d", "not a jwt", "é.é.é"])
    def test_malformed_credentials_rejected(self, issuer, value):
        assert issuer.verify_session(value) is None

    def test_id_token_is_not_a_session(self, issuer):
        token = issuer._encode_jwt(
            {"sub": SUBJECT, "client_id": CLIENT, "name": "Alice",
             "exp": 9_999_999_999, "typ": "id"}
        )
        assert issuer.verify_session(token) is None

    def test_missing_name_rejected(self, issuer):
        token = issuer._encode_jwt(
            {"sub": SUBJECT, "client_id": CLIENT, "name": "",
             "exp": 9_999_999_999, "typ": "session"}
        )
        assert issuer.verify_session(token) is None

    @pytest.mark.parametrize("segment", [0, 1, 2], ids=["header", "payload", "signature"])
    def test_any_changed_character_rejected(self, issuer, segment):
        credential = issuer.mint_session(SUBJECT, "Alice", session_id="abc123")
        assert issuer.verify_session(credential) is not None
        parts = credential.split(".")

        for position, char in enumerate(parts[segment]):
            altered = list(parts)
            replacement = "B" if char == "A" else "A"
            altered[segment] = parts[segment][:position] + replacement + parts[segment][position + 1:]

            assert issuer.verify_session(".".join(altered)) is None, (segment, position)

    def test_pending_credential(self, issuer, clock):
        credential = issuer.mint_session(
            SUBJECT, "Alice", timedelta(seconds=300), mfa_pending=True
        )

        identity = issuer.verify_session(credential)

        assert identity.mfa_pending is True
        assert identity.session_id is None
        clock.now += 301
        assert issuer.verify_session(credential) is None

    def test_full_credential_not_pending(self, issuer):
        identity = issuer.verify_session(issuer.mint_session(SUBJECT, "Alice", session_id="s1"))
        assert identity.mfa_pending is False

    def test_pending_credential_has_no_user_info(self, issuer, alice):
        credential = issuer.mint_session(SUBJECT, "Alice", mfa_pending=True)

        with pytest.raises(InvalidToken):
            issuer.user_info_from_session(credential)


class TestSignInFlow:
    """Code issuance through session verification, on one clock."""

    async def test_code_to_session_lifecycle(self, issuer, memory_store, clock):
        IdentityService(memory_store).upsert("42", display_name="Alice")
        code = await issuer.broker.issue_code("app-1", "https://x/cb", "42")

        tokens = await issuer.exchange(code, "app-1", "https://x/cb")
        info = await issuer.user_info(tokens.access_token)

        assert info.subject_id == "42"
        assert info.client_id == "app-1"
        assert info.name == "Alice"

        credential = issuer.mint_session("42", "Alice", timedelta(seconds=3600))
        identity = issuer.verify_session(credential)
        assert identity.subject_id == "42"
        assert identity.display_name == "Alice"

        clock.now += 3601
        assert issuer.verify_session(credential) is None


class TestIdAssertion:
    """Tests for ID assertion verification."""

    async def test_wrong_audience_rejected(self, issuer, alice):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)
        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        assert issuer.verify_id_assertion(tokens.id_token, "another-client") is None

    async def test_expired_assertion_rejected(self, issuer, alice, clock):
        code = await issuer.broker.issue_code(CLIENT, REDIRECT, SUBJECT)
        tokens = await issuer.exchange(code, CLIENT, REDIRECT)

        clock.now += 3601

        assert issuer.verify_id_assertion(tokens.id_token, CLIENT) is None

    def test_session_credential_is_not_an_assertion(self, issuer):
        credential = issuer.mint_session(SUBJECT, "Alice")
        assert issuer.verify_id_assertion(credential, CLIENT) is None


class TestState:
    """Tests for the canonical state encoding."""

    def test_round_trip(self):
        payload = {"redirect_uri": REDIRECT, "nonce": "n-1"}
        assert TokenIssuer.decode_state(TokenIssuer.encode_state(payload)) == payload

    def test_padded_state_accepted(self):
        raw = base64.urlsafe_b64encode(json.dumps({"a": 1}).encode()).decode()
        assert TokenIssuer.decode_state(raw) == {"a": 1}

    @pytest.mark.parametrize(
        "state",
        [
            "",
            None,
            "https://console.example.com/callback",
            "not base64!",
            base64.urlsafe_b64encode(b"plain text").decode().rstrip("="),
            base64.urlsafe_b64encode(b"[1, 2, 3]").decode().rstrip("="),
            base64.urlsafe_b64encode(b"\xff\xfe").decode().rstrip("="),
        ],
    )
    def test_non_canonical_state_rejected(self, state):
        with pytest.raises(InvalidState):
            TokenIssuer.decode_state(state)
