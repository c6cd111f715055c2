from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from wukongid.config import Settings, normalize_client_id
from wukongid.logging import get_logger
from wukongid.service.broker import (
    TOKEN_NAMESPACE,
    AuthorizationBroker,
    TokenStore,
    generate_opaque_token,
)
from wukongid.service.errors import (
    InvalidState,
    InvalidToken,
    StoreUnavailable,
    TokenExpired,
    ValidationError,
)
from wukongid.storage.errors import StorageUnavailable
from wukongid.storage.models import AccessToken, Identity, utcnow

logger = get_logger(__name__)

DEFAULT_SCOPE = "openid profile email"
UNKNOWN_USER_NAME = "Unknown User"

_STATE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")


class IdentityLookup(Protocol):
    def find_by_external_id(self, external_id: str) -> Optional[Identity]: ...


@dataclass
class TokenResponse:
    access_token: str
    id_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str = DEFAULT_SCOPE

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserInfo:
    subject_id: str
    client_id: str
    name: str
    email: Optional[str] = None
    login_method: Optional[str] = None
    role: str = "user"


@dataclass
class SessionIdentity:
    """Claims of a verified session credential."""

    subject_id: str
    client_id: str
    display_name: str
    issued_at: int
    expires_at: int
    session_id: Optional[str] = None
    # Primary factor only; the second factor is still outstanding
    mfa_pending: bool = False


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Exchanges codes for tokens and signs/verifies session credentials.

    Session credentials and ID assertions are HS256 JWTs signed with
    ``settings.jwt_secret``; verification needs no server-side state.
    """

    def __init__(
        self,
        broker: AuthorizationBroker,
        token_store: TokenStore,
        identities: IdentityLookup,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broker = broker
        self.token_store = token_store
        self.identities = identities
        self.settings = settings
        self._clock = clock

    @property
    def session_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.session_ttl_days)

    # code exchange
    async def exchange(self, code: str, client_id: str, redirect_uri: str) -> TokenResponse:
        subject_id = await self.broker.redeem_code(code, client_id, redirect_uri)
        client = normalize_client_id(client_id)
        now = utcnow()
        access = AccessToken(
            token=generate_opaque_token(),
            subject_id=subject_id,
            client_id=client,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.access_token_ttl_seconds),
        )
        try:
            await self.token_store.put(
                TOKEN_NAMESPACE,
                access.token,
                {
                    "subject_id": access.subject_id,
                    "client_id": access.client_id,
                    "issued_at": access.issued_at.isoformat(),
                    "expires_at": access.expires_at.isoformat(),
                },
                access.expires_at,
            )
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc

        issued_at = int(self._clock())
        id_token = self._encode_jwt(
            {
                "sub": subject_id,
                "aud": client,
                "iss": self.settings.issuer,
                "iat": issued_at,
                "exp": issued_at + self.settings.id_token_ttl_seconds,
                "typ": "id",
            }
        )
        logger.info("token_exchanged", subject_id=subject_id, client_id=client)
        return TokenResponse(
            access_token=access.token,
            id_token=id_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def user_info(self, access_token: str) -> UserInfo:
        try:
            record = await self.token_store.get(TOKEN_NAMESPACE, access_token)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if record is None:
            raise InvalidToken("access token not recognized")
        access = AccessToken(
            token=access_token,
            subject_id=record["subject_id"],
            client_id=record["client_id"],
            issued_at=datetime.fromisoformat(record["issued_at"]),
            expires_at=datetime.fromisoformat(record["expires_at"]),
        )
        if access.is_expired():
            raise TokenExpired("access token expired")
        return self._resolve_user_info(access.subject_id, access.client_id)

    def user_info_from_session(self, credential: str) -> UserInfo:
        identity = self.verify_session(credential)
        if identity is None:
            raise InvalidToken("session credential is invalid")
        if identity.mfa_pending:
            raise InvalidToken("session credential is awaiting MFA verification")
        return self._resolve_user_info(identity.subject_id, identity.client_id)

    def _resolve_user_info(self, subject_id: str, client_id: str) -> UserInfo:
        try:
            user = self.identities.find_by_external_id(subject_id)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if user is None:
            logger.warning("user_info_subject_missing", subject_id=subject_id)
            raise InvalidToken("subject no longer exists")
        return UserInfo(
            subject_id=subject_id,
            client_id=client_id,
            name=user.display_name or UNKNOWN_USER_NAME,
            email=user.email,
            login_method=user.login_method,
            role=user.role,
        )

    # session credentials
    def mint_session(
        self,
        subject_id: str,
        display_name: str,
        ttl: Optional[timedelta] = None,
        *,
        session_id: Optional[str] = None,
        mfa_pending: bool = False,
    ) -> str:
        """Sign a session credential.

        An ``mfa_pending`` credential proves the first factor only and is
        never bound to a device session.
        """
        if not subject_id or not display_name:
            raise ValidationError("subject_id and display_name are required")
        lifetime = ttl if ttl is not None else self.session_lifetime
        issued_at = int(self._clock())
        payload: dict[str, Any] = {
            "sub": subject_id,
            "client_id": self.settings.client_id,
            "name": display_name,
            "iat": issued_at,
            "exp": issued_at + int(lifetime.total_seconds()),
            "typ": "session",
        }
        if mfa_pending:
            payload["mfa"] = "pending"
        elif session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload)

    def verify_session(self, credential: Optional[str]) -> Optional[SessionIdentity]:
        """Return the credential's claims, or None if it must not be trusted."""
        payload = self._decode_jwt(credential) if credential else None
        if not payload or payload.get("typ") != "session":
            return None
        subject_id = payload.get("sub")
        client_id = payload.get("client_id")
        name = payload.get("name")
        if not all(isinstance(v, str) and v for v in (subject_id, client_id, name)):
            logger.warning("session_credential_missing_claims")
            return None
        if not self._unexpired(payload):
            return None
        sid = payload.get("sid")
        return SessionIdentity(
            subject_id=subject_id,
            client_id=client_id,
            display_name=name,
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
            session_id=sid if isinstance(sid, str) and sid else None,
            mfa_pending=payload.get("mfa") is not None,
        )

    def verify_id_assertion(
        self, token: Optional[str], expected_client_id: str
    ) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("typ") != "id":
            return None
        if payload.get("aud") != normalize_client_id(expected_client_id):
            return None
        if payload.get("iss") != self.settings.issuer:
            return None
        subject_id = payload.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            return None
        if not self._unexpired(payload):
            return None
        return payload

    def _unexpired(self, payload: dict[str, Any]) -> bool:
        exp = payload.get("exp")
        if isinstance(exp, bool):
            return False
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return False
        return exp_ts > self._clock()

    # state parameter
    @staticmethod
    def encode_state(payload: dict[str, Any]) -> str:
        return _encode_segment(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    @staticmethod
    def decode_state(state: Optional[str]) -> dict[str, Any]:
        """Decode a base64url JSON object; anything else raises InvalidState."""
        if not state or not _STATE_PATTERN.match(state):
            raise InvalidState("state is not base64url encoded")
        try:
            raw = _decode_segment(state.rstrip("="))
            decoded = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise InvalidState("state is not a base64url encoded JSON object") from exc
        if not isinstance(decoded, dict):
            raise InvalidState("state must encode a JSON object")
        return decoded

    # jwt helpers
    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload
