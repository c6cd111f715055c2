from __future__ import annotations

import base64
import os
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from wukongid.config import normalize_client_id
from wukongid.logging import get_logger
from wukongid.service.errors import (
    ClientMismatch,
    CodeAlreadyUsed,
    CodeExpired,
    CodeNotFound,
    RedirectMismatch,
    StoreUnavailable,
)
from wukongid.storage.errors import StorageUnavailable
from wukongid.storage.models import AuthorizationCode

logger = get_logger(__name__)

CODE_NAMESPACE = "code"
TOKEN_NAMESPACE = "token"


class TokenStore(Protocol):
    async def put(
        self, namespace: str, key: str, record: Dict[str, Any], expires_at: datetime
    ) -> None: ...

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def mark_used(self, namespace: str, key: str) -> bool: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def purge_expired(self, now: Optional[datetime] = None) -> int: ...


def generate_opaque_token(num_bytes: int = 32) -> str:
    """URL-safe random string carrying ``num_bytes`` of entropy."""
    return base64.urlsafe_b64encode(os.urandom(num_bytes)).decode().rstrip("=")


def _code_to_record(auth_code: AuthorizationCode) -> Dict[str, Any]:
    return {
        "client_id": auth_code.client_id,
        "redirect_uri": auth_code.redirect_uri,
        "subject_id": auth_code.subject_id,
        "issued_at": auth_code.issued_at.isoformat(),
        "expires_at": auth_code.expires_at.isoformat(),
        "used": auth_code.used,
    }


def _record_to_code(code: str, record: Dict[str, Any]) -> AuthorizationCode:
    return AuthorizationCode(
        code=code,
        client_id=record["client_id"],
        redirect_uri=record["redirect_uri"],
        subject_id=record["subject_id"],
        issued_at=datetime.fromisoformat(record["issued_at"]),
        expires_at=datetime.fromisoformat(record["expires_at"]),
        used=bool(record.get("used", False)),
    )


class AuthorizationBroker:
    """Issues and redeems one-time authorization codes.

    A code binds a client, a redirect target and an authenticated subject.
    It can be redeemed once, by that client, for that redirect target,
    before it expires.
    """

    def __init__(self, store: TokenStore, *, code_ttl_seconds: int = 600) -> None:
        self.store = store
        self.code_ttl_seconds = code_ttl_seconds

    async def issue_code(self, client_id: str, redirect_uri: str, subject_id: str) -> str:
        auth_code = AuthorizationCode.new(
            generate_opaque_token(),
            normalize_client_id(client_id),
            redirect_uri,
            subject_id,
            ttl_seconds=self.code_ttl_seconds,
        )
        try:
            await self.store.put(
                CODE_NAMESPACE,
                auth_code.code,
                _code_to_record(auth_code),
                auth_code.expires_at,
            )
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        logger.info(
            "authorization_code_issued",
            client_id=auth_code.client_id,
            subject_id=subject_id,
            expires_at=auth_code.expires_at.isoformat(),
        )
        return auth_code.code

    async def redeem_code(self, code: str, client_id: str, redirect_uri: str) -> str:
        """Consume ``code`` and return the subject it was issued for.

        Binding checks run before the code is marked used, so a caller
        presenting the wrong client or redirect does not burn it.
        """
        try:
            record = await self.store.get(CODE_NAMESPACE, code)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if record is None:
            logger.warning("authorization_code_rejected", reason="not_found")
            raise CodeNotFound("authorization code not found")
        auth_code = _record_to_code(code, record)
        if auth_code.used:
            logger.warning("authorization_code_rejected", reason="already_used")
            raise CodeAlreadyUsed("authorization code already used")
        if auth_code.is_expired():
            logger.warning("authorization_code_rejected", reason="expired")
            raise CodeExpired("authorization code expired")
        if normalize_client_id(client_id) != auth_code.client_id:
            logger.warning(
                "authorization_code_rejected",
                reason="client_mismatch",
                client_id=client_id,
            )
            raise ClientMismatch("authorization code was issued to another client")
        if redirect_uri != auth_code.redirect_uri:
            logger.warning("authorization_code_rejected", reason="redirect_mismatch")
            raise RedirectMismatch("redirect_uri does not match")
        try:
            claimed = await self.store.mark_used(CODE_NAMESPACE, code)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if not claimed:
            # Lost the race against a concurrent redemption
            logger.warning("authorization_code_rejected", reason="already_used")
            raise CodeAlreadyUsed("authorization code already used")
        logger.info(
            "authorization_code_redeemed",
            client_id=auth_code.client_id,
            subject_id=auth_code.subject_id,
        )
        return auth_code.subject_id

    async def sweep(self) -> int:
        """Purge expired codes and access tokens from the backing store."""
        try:
            purged = await self.store.purge_expired()
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if purged:
            logger.debug("token_store_swept", purged=purged)
        return purged
