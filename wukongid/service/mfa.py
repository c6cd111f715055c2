from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol
from urllib.parse import quote

from wukongid.logging import get_logger
from wukongid.service.audit import AuditLog
from wukongid.service.broker import TokenStore
from wukongid.service.errors import StoreUnavailable, ValidationError
from wukongid.storage.errors import StorageUnavailable
from wukongid.storage.models import MfaSettings, utcnow

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BACKUP_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")
MIN_SECRET_BYTES = 20
ENROLLMENT_NAMESPACE = "mfa_stage"

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_WINDOW = 2

MSG_NOT_ENABLED = "MFA not enabled for this user"
MSG_NO_SECRET = "TOTP secret not configured"
MSG_TOTP_OK = "MFA verification successful"
MSG_BACKUP_OK = "MFA verification successful (backup code)"
MSG_INVALID = "Invalid MFA token"


class MfaStore(Protocol):
    def get_mfa_settings(self, subject_id: str) -> Optional[MfaSettings]: ...

    def save_mfa_settings(self, settings: MfaSettings) -> MfaSettings: ...

    def consume_backup_code(self, subject_id: str, code: str) -> Optional[int]: ...


@dataclass
class MfaEnrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class MfaVerification:
    success: bool
    message: str
    method: Optional[str] = None


@dataclass
class MfaStatus:
    enabled: bool
    backup_codes_remaining: int = 0
    backup_codes_generated: bool = False


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().upper()


def decode_secret(secret: str) -> Optional[bytes]:
    """Decode an unpadded base32 TOTP secret; None if it is not base32."""
    padded = (secret or "").upper() + "=" * (-len(secret or "") % 8)
    try:
        return base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        return None


def validate_enrollment(secret: str, backup_codes: List[str]) -> List[str]:
    """Check an enrollment before it is persisted; returns the normalized codes.

    The secret must carry at least 160 bits and every backup code must look
    like one ``generate_backup_codes`` produces.
    """
    if not secret:
        raise ValidationError(MSG_NO_SECRET)
    key = decode_secret(secret)
    if key is None or len(key) < MIN_SECRET_BYTES:
        raise ValidationError(
            "TOTP secret must be base32 and at least 160 bits",
            detail={"field": "secret"},
        )
    codes = [normalize_backup_code(c) for c in backup_codes]
    if (
        not codes
        or len(codes) > BACKUP_CODE_COUNT
        or len(set(codes)) != len(codes)
        or not all(_BACKUP_CODE_PATTERN.match(c) for c in codes)
    ):
        raise ValidationError(
            f"expected 1-{BACKUP_CODE_COUNT} distinct backup codes of "
            f"{BACKUP_CODE_LENGTH} letters or digits",
            detail={"field": "backup_codes"},
        )
    return codes


class EnrollmentStaging:
    """Keeps a begun enrollment server-side until the user confirms it.

    Confirmation only ever persists the secret and backup codes generated
    here, never values supplied by the client.
    """

    def __init__(self, store: TokenStore, *, ttl_seconds: int = 600) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def stage(self, subject_id: str, enrollment: MfaEnrollment) -> None:
        expires_at = utcnow() + timedelta(seconds=self.ttl_seconds)
        record = {
            "secret": enrollment.secret,
            "provisioning_uri": enrollment.provisioning_uri,
            "backup_codes": list(enrollment.backup_codes),
            "expires_at": expires_at.isoformat(),
        }
        try:
            await self.store.put(ENROLLMENT_NAMESPACE, subject_id, record, expires_at)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc

    async def load(self, subject_id: str) -> Optional[MfaEnrollment]:
        try:
            record = await self.store.get(ENROLLMENT_NAMESPACE, subject_id)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc
        if record is None:
            return None
        if utcnow() >= datetime.fromisoformat(record["expires_at"]):
            logger.info("mfa_enrollment_expired", subject_id=subject_id)
            return None
        return MfaEnrollment(
            secret=record["secret"],
            provisioning_uri=record["provisioning_uri"],
            backup_codes=list(record["backup_codes"]),
        )

    async def discard(self, subject_id: str) -> None:
        try:
            await self.store.delete(ENROLLMENT_NAMESPACE, subject_id)
        except StorageUnavailable as exc:
            raise StoreUnavailable(exc.message) from exc


class MfaService:
    """TOTP second factor with a pool of single-use backup codes."""

    def __init__(
        self,
        store: MfaStore,
        audit: AuditLog,
        *,
        issuer: str = "Wukong Dashboard",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.audit = audit
        self.issuer = issuer
        self._clock = clock

    # enrollment
    def begin_enrollment(self, subject_id: str, label: str) -> MfaEnrollment:
        """Stage a new secret and backup codes; nothing is persisted yet."""
        secret = base64.b32encode(os.urandom(20)).decode().rstrip("=")
        logger.info("mfa_enrollment_started", subject_id=subject_id)
        return MfaEnrollment(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, label),
            backup_codes=self.generate_backup_codes(),
        )

    def provisioning_uri(self, secret: str, label: str) -> str:
        issuer = quote(self.issuer, safe="")
        account = quote(label or "", safe="@.")
        return (
            f"otpauth://totp/{issuer}:{account}"
            f"?secret={secret}&issuer={issuer}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )

    @staticmethod
    def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
        return [
            "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(count)
        ]

    def confirm_enrollment(
        self,
        subject_id: str,
        secret: str,
        backup_codes: List[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaSettings:
        codes = validate_enrollment(secret, backup_codes)
        saved = self.store.save_mfa_settings(
            MfaSettings(
                subject_id=subject_id,
                totp_secret=secret,
                totp_enabled=True,
                backup_codes=codes,
                backup_codes_generated=True,
            )
        )
        self.audit.record(
            "mfa_enabled",
            "Multi-factor authentication enabled",
            subject_id=subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return saved

    def disable(
        self,
        subject_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.store.save_mfa_settings(
            MfaSettings(
                subject_id=subject_id,
                totp_secret=None,
                totp_enabled=False,
                backup_codes=[],
                backup_codes_generated=False,
            )
        )
        self.audit.record(
            "mfa_disabled",
            "Multi-factor authentication disabled",
            subject_id=subject_id,
            severity="warning",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # verification
    def verify(
        self,
        subject_id: str,
        presented_code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaVerification:
        settings = self.store.get_mfa_settings(subject_id)
        if not settings or not settings.totp_enabled:
            return MfaVerification(success=False, message=MSG_NOT_ENABLED)
        if not settings.totp_secret:
            return MfaVerification(success=False, message=MSG_NO_SECRET)

        candidate = (presented_code or "").strip()
        if candidate and self.verify_totp(settings.totp_secret, candidate):
            logger.info("mfa_verified", subject_id=subject_id, method="totp")
            return MfaVerification(success=True, message=MSG_TOTP_OK, method="totp")

        backup = normalize_backup_code(candidate)
        remaining = self.store.consume_backup_code(subject_id, backup) if backup else None
        if remaining is not None:
            self.audit.record(
                "mfa_backup_code_used",
                f"Backup code used ({remaining} remaining)",
                subject_id=subject_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"remaining": remaining},
            )
            return MfaVerification(success=True, message=MSG_BACKUP_OK, method="backup_code")

        self.audit.record(
            "mfa_verification_failed",
            "Failed MFA verification attempt",
            subject_id=subject_id,
            severity="warning",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return MfaVerification(success=False, message=MSG_INVALID)

    def regenerate_backup_codes(
        self,
        subject_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        settings = self.store.get_mfa_settings(subject_id)
        if not settings or not settings.totp_enabled:
            raise ValidationError(MSG_NOT_ENABLED)
        codes = self.generate_backup_codes()
        settings.backup_codes = codes
        settings.backup_codes_generated = True
        self.store.save_mfa_settings(settings)
        self.audit.record(
            "mfa_backup_codes_regenerated",
            "Backup codes regenerated",
            subject_id=subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return codes

    def backup_codes_count(self, subject_id: str) -> int:
        settings = self.store.get_mfa_settings(subject_id)
        if not settings:
            return 0
        return len(settings.backup_codes)

    def status(self, subject_id: str) -> MfaStatus:
        settings = self.store.get_mfa_settings(subject_id)
        if not settings:
            return MfaStatus(enabled=False)
        return MfaStatus(
            enabled=settings.totp_enabled,
            backup_codes_remaining=len(settings.backup_codes),
            backup_codes_generated=settings.backup_codes_generated,
        )

    def is_enabled(self, subject_id: str) -> bool:
        return self.status(subject_id).enabled

    # totp
    def verify_totp(
        self, secret: str, code: str, *, window: int = TOTP_WINDOW, interval: int = TOTP_INTERVAL
    ) -> bool:
        if not code.isdigit() or len(code) != TOTP_DIGITS:
            return False
        now = self._clock()
        for offset in range(-window, window + 1):
            generated = self.generate_totp(secret, now + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def generate_totp(
        self, secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
    ) -> str:
        key = decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)
