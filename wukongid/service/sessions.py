from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from wukongid.logging import get_logger
from wukongid.service.audit import AuditLog
from wukongid.service.errors import ForbiddenError, SessionNotFound
from wukongid.storage.errors import StorageUnavailable
from wukongid.storage.models import DeviceSession, utcnow

logger = get_logger(__name__)


class DeviceSessionStore(Protocol):
    def create_device_session(self, session: DeviceSession) -> DeviceSession: ...

    def get_device_session(self, session_id: str) -> Optional[DeviceSession]: ...

    def get_device_session_by_hash(self, token_hash: str) -> Optional[DeviceSession]: ...

    def list_device_sessions(self, subject_id: str) -> List[DeviceSession]: ...

    def deactivate_device_session(self, session_id: str) -> bool: ...

    def deactivate_subject_sessions(self, subject_id: str) -> int: ...

    def touch_device_session(self, session_id: str, at: Optional[datetime] = None) -> None: ...

    def set_device_session_expiry(self, session_id: str, expires_at: datetime) -> bool: ...

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class DeviceMeta:
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


def hash_session_token(raw_session_id: str) -> str:
    return hashlib.sha256(raw_session_id.encode()).hexdigest()


def _browser(user_agent: str) -> Optional[str]:
    # Edge and Chrome both advertise "Chrome"; Chrome and Safari both "Safari"
    if "Edg" in user_agent:
        return "Edge"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return None


def _os(user_agent: str) -> Optional[str]:
    if "Windows" in user_agent:
        return "Windows"
    # Mobile platforms first: iOS agents mention "Mac OS X", Android ones "Linux"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Android" in user_agent:
        return "Android"
    if "Mac" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return None


def parse_user_agent(user_agent: Optional[str]) -> str:
    """Short browser name for display, or "Unknown Browser"."""
    return _browser(user_agent or "") or "Unknown Browser"


def device_info(user_agent: Optional[str]) -> Dict[str, str]:
    ua = user_agent or ""
    return {"browser": _browser(ua) or "Unknown", "os": _os(ua) or "Unknown"}


def describe_device(user_agent: Optional[str]) -> str:
    info = device_info(user_agent)
    if info["os"] == "Unknown":
        return parse_user_agent(user_agent)
    return f"{parse_user_agent(user_agent)} on {info['os']}"


class SessionManager:
    """Tracks per-device sessions and their revocation.

    The raw session id is returned once, at creation; only its SHA-256
    hash is stored. Records are never deleted, only deactivated.
    """

    def __init__(
        self, store: DeviceSessionStore, audit: AuditLog, *, default_ttl_days: int = 30
    ) -> None:
        self.store = store
        self.audit = audit
        self.default_ttl_days = default_ttl_days

    def create_device_session(
        self,
        subject_id: str,
        meta: Optional[DeviceMeta] = None,
        *,
        expires_in_days: Optional[int] = None,
    ) -> str:
        meta = meta or DeviceMeta()
        raw_session_id = os.urandom(32).hex()
        session = DeviceSession.new(
            subject_id,
            hash_session_token(raw_session_id),
            ttl_days=expires_in_days or self.default_ttl_days,
            device_name=meta.device_name or describe_device(meta.user_agent),
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        self.store.create_device_session(session)
        self.audit.record(
            "session_created",
            f"New session created from {meta.ip_address or 'unknown'}",
            subject_id=subject_id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata={"session_id": session.id, "device_name": session.device_name},
        )
        return raw_session_id

    def lookup(self, raw_session_id: Optional[str]) -> Optional[DeviceSession]:
        if not raw_session_id:
            return None
        return self.store.get_device_session_by_hash(hash_session_token(raw_session_id))

    def list_sessions(self, subject_id: str) -> List[DeviceSession]:
        return self.store.list_device_sessions(subject_id)

    def revoke(
        self,
        session_id: str,
        acting_subject_id: str,
        *,
        is_admin: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        session = self.store.get_device_session(session_id)
        if session is None:
            raise SessionNotFound("session not found", detail={"session_id": session_id})
        if session.subject_id != acting_subject_id and not is_admin:
            logger.warning(
                "session_revoke_forbidden",
                session_id=session_id,
                acting_subject_id=acting_subject_id,
            )
            raise ForbiddenError("cannot revoke another user's session")
        self.store.deactivate_device_session(session_id)
        self.audit.record(
            "session_revoked",
            "Session revoked",
            subject_id=session.subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": session_id, "revoked_by": acting_subject_id},
        )

    def revoke_current(
        self,
        raw_session_id: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Deactivate the session behind a raw id; used on logout."""
        session = self.lookup(raw_session_id)
        if session is None or not session.is_active:
            return False
        self.store.deactivate_device_session(session.id)
        self.audit.record(
            "session_revoked",
            "Session revoked",
            subject_id=session.subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": session.id, "reason": "logout"},
        )
        return True

    def revoke_all(
        self,
        subject_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = self.store.deactivate_subject_sessions(subject_id)
        self.audit.record(
            "all_sessions_revoked",
            "All sessions revoked (remote logout)",
            subject_id=subject_id,
            severity="warning",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"revoked": revoked},
        )
        return revoked

    def is_live(self, raw_session_id: Optional[str]) -> bool:
        try:
            session = self.lookup(raw_session_id)
        except StorageUnavailable as exc:
            logger.error("device_session_lookup_failed", error=str(exc))
            return False
        return bool(session and session.is_live())

    def touch(self, raw_session_id: Optional[str]) -> None:
        session = self.lookup(raw_session_id)
        if session is not None:
            self.store.touch_device_session(session.id)

    @staticmethod
    def expiry_seconds(session: DeviceSession, now: Optional[datetime] = None) -> int:
        remaining = (session.expires_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining))

    def extend(self, raw_session_id: str, additional_days: int = 7) -> bool:
        session = self.lookup(raw_session_id)
        if session is None or not session.is_active:
            return False
        return self.store.set_device_session_expiry(
            session.id, session.expires_at + timedelta(days=additional_days)
        )

    def cleanup_expired(self) -> int:
        cleaned = self.store.deactivate_expired_sessions()
        if cleaned:
            logger.info("device_sessions_expired", count=cleaned)
        return cleaned
