from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    """A user record keyed by its stable per-provider external id."""

    id: str
    external_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    login_method: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_signed_in: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False

    @classmethod
    def new(
        cls,
        code: str,
        client_id: str,
        redirect_uri: str,
        subject_id: str,
        *,
        ttl_seconds: int,
    ) -> "AuthorizationCode":
        now = utcnow()
        return cls(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            subject_id=subject_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class AccessToken:
    token: str
    subject_id: str
    client_id: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class MfaSettings:
    subject_id: str
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    backup_codes: List[str] = field(default_factory=list)
    backup_codes_generated: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DeviceSession:
    id: str
    subject_id: str
    session_token_hash: str
    expires_at: datetime
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    is_active: bool = True

    @classmethod
    def new(
        cls,
        subject_id: str,
        session_token_hash: str,
        *,
        ttl_days: int = 30,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "DeviceSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            session_token_hash=session_token_hash,
            expires_at=now + timedelta(days=ttl_days),
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_activity_at=now,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and (now or utcnow()) < self.expires_at


@dataclass
class AuditEvent:
    event_type: str
    description: str
    severity: str = "info"
    subject_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
