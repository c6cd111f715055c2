from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from wukongid.logging import get_logger
from wukongid.storage.errors import ConstraintViolation
from wukongid.storage.models import (
    AuditEvent,
    DeviceSession,
    Identity,
    MfaSettings,
    utcnow,
)


class MemoryStore:
    """In-memory identity, MFA, device session and audit store.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    mutation so a single-instance deployment survives restarts. Activity
    timestamps are the exception: they ride along with the next write or
    an explicit ``flush()``.
    """

    def __init__(
        self, fs_root: str = "/tmp/wukongid", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.mfa_settings: Dict[str, MfaSettings] = {}
        self.device_sessions: Dict[str, DeviceSession] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so store methods may call each other while holding it
        self._data_lock = threading.RLock()
        self._unflushed_activity = False
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = ""
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # identities
    def find_by_external_id(self, external_id: str) -> Optional[Identity]:
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.external_id == external_id),
                None,
            )

    def find_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.email and i.email.lower() == normalized
                ),
                None,
            )

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            results = sorted(
                self.identities.values(), key=lambda i: i.created_at, reverse=True
            )
            return results[:limit]

    def upsert_identity(self, identity: Identity) -> Identity:
        """Insert or update by ``external_id``; the stored id never changes."""
        if not identity.external_id:
            raise ConstraintViolation("external_id is required", {"field": "external_id"})
        with self._data_lock:
            existing = self.find_by_external_id(identity.external_id)
            now = utcnow()
            if existing:
                existing.display_name = identity.display_name
                existing.email = identity.email
                existing.login_method = identity.login_method
                existing.role = identity.role
                existing.last_signed_in = identity.last_signed_in
                existing.updated_at = now
                stored = existing
            else:
                stored = replace(
                    identity,
                    id=identity.id or str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                )
                self.identities[stored.id] = stored
            self._persist_state()
            return stored

    # mfa
    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Wrong key: an undecryptable secret must never verify a code
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def get_mfa_settings(self, subject_id: str) -> Optional[MfaSettings]:
        with self._data_lock:
            record = self.mfa_settings.get(subject_id)
            if not record:
                return None
            return replace(
                record,
                totp_secret=self._decrypt_mfa_secret(record.totp_secret),
                backup_codes=list(record.backup_codes),
            )

    def save_mfa_settings(self, settings: MfaSettings) -> MfaSettings:
        if settings.totp_enabled and not settings.totp_secret:
            raise ConstraintViolation(
                "enabled MFA requires a TOTP secret", {"subject_id": settings.subject_id}
            )
        with self._data_lock:
            existing = self.mfa_settings.get(settings.subject_id)
            record = replace(
                settings,
                totp_secret=self._encrypt_mfa_secret(settings.totp_secret),
                backup_codes=list(settings.backup_codes),
                created_at=existing.created_at if existing else settings.created_at,
                updated_at=utcnow(),
            )
            self.mfa_settings[settings.subject_id] = record
            self._persist_state()
            return replace(record, totp_secret=settings.totp_secret)

    def consume_backup_code(self, subject_id: str, code: str) -> Optional[int]:
        """Remove ``code`` from the pool if present.

        Returns the number of codes left, or None when the code was not in
        the pool. Check and removal happen under one lock acquisition.
        """
        with self._data_lock:
            record = self.mfa_settings.get(subject_id)
            if not record or code not in record.backup_codes:
                return None
            record.backup_codes.remove(code)
            record.updated_at = utcnow()
            self._persist_state()
            return len(record.backup_codes)

    # device sessions
    def create_device_session(self, session: DeviceSession) -> DeviceSession:
        with self._data_lock:
            if session.id in self.device_sessions:
                raise ConstraintViolation("device session already exists", {"id": session.id})
            if any(
                s.session_token_hash == session.session_token_hash
                for s in self.device_sessions.values()
            ):
                raise ConstraintViolation(
                    "session token already registered", {"field": "session_token_hash"}
                )
            self.device_sessions[session.id] = session
            self._persist_state()
            return session

    def get_device_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._data_lock:
            return self.device_sessions.get(session_id)

    def get_device_session_by_hash(self, token_hash: str) -> Optional[DeviceSession]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.device_sessions.values()
                    if s.session_token_hash == token_hash
                ),
                None,
            )

    def list_device_sessions(self, subject_id: str) -> List[DeviceSession]:
        with self._data_lock:
            sessions = [
                s for s in self.device_sessions.values() if s.subject_id == subject_id
            ]
            return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def deactivate_device_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.device_sessions.get(session_id)
            if not sess:
                return False
            changed = sess.is_active
            sess.is_active = False
            if changed:
                self._persist_state()
            return changed

    def deactivate_subject_sessions(self, subject_id: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.device_sessions.values():
                if sess.subject_id == subject_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def touch_device_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            sess = self.device_sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = at or utcnow()
            self._unflushed_activity = True

    def flush(self) -> bool:
        """Write pending activity timestamps; returns whether anything was written."""
        with self._data_lock:
            if not self._unflushed_activity:
                return False
            self._persist_state()
            return True

    def set_device_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._data_lock:
            sess = self.device_sessions.get(session_id)
            if not sess:
                return False
            sess.expires_at = expires_at
            self._persist_state()
            return True

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            count = 0
            for sess in self.device_sessions.values():
                if sess.is_active and sess.expires_at <= current:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(
        self, subject_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.audit_events
                if subject_id is None or e.subject_id == subject_id
            ]
            return list(reversed(events))[:limit]

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _persist_state(self) -> None:
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "mfa_settings": [
                self._serialize_mfa_settings(m) for m in self.mfa_settings.values()
            ],
            "device_sessions": [
                self._serialize_device_session(s) for s in self.device_sessions.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc
        self._unflushed_activity = False

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.mfa_settings = {
            m["subject_id"]: self._deserialize_mfa_settings(m)
            for m in data.get("mfa_settings", [])
        }
        self.device_sessions = {
            s["id"]: self._deserialize_device_session(s)
            for s in data.get("device_sessions", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "external_id": identity.external_id,
            "display_name": identity.display_name,
            "email": identity.email,
            "login_method": identity.login_method,
            "role": identity.role,
            "created_at": self._serialize_datetime(identity.created_at),
            "updated_at": self._serialize_datetime(identity.updated_at),
            "last_signed_in": self._serialize_datetime(identity.last_signed_in),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=str(data["id"]),
            external_id=data["external_id"],
            display_name=data.get("display_name"),
            email=data.get("email"),
            login_method=data.get("login_method"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_signed_in=self._deserialize_datetime(data["last_signed_in"]),
        )

    def _serialize_mfa_settings(self, record: MfaSettings) -> dict:
        # totp_secret is already encrypted in memory
        return {
            "subject_id": record.subject_id,
            "totp_secret": record.totp_secret,
            "totp_enabled": record.totp_enabled,
            "backup_codes": list(record.backup_codes),
            "backup_codes_generated": record.backup_codes_generated,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_mfa_settings(self, data: dict) -> MfaSettings:
        return MfaSettings(
            subject_id=data["subject_id"],
            totp_secret=data.get("totp_secret"),
            totp_enabled=bool(data.get("totp_enabled", False)),
            backup_codes=list(data.get("backup_codes") or []),
            backup_codes_generated=bool(data.get("backup_codes_generated", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_device_session(self, session: DeviceSession) -> dict:
        return {
            "id": session.id,
            "subject_id": session.subject_id,
            "session_token_hash": session.session_token_hash,
            "device_name": session.device_name,
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "is_active": session.is_active,
        }

    def _deserialize_device_session(self, data: dict) -> DeviceSession:
        return DeviceSession(
            id=data["id"],
            subject_id=data["subject_id"],
            session_token_hash=data["session_token_hash"],
            device_name=data.get("device_name"),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_active=bool(data.get("is_active", True)),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "subject_id": event.subject_id,
            "event_type": event.event_type,
            "description": event.description,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "metadata": event.metadata,
            "severity": event.severity,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            subject_id=data.get("subject_id"),
            event_type=data["event_type"],
            description=data.get("description", ""),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata"),
            severity=data.get("severity", "info"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )


class MemoryTokenStore:
    """Process-local store for authorization codes and access tokens.

    Every operation runs inside ``_lock`` without awaiting, so a
    check-then-mark is one uninterrupted step for threads and coroutines
    alike.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], Tuple[Dict[str, Any], datetime]] = {}
        self._lock = threading.Lock()

    async def put(
        self, namespace: str, key: str, record: Dict[str, Any], expires_at: datetime
    ) -> None:
        stored = dict(record)
        stored["used"] = bool(stored.get("used", False))
        with self._lock:
            self._records[(namespace, key)] = (stored, expires_at)

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._records.get((namespace, key))
            if entry is None:
                return None
            return dict(entry[0])

    async def mark_used(self, namespace: str, key: str) -> bool:
        with self._lock:
            entry = self._records.get((namespace, key))
            if entry is None or entry[0]["used"]:
                return False
            entry[0]["used"] = True
            return True

    async def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._records.pop((namespace, key), None)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._lock:
            expired = [
                key for key, (_, expires_at) in self._records.items() if expires_at <= current
            ]
            for key in expired:
                self._records.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
