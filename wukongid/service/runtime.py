from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from wukongid.config import get_settings, reset_settings_cache
from wukongid.logging import get_logger
from wukongid.service.audit import AuditLog
from wukongid.service.broker import AuthorizationBroker
from wukongid.service.identity import IdentityService
from wukongid.service.issuer import TokenIssuer
from wukongid.service.mfa import EnrollmentStaging, MfaService
from wukongid.service.sessions import SessionManager
from wukongid.storage.memory import MemoryStore, MemoryTokenStore
from wukongid.storage.redis_cache import RedisTokenStore, SyncRedisTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            auth_mode=self.settings.auth_mode.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.token_store: Union[MemoryTokenStore, RedisTokenStore, SyncRedisTokenStore] = (
            self._build_token_store()
        )

        self.audit = AuditLog(self.store)
        self.broker = AuthorizationBroker(
            self.token_store, code_ttl_seconds=self.settings.auth_code_ttl_seconds
        )
        self.identities = IdentityService(
            self.store, owner_external_id=self.settings.owner_open_id
        )
        self.issuer = TokenIssuer(self.broker, self.token_store, self.store, self.settings)
        self.mfa = MfaService(self.store, self.audit, issuer=self.settings.mfa_issuer)
        self.mfa_staging = EnrollmentStaging(
            self.token_store, ttl_seconds=self.settings.mfa_enrollment_ttl_seconds
        )
        self.sessions = SessionManager(
            self.store, self.audit, default_ttl_days=self.settings.device_session_ttl_days
        )

        logger.info(
            "runtime_initialized",
            token_store=type(self.token_store).__name__,
            client_id=self.settings.client_id,
            issuer=self.settings.issuer,
        )

    def _build_token_store(self):
        if not self.settings.use_redis_token_store:
            return MemoryTokenStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    store = SyncRedisTokenStore(self.settings.redis_url)
                else:
                    store = RedisTokenStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required when USE_REDIS_TOKEN_STORE is set; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a process-local store."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; authorization codes and "
                "access tokens are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryTokenStore()

    async def sweep_expired(self) -> int:
        """Purge expired codes and tokens, then expire and flush device sessions.

        Failures are logged; the sweep never raises.
        """
        purged = 0
        try:
            purged += await self.broker.sweep()
        except Exception as exc:
            logger.error("token_sweep_failed", error=str(exc))
        try:
            purged += self.sessions.cleanup_expired()
        except Exception as exc:
            logger.error("device_session_sweep_failed", error=str(exc))
        try:
            self.store.flush()
        except Exception as exc:
            logger.error("store_flush_failed", error=str(exc))
        return purged


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.token_store, SyncRedisTokenStore):
            runtime.token_store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
