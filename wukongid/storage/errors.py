from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or ownership constraint of a store is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when a backing store cannot be reached.

    Callers on the authentication path treat this as "unauthenticated".
    """

    def __init__(self, backend: str, error: Optional[BaseException] = None):
        message = f"{backend} store unavailable"
        if error is not None:
            message = f"{message}: {error}"
        super().__init__(message)
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "StorageUnavailable"]
