from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by storage adapters."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class RecordNotFound(StorageError):
    """Raised when a targeted delete or update matched no row."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
