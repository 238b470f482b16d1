from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A write would break uniqueness or point at a missing user."""


__all__ = ["StorageError", "ConstraintViolation"]
