from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached or a call exceeds its timeout."""

    def __init__(self, store: str, message: str = "store unavailable"):
        super().__init__(f"{store}: {message}")
        self.store = store
        self.message = message


__all__ = ["ConstraintViolation", "StoreUnavailable"]
