from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Raised when the key-value store rejects or fails an operation."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class StoreUnavailableError(StoreError):
    """The store could not be reached, or is in its fail-fast disconnected state."""


__all__ = ["StoreError", "StoreUnavailableError"]
