from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the shared counter/flag store cannot complete an operation.

    Wraps driver errors and timeouts so callers see a single failure type.
    """

    def __init__(self, operation: str, error: Optional[BaseException] = None):
        message = f"cache operation '{operation}' failed"
        if error is not None:
            message = f"{message}: {type(error).__name__}"
        super().__init__(message)
        self.operation = operation
        self.error = error


__all__ = ["ConstraintViolation", "StoreUnavailable"]
