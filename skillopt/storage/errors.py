from __future__ import annotations

from typing import Any, Dict, Optional

# SQLSTATE raised by the stored procedures when the target row does not exist
NO_DATA_FOUND = "P0002"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleWriteError(ConstraintViolation):
    """The row changed after it was read, so the conditional write was not applied."""


class RpcError(Exception):
    """The remote store rejected a call (non-2xx response)."""

    def __init__(
        self,
        operation: str,
        status_code: int,
        body: str = "",
        *,
        code: Optional[str] = None,
    ):
        super().__init__(f"{operation} failed: {status_code} {body}".strip())
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.code = code

    @property
    def is_not_found(self) -> bool:
        return self.code == NO_DATA_FOUND


class RpcResponseError(Exception):
    """The remote store answered with a payload of the wrong shape."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"failed to parse output of {operation}: {reason}")
        self.operation = operation
        self.reason = reason


__all__ = [
    "ConstraintViolation",
    "NO_DATA_FOUND",
    "RpcError",
    "RpcResponseError",
    "StaleWriteError",
]
