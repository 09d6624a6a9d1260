"""Ledger error taxonomy.

Every failure a caller can see carries a stable ``kind`` and a human-readable
message. Raw driver/storage errors never escape: they are logged and wrapped
in :class:`StorageError` or :class:`ContentionError`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(RuntimeError):
    kind = "ledger_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class ValidationError(LedgerError):
    kind = "validation_error"


class InsufficientQuantityError(LedgerError):
    kind = "insufficient_quantity"
    http_status = 409

    def __init__(
        self,
        batch_code: str,
        *,
        requested: float,
        available: float,
        batch_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"Not enough quantity in batch {batch_code}. Have: {available:g}, Need: {requested:g}",
            batch_id=batch_id,
            batch_code=batch_code,
            requested=requested,
            available=available,
        )
        self.batch_id = batch_id
        self.batch_code = batch_code
        self.requested = requested
        self.available = available


class NotFoundError(LedgerError):
    kind = "not_found"
    http_status = 404


class OwnershipError(LedgerError):
    kind = "ownership_error"
    http_status = 403


class NotReversibleError(LedgerError):
    kind = "not_reversible"
    http_status = 409


class AlreadyReturnedError(NotReversibleError):
    kind = "already_returned"


class ContentionError(LedgerError):
    kind = "contention"
    http_status = 503
    retryable = True


class StorageError(LedgerError):
    kind = "storage_error"
    http_status = 500

    def __init__(self, operation: str) -> None:
        super().__init__(f"The ledger could not complete '{operation}'. Please try again later.", operation=operation)
