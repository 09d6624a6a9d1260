"""Row locking and storage-error translation for ledger units."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from flask import current_app
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from ...extensions import db
from ...models import Batch
from ..errors import ContentionError, LedgerError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

# PostgreSQL: lock_not_available, deadlock_detected
_CONTENTION_PGCODES = {"55P03", "40P01"}
_CONTENTION_MESSAGES = ("database is locked", "lock timeout", "could not obtain lock", "deadlock")


def _lock_timeout_seconds() -> float:
    return float(current_app.config.get("LEDGER_LOCK_TIMEOUT_SECONDS", 5.0))


def is_contention_error(exc: BaseException) -> bool:
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in _CONTENTION_PGCODES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(fragment in message for fragment in _CONTENTION_MESSAGES)


def translate_storage_error(exc: SQLAlchemyError, operation: str) -> LedgerError:
    """Map a raw SQLAlchemy error to the caller-facing taxonomy."""
    if is_contention_error(exc):
        logger.warning("Lock wait exceeded during %s: %s", operation, exc)
        return ContentionError(
            f"Another operation is holding the batches needed for '{operation}'. Please retry.",
            operation=operation,
        )
    logger.error("Storage failure during %s", operation, exc_info=exc)
    return StorageError(operation)


def _apply_lock_timeout() -> None:
    bind = db.session.get_bind()
    if bind.dialect.name != "postgresql":
        # SQLite serialises writers with BEGIN IMMEDIATE; the driver busy timeout bounds the wait.
        return
    timeout_ms = max(1, int(_lock_timeout_seconds() * 1000))
    db.session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


# --- Lock batches ---
# Purpose: Lock every batch a unit will read-then-write, in ascending id order.
def lock_batches(batch_ids: Iterable[int]) -> Dict[int, Batch]:
    """
    SELECT ... FOR UPDATE the given batches and return them keyed by id.

    Ids are sorted before locking so two units touching overlapping sets
    always acquire in the same order. Raises NotFoundError naming the first
    id that does not exist.
    """
    try:
        ordered: List[int] = sorted({int(batch_id) for batch_id in batch_ids})
    except (TypeError, ValueError):
        raise ValidationError("Batch ids must be integers")
    if not ordered:
        return {}

    _apply_lock_timeout()
    stmt = (
        select(Batch)
        .where(Batch.id.in_(ordered))
        .order_by(Batch.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    rows = db.session.execute(stmt).scalars().all()
    locked = {row.id: row for row in rows}

    for batch_id in ordered:
        if batch_id not in locked:
            raise NotFoundError(f"Batch {batch_id} not found", batch_id=batch_id)
    return locked


def lock_batch(batch_id: int) -> Batch:
    return lock_batches([batch_id])[int(batch_id)]
