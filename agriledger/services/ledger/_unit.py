"""All-or-nothing ledger unit with post-commit audit hand-off."""

from __future__ import annotations

import logging
from contextvars import Token
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...extensions import claim_write_intent, db, release_write_intent, wants_write_lock
from ..audit_sink import AuditNotice, get_audit_sink
from ..errors import LedgerError, ValidationError
from ._locking import translate_storage_error

logger = logging.getLogger(__name__)


class LedgerUnit:
    """
    Wraps one ledger operation in a single transaction.

    On a clean exit the session is committed and only then are the collected
    audit notices handed to the sink; sink problems end up in ``warnings``.
    Any exception rolls the whole unit back. Storage errors come out as
    ContentionError or StorageError, model guards as ValidationError.

    On SQLite the unit's transaction begins as a writer. A deferred read
    transaction still open on the session is ended first, since it cannot
    be upgraded to a writer without risking a lock deadlock.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.notices: List[AuditNotice] = []
        self.warnings: List[str] = []
        self._intent: Optional[Token] = None

    def notify(
        self,
        kind: str,
        batch_code: str,
        actor_id: Any,
        counterparty_id: Optional[Any] = None,
        **metadata: Any,
    ) -> None:
        self.notices.append(
            AuditNotice(
                kind=kind,
                batch_code=batch_code,
                actor_id=str(actor_id),
                counterparty_id=str(counterparty_id) if counterparty_id is not None else None,
                metadata=metadata,
            )
        )

    def __enter__(self) -> "LedgerUnit":
        if not wants_write_lock() and db.session().in_transaction() and _is_sqlite():
            try:
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise translate_storage_error(exc, self.operation) from exc
        self._intent = claim_write_intent()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            return self._finish(exc_type, exc)
        finally:
            if self._intent is not None:
                release_write_intent(self._intent)
                self._intent = None

    def _finish(self, exc_type, exc) -> bool:
        if exc_type is None:
            try:
                db.session.commit()
            except SQLAlchemyError as commit_exc:
                db.session.rollback()
                raise translate_storage_error(commit_exc, self.operation) from commit_exc
            self._dispatch()
            return False

        db.session.rollback()
        if isinstance(exc, LedgerError):
            logger.info("%s rejected: %s", self.operation, exc.message)
            return False
        if isinstance(exc, SQLAlchemyError):
            raise translate_storage_error(exc, self.operation) from exc
        if isinstance(exc, ValueError):
            raise ValidationError(str(exc)) from exc
        return False

    def _dispatch(self) -> None:
        if not self.notices:
            return
        sink = get_audit_sink()
        for notice in self.notices:
            try:
                warning = sink.submit(notice)
            except Exception:
                logger.exception("Audit hand-off failed for %s on %s", notice.kind, notice.batch_code)
                warning = f"Audit hand-off failed for {notice.kind} on {notice.batch_code}"
            if warning:
                self.warnings.append(warning)


def _is_sqlite() -> bool:
    return db.session.get_bind().dialect.name == "sqlite"
