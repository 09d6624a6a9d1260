"""Read-side helpers over the batch store. No locks are taken."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from ...extensions import db
from ...models import Batch, Event, EventType, Status
from ..errors import NotFoundError
from ..vocabulary import EVT_RETURNED
from ._core import get_batch_or_404
from ._validation import normalize_quantity


def get_batch(batch_id: Any) -> Batch:
    return get_batch_or_404(batch_id)


def get_batch_by_code(batch_code: str) -> Batch:
    code = (batch_code or "").strip()
    batch = db.session.execute(select(Batch).where(Batch.batch_code == code)).scalar_one_or_none()
    if batch is None:
        raise NotFoundError(f"Batch {code or batch_code!r} not found", batch_code=code)
    return batch


def list_batches(
    *,
    custodian_id: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
    exclude_custodian: Optional[str] = None,
    available_only: bool = False,
) -> List[Batch]:
    """Listing used by marketplace and inventory screens, newest first."""
    stmt = select(Batch).join(Status, Batch.status_id == Status.id)
    if custodian_id is not None:
        stmt = stmt.where(Batch.custodian_id == str(custodian_id))
    if exclude_custodian is not None:
        stmt = stmt.where(Batch.custodian_id != str(exclude_custodian))
    if statuses:
        stmt = stmt.where(Status.name.in_(list(statuses)))
    if available_only:
        stmt = stmt.where(Batch.remaining_quantity > 0)
    stmt = stmt.order_by(Batch.created_at.desc(), Batch.id.desc())
    return list(db.session.execute(stmt).scalars())


def _restored_from(child: Batch) -> float:
    stmt = (
        select(Event)
        .join(EventType, Event.event_type_id == EventType.id)
        .where(Event.batch_id == child.id, EventType.name == EVT_RETURNED)
    )
    total = 0.0
    for event in db.session.execute(stmt).scalars():
        details = event.details or {}
        # Only child-to-parent returns carry restored_quantity; ownership reverts move nothing.
        total += float(details.get("restored_quantity") or 0.0)
    return total


def conservation_report(batch_id: Any) -> Dict[str, Any]:
    """
    Account for a batch's initial quantity.

    ``initial == remaining + sum(child.initial - returned_from_child)
    + returned_to_parent`` must hold for every batch; ``balanced`` says
    whether it does.
    """
    batch = get_batch_or_404(batch_id)
    children = list(db.session.execute(select(Batch).where(Batch.parent_batch_id == batch.id)).scalars())
    drawn = 0.0
    returned = 0.0
    for child in children:
        drawn += child.initial_quantity
        returned += _restored_from(child)
    handed_back = _restored_from(batch)
    accounted = normalize_quantity(batch.remaining_quantity + drawn - returned + handed_back)
    return {
        "batch_code": batch.batch_code,
        "initial_quantity": batch.initial_quantity,
        "remaining_quantity": batch.remaining_quantity,
        "drawn_by_children": normalize_quantity(drawn),
        "returned_by_children": normalize_quantity(returned),
        "returned_to_parent": normalize_quantity(handed_back),
        "accounted_quantity": accounted,
        "balanced": abs(accounted - batch.initial_quantity) < 1e-6,
    }
