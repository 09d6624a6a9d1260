"""Ledger primitives. Callers must already hold the row locks."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ...extensions import db
from ...models import Batch, Event
from ...utils.codes import generate_child_code
from ..catalog_service import find_or_create_status, get_event_type
from ..errors import NotFoundError, ValidationError
from ..vocabulary import SOLD
from ._state import TERMINAL_STATUSES, can_transition, ensure_child_status, ensure_transition
from ._validation import normalize_quantity, require_available

logger = logging.getLogger(__name__)

_SAME_ROLE = object()


def get_batch_or_404(batch_id: Any) -> Batch:
    try:
        key = int(batch_id)
    except (TypeError, ValueError):
        raise ValidationError("batch_id must be an integer", batch_id=batch_id)
    batch = db.session.get(Batch, key)
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found", batch_id=key)
    return batch


def set_status(batch: Batch, status_name: str) -> None:
    ensure_transition(batch.batch_code, batch.status_name, status_name)
    batch.status = find_or_create_status(status_name)


def force_status(batch: Batch, status_name: str) -> None:
    """Assign without consulting the transition table (reversal/revival paths check their own rules)."""
    batch.status = find_or_create_status(status_name)


def ensure_drawable(batch: Batch) -> None:
    if batch.status_name in TERMINAL_STATUSES:
        raise ValidationError(
            f"Batch {batch.batch_code} is '{batch.status_name}' and cannot be drawn from",
            batch_code=batch.batch_code,
            status=batch.status_name,
        )


def mark_sold_if_exhausted(batch: Batch) -> bool:
    if batch.remaining_quantity > 0 or not can_transition(batch.status_name, SOLD):
        return False
    batch.status = find_or_create_status(SOLD)
    logger.debug("Batch %s exhausted; marked Sold", batch.batch_code)
    return True


# --- Draw child ---
# Purpose: Move quantity from a locked source into a brand new child batch.
def draw_child(
    source: Batch,
    quantity: float,
    *,
    custodian_id: str,
    status: str,
    custodian_role: Optional[str] = None,
    kind: str = "split",
    index: Optional[int] = None,
) -> Batch:
    require_available(source, quantity)
    ensure_drawable(source)
    ensure_child_status(status)

    source.remaining_quantity = max(0.0, normalize_quantity(source.remaining_quantity - quantity))
    child = Batch(
        batch_code=generate_child_code(source.batch_code, kind, index=index),
        product_id=source.product_id,
        parent=source,
        custodian_id=custodian_id,
        custodian_role=custodian_role,
        status=find_or_create_status(status),
        initial_quantity=quantity,
        remaining_quantity=quantity,
        quantity_unit=source.quantity_unit,
        origin_date=source.origin_date,
    )
    db.session.add(child)
    return child


# --- Append event ---
# Purpose: Record an immutable event against a batch inside the current unit.
def append_event(
    batch: Batch,
    event_type: str,
    actor_id: Any,
    *,
    details: Optional[Dict[str, Any]] = None,
    location_coords: Optional[str] = None,
    blockchain_tx_hash: Optional[str] = None,
    custodian_role: Any = _SAME_ROLE,
) -> Event:
    event = Event(
        event_type=get_event_type(event_type),
        batch=batch,
        actor_id=str(actor_id),
        custodian_role=batch.custodian_role if custodian_role is _SAME_ROLE else custodian_role,
        location_coords=location_coords,
        blockchain_tx_hash=blockchain_tx_hash,
        details=details or None,
    )
    db.session.add(event)
    return event
