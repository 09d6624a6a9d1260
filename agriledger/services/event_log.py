"""Event log service.

Synopsis:
Appends events to a batch's log (optionally moving the batch's status in the
same unit), attaches proof to recorded events and answers per-batch and
per-actor queries. Events themselves are never updated or deleted.

Glossary:
- Proof: an attachment (file) or sensor reading hanging off an event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..extensions import db
from ..models import Event, EventAttachment, SensorReading
from .audit_sink import AUDIT_EVENT_RECORDED
from .errors import NotFoundError, ValidationError
from .ledger._core import append_event, set_status
from .ledger._locking import lock_batch
from .ledger._unit import LedgerUnit
from .ledger._validation import require_custody, require_party, require_text

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventResult:
    event: Event
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event.to_dict(), "warnings": list(self.warnings)}


# --- Record event ---
# Purpose: Append one event, with an optional status change under the batch lock.
def record_event(
    batch_id: Any,
    event_type: str,
    actor_id: Any,
    *,
    location_coords: Optional[str] = None,
    status: Optional[str] = None,
    blockchain_tx_hash: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    custodian_role: Optional[str] = None,
    require_holder: bool = False,
) -> EventResult:
    """
    Log ``event_type`` against a batch.

    ``custodian_role`` overrides the role snapshot (defaults to the batch's
    current custodian role). With ``require_holder`` the actor must be the
    current custodian.
    """
    actor = require_party(actor_id, "actor_id")
    kind = require_text(event_type, "event_type")

    with LedgerUnit("record_event") as unit_of_work:
        batch = lock_batch(batch_id)
        if require_holder:
            require_custody(batch, actor)
        if status is not None:
            set_status(batch, status)

        kwargs = {} if custodian_role is None else {"custodian_role": custodian_role}
        event = append_event(
            batch,
            kind,
            actor,
            details=details,
            location_coords=location_coords,
            blockchain_tx_hash=blockchain_tx_hash,
            **kwargs,
        )
        db.session.flush()
        unit_of_work.notify(
            AUDIT_EVENT_RECORDED,
            batch.batch_code,
            actor,
            batch.custodian_id,
            event_id=event.id,
            event_type=kind,
            status=status,
            location=location_coords,
        )

    logger.info("Event %s recorded on batch %s", kind, batch.batch_code)
    return EventResult(event=event, warnings=list(unit_of_work.warnings))


def _get_event(event_id: Any) -> Event:
    try:
        key = int(event_id)
    except (TypeError, ValueError):
        raise ValidationError("event_id must be an integer", event_id=event_id)
    event = db.session.get(Event, key)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found", event_id=key)
    return event


def add_attachment(
    event_id: Any,
    file_url: str,
    file_type: Optional[str] = None,
    description: Optional[str] = None,
) -> EventAttachment:
    url = require_text(file_url, "file_url")
    with LedgerUnit("add_attachment"):
        event = _get_event(event_id)
        attachment = EventAttachment(
            event_id=event.id,
            file_url=url,
            file_type=file_type,
            description=description,
        )
        db.session.add(attachment)
    return attachment


def add_sensor_reading(event_id: Any, device_id: str, raw_data: Dict[str, Any]) -> SensorReading:
    device = require_text(device_id, "device_id")
    if not isinstance(raw_data, dict):
        raise ValidationError("raw_data must be an object", field="raw_data")
    with LedgerUnit("add_sensor_reading"):
        event = _get_event(event_id)
        reading = SensorReading(event_id=event.id, device_id=device, raw_data=raw_data)
        db.session.add(reading)
    return reading


def events_for_batch(batch_id: Any) -> List[Event]:
    """Events recorded directly on one batch, oldest first."""
    stmt = (
        select(Event)
        .where(Event.batch_id == int(batch_id))
        .order_by(Event.recorded_at.asc(), Event.id.asc())
    )
    return list(db.session.execute(stmt).scalars())


def events_by_actor(actor_id: Any, limit: Optional[int] = None) -> List[Event]:
    """Events an actor performed, newest first."""
    stmt = (
        select(Event)
        .where(Event.actor_id == str(actor_id))
        .order_by(Event.recorded_at.desc(), Event.id.desc())
    )
    if limit:
        stmt = stmt.limit(int(limit))
    return list(db.session.execute(stmt).scalars())
