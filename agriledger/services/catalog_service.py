"""Status and event-type catalog.

Synopsis:
Idempotent find-or-create for the two small reference vocabularies. Concurrent
first use of the same name must end with exactly one row; the unique
constraint on ``name`` decides the winner and the loser re-reads it.

Glossary:
- Catalog row: a Status or EventType, identified by its unique name.
- Savepoint: nested transaction used so a losing insert does not poison the caller's unit.
"""

from __future__ import annotations

import logging
from typing import Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..extensions import db, write_intent
from ..models import EventType, Status
from .errors import NotFoundError, StorageError, ValidationError
from .vocabulary import (
    EVENT_TYPE_DESCRIPTIONS,
    LIFECYCLE_STATUSES,
    STATUS_DESCRIPTIONS,
)

logger = logging.getLogger(__name__)

CatalogModel = TypeVar("CatalogModel", Status, EventType)

_MAX_NAME_LENGTH = 100


# --- Lookup ---
# Purpose: Read a catalog row by exact name.
def _lookup(model: Type[CatalogModel], name: str) -> Optional[CatalogModel]:
    return db.session.execute(select(model).where(model.name == name)).scalar_one_or_none()


# --- Normalize ---
# Purpose: Validate and trim a catalog name.
def _normalize_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Catalog name is required")
    if len(cleaned) > _MAX_NAME_LENGTH:
        raise ValidationError(f"Catalog name is longer than {_MAX_NAME_LENGTH} characters", name=cleaned)
    return cleaned


# --- Find or create ---
# Purpose: Insert inside a savepoint and fall back to the winner's row on a unique clash.
def _find_or_create(model: Type[CatalogModel], name: str, description: str | None) -> CatalogModel:
    with write_intent():
        return _insert_unless_present(model, name, description)


def _insert_unless_present(model: Type[CatalogModel], name: str, description: str | None) -> CatalogModel:
    existing = _lookup(model, name)
    if existing is not None:
        return existing

    try:
        with db.session.begin_nested():
            row = model(name=name, description=description)
            db.session.add(row)
        logger.info("Created %s catalog entry %r", model.__tablename__, name)
        return row
    except IntegrityError:
        # Another transaction inserted the same name first.
        logger.debug("Concurrent create of %s %r; re-reading winner", model.__tablename__, name)
        winner = _lookup(model, name)
        if winner is None:
            logger.error("Unique clash on %s %r but no row is visible", model.__tablename__, name)
            raise StorageError(f"create {model.__tablename__}")
        return winner


def find_or_create_status(name: str) -> Status:
    """Return the Status row for one of the lifecycle names, creating it if needed."""
    cleaned = _normalize_name(name)
    if cleaned not in LIFECYCLE_STATUSES:
        raise ValidationError(
            f"Unknown lifecycle status '{cleaned}'",
            allowed=list(LIFECYCLE_STATUSES),
        )
    return _find_or_create(Status, cleaned, STATUS_DESCRIPTIONS.get(cleaned))


def find_or_create_event_type(name: str, description: str | None = None) -> EventType:
    cleaned = _normalize_name(name)
    return _find_or_create(EventType, cleaned, description or EVENT_TYPE_DESCRIPTIONS.get(cleaned))


def get_event_type(name: str) -> EventType:
    """Resolve an event type that must already be known.

    Names from the built-in vocabulary are created lazily; anything else
    has to have been registered first.
    """
    cleaned = _normalize_name(name)
    row = _lookup(EventType, cleaned)
    if row is not None:
        return row
    if cleaned in EVENT_TYPE_DESCRIPTIONS:
        return find_or_create_event_type(cleaned)
    raise NotFoundError(f"Event type '{cleaned}' not found", event_type=cleaned)


def seed_catalog() -> dict:
    """Create every built-in status and event type. Safe to run repeatedly."""
    created = {"statuses": 0, "event_types": 0}
    with write_intent():
        for name in LIFECYCLE_STATUSES:
            if _lookup(Status, name) is None:
                created["statuses"] += 1
            find_or_create_status(name)
        for name in EVENT_TYPE_DESCRIPTIONS:
            if _lookup(EventType, name) is None:
                created["event_types"] += 1
            find_or_create_event_type(name)
        db.session.commit()
    logger.info("Catalog seeded: %s", created)
    return created
