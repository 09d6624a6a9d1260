"""Provenance resolver.

Synopsis:
Read-only reconstruction of where a batch came from and where it went: the
genealogy tree (ancestor chain plus descendant tree), the merged event
timeline along the ancestor chain, and a grouping of events into supply
chain stages. Nothing here takes locks or writes.

Walks are iterative loops over a visited set. The ancestor walk is bounded
by PROVENANCE_MAX_DEPTH hops. A branch that cannot be read (a corrupt row,
a dangling parent link, a cycle) is skipped and reported in ``omissions``
rather than failing the whole answer.

Glossary:
- Chain: the batch followed by its parent, grandparent, ... up to the harvested root.
- Stage: origin (farm), processing (distribution), transport or retail.
- Omission: a part of the answer that was left out, with the reason.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set, TypeVar

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Batch, Event
from ..utils.timezone_utils import TimezoneUtils
from .audit_sink import get_audit_sink
from .errors import NotFoundError, ValidationError
from .ledger._locking import translate_storage_error
from .ledger._queries import get_batch_by_code
from .vocabulary import (
    EVT_DELIVERED,
    EVT_FERTILIZER,
    EVT_HARVEST,
    EVT_IN_TRANSIT,
    EVT_IRRIGATION,
    EVT_PESTICIDE,
    EVT_PICKED_UP,
    EVT_QUALITY_CHECK,
    EVT_RECEIVED,
    EVT_SHIPMENT_ASSIGNED,
    EVT_SOLD,
    EVT_SPLIT,
    EVT_TRANSFERRED,
    ROLE_DISTRIBUTOR,
    ROLE_FARMER,
    ROLE_RETAILER,
    ROLE_TRANSPORTER,
    normalize_role,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 6

STAGE_ORIGIN = "origin"
STAGE_PROCESSING = "processing"
STAGE_TRANSPORT = "transport"
STAGE_RETAIL = "retail"
STAGE_UNCLASSIFIED = "unclassified"
STAGES = (STAGE_ORIGIN, STAGE_PROCESSING, STAGE_TRANSPORT, STAGE_RETAIL)

_ROLE_STAGES: Dict[str, str] = {
    ROLE_FARMER: STAGE_ORIGIN,
    ROLE_DISTRIBUTOR: STAGE_PROCESSING,
    ROLE_TRANSPORTER: STAGE_TRANSPORT,
    ROLE_RETAILER: STAGE_RETAIL,
}

_KIND_STAGES: Dict[str, str] = {
    EVT_HARVEST: STAGE_ORIGIN,
    EVT_FERTILIZER: STAGE_ORIGIN,
    EVT_PESTICIDE: STAGE_ORIGIN,
    EVT_IRRIGATION: STAGE_ORIGIN,
    EVT_QUALITY_CHECK: STAGE_ORIGIN,
    EVT_SHIPMENT_ASSIGNED: STAGE_TRANSPORT,
    EVT_PICKED_UP: STAGE_TRANSPORT,
    EVT_IN_TRANSIT: STAGE_TRANSPORT,
    EVT_DELIVERED: STAGE_TRANSPORT,
    EVT_SOLD: STAGE_PROCESSING,
    EVT_SPLIT: STAGE_PROCESSING,
    EVT_TRANSFERRED: STAGE_PROCESSING,
    EVT_RECEIVED: STAGE_RETAIL,
}

# Kinds whose stage does not depend on who held the batch.
_PINNED_KINDS = frozenset({EVT_HARVEST})

_JOURNEY_STEPS = (
    (EVT_HARVEST, "Harvested from farm"),
    (EVT_FERTILIZER, "Fertilizer applied"),
    (EVT_PESTICIDE, "Pesticide applied"),
    (EVT_IRRIGATION, "Irrigated"),
    (EVT_QUALITY_CHECK, "Quality checked"),
    (EVT_SPLIT, "Split into smaller batches"),
    (EVT_SHIPMENT_ASSIGNED, "Transported"),
    (EVT_DELIVERED, "Delivered"),
    (EVT_SOLD, "Sold"),
)

# Errors that mean "this row/branch is unreadable", not "the resolver is broken".
_BRANCH_ERRORS = (SQLAlchemyError, ValueError, TypeError, LookupError)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class Omission:
    reason: str
    batch_id: Optional[int] = None
    event_id: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "batch_id": self.batch_id,
            "event_id": self.event_id,
            "detail": self.detail,
        }


@dataclass(slots=True)
class GenealogyNode:
    batch: Batch
    parent: Optional["GenealogyNode"] = None
    children: List["GenealogyNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch": self.batch.to_dict(),
            "parent": self.parent.to_dict() if self.parent is not None else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(slots=True)
class Genealogy:
    node: GenealogyNode
    omissions: List[Omission] = field(default_factory=list)

    @property
    def ancestors(self) -> List[Batch]:
        """Nearest parent first."""
        found = []
        current = self.node.parent
        while current is not None:
            found.append(current.batch)
            current = current.parent
        return found

    @property
    def descendants(self) -> List[Batch]:
        found = []
        pending: Deque[GenealogyNode] = deque(self.node.children)
        while pending:
            current = pending.popleft()
            found.append(current.batch)
            pending.extend(current.children)
        return found

    @property
    def is_complete(self) -> bool:
        return not self.omissions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tree": self.node.to_dict(),
            "omissions": [omission.to_dict() for omission in self.omissions],
            "is_complete": self.is_complete,
        }


@dataclass(slots=True)
class EventHistory:
    events: List[Event]
    chain: List[Batch]
    omissions: List[Omission] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.omissions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "chain": [batch.batch_code for batch in self.chain],
            "omissions": [omission.to_dict() for omission in self.omissions],
            "is_complete": self.is_complete,
        }


_F = TypeVar("_F", bound=Callable[..., Any])


def _storage_errors_translated(func: _F) -> _F:
    """Surface storage failures outside the per-branch guards as ContentionError or StorageError."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise translate_storage_error(exc, func.__name__) from exc

    return wrapper  # type: ignore[return-value]


def _max_depth(max_depth: Optional[int]) -> int:
    if max_depth is not None:
        return max(0, int(max_depth))
    if has_app_context():
        return int(current_app.config.get("PROVENANCE_MAX_DEPTH", DEFAULT_MAX_DEPTH))
    return DEFAULT_MAX_DEPTH


def _load_start(batch_id: Any) -> Batch:
    try:
        key = int(batch_id)
    except (TypeError, ValueError):
        raise ValidationError("batch_id must be an integer", batch_id=batch_id)
    batch = db.session.get(Batch, key)
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found", batch_id=key)
    return batch


def _parent_id_of(batch_id: int) -> Optional[int]:
    return db.session.execute(
        select(Batch.parent_batch_id).where(Batch.id == batch_id)
    ).scalar_one_or_none()


def _child_ids_of(batch_id: int) -> List[int]:
    return list(
        db.session.execute(
            select(Batch.id).where(Batch.parent_batch_id == batch_id).order_by(Batch.id.asc())
        ).scalars()
    )


# --- Ancestor walk ---
# Purpose: Follow parent links upward, bounded and cycle-safe.
def _walk_ancestors(start: Batch, max_depth: int, omissions: List[Omission]) -> List[Batch]:
    """Return [start, parent, grandparent, ...] as far as can be read."""
    chain = [start]
    visited: Set[int] = {start.id}
    current_id: Optional[int] = start.parent_batch_id
    hops = 0

    while current_id is not None:
        if current_id in visited:
            logger.error("Parent cycle detected at batch %s while tracing %s", current_id, start.batch_code)
            omissions.append(Omission("parent_cycle", batch_id=current_id))
            break
        if hops >= max_depth:
            omissions.append(
                Omission("depth_limit", batch_id=current_id, detail=f"stopped after {max_depth} hops")
            )
            break
        hops += 1
        visited.add(current_id)
        try:
            parent = db.session.get(Batch, current_id)
        except _BRANCH_ERRORS as exc:
            logger.warning("Unreadable ancestor batch %s: %s", current_id, exc)
            omissions.append(Omission("unreadable_batch", batch_id=current_id, detail=str(exc)))
            break
        if parent is None:
            omissions.append(Omission("missing_parent", batch_id=current_id))
            break
        chain.append(parent)
        current_id = parent.parent_batch_id
    return chain


# --- Descendant walk ---
# Purpose: Breadth-first walk over reverse parent links.
def _walk_descendants(root: GenealogyNode, visited: Set[int], omissions: List[Omission]) -> None:
    pending: Deque[GenealogyNode] = deque([root])
    while pending:
        node = pending.popleft()
        try:
            child_ids = _child_ids_of(node.batch.id)
        except _BRANCH_ERRORS as exc:
            logger.warning("Could not list children of %s: %s", node.batch.batch_code, exc)
            omissions.append(Omission("unreadable_children", batch_id=node.batch.id, detail=str(exc)))
            continue

        for child_id in child_ids:
            if child_id in visited:
                omissions.append(Omission("parent_cycle", batch_id=child_id))
                continue
            visited.add(child_id)
            try:
                child = db.session.get(Batch, child_id)
            except _BRANCH_ERRORS as exc:
                logger.warning("Unreadable descendant batch %s: %s", child_id, exc)
                omissions.append(Omission("unreadable_batch", batch_id=child_id, detail=str(exc)))
                continue
            if child is None:
                continue
            child_node = GenealogyNode(batch=child)
            node.children.append(child_node)
            pending.append(child_node)


@_storage_errors_translated
def genealogy(batch_id: Any, *, max_depth: Optional[int] = None) -> Genealogy:
    """Ancestor chain and descendant tree around one batch."""
    start = _load_start(batch_id)
    omissions: List[Omission] = []

    chain = _walk_ancestors(start, _max_depth(max_depth), omissions)
    node = GenealogyNode(batch=start)
    cursor = node
    for ancestor in chain[1:]:
        cursor.parent = GenealogyNode(batch=ancestor)
        cursor = cursor.parent

    # Ancestors are already placed; meeting one again below means a cycle.
    visited: Set[int] = {batch.id for batch in chain}
    _walk_descendants(node, visited, omissions)
    return Genealogy(node=node, omissions=omissions)


def _sort_key(event: Event):
    recorded = TimezoneUtils.ensure_timezone_aware(event.recorded_at) or _EPOCH
    return (recorded, event.id or 0)


def _events_of(batch: Batch, omissions: List[Omission]) -> List[Event]:
    stmt = select(Event).where(Event.batch_id == batch.id).order_by(Event.id.asc())
    try:
        return list(db.session.execute(stmt).scalars())
    except _BRANCH_ERRORS as exc:
        logger.warning("Bulk event read failed for %s, falling back to per-row reads: %s", batch.batch_code, exc)

    # One bad row should only cost that row.
    found: List[Event] = []
    try:
        event_ids = list(
            db.session.execute(select(Event.id).where(Event.batch_id == batch.id).order_by(Event.id.asc())).scalars()
        )
    except _BRANCH_ERRORS as exc:
        omissions.append(Omission("unreadable_events", batch_id=batch.id, detail=str(exc)))
        return found
    for event_id in event_ids:
        try:
            event = db.session.get(Event, event_id)
        except _BRANCH_ERRORS as exc:
            omissions.append(Omission("unreadable_event", batch_id=batch.id, event_id=event_id, detail=str(exc)))
            continue
        if event is not None:
            found.append(event)
    return found


@_storage_errors_translated
def full_event_history(batch_id: Any, *, max_depth: Optional[int] = None) -> EventHistory:
    """Every event on the batch and each of its ancestors, oldest first."""
    start = _load_start(batch_id)
    omissions: List[Omission] = []
    chain = _walk_ancestors(start, _max_depth(max_depth), omissions)

    events: List[Event] = []
    for batch in chain:
        events.extend(_events_of(batch, omissions))
    events.sort(key=_sort_key)
    return EventHistory(events=events, chain=chain, omissions=omissions)


def _event_fields(event: Any) -> tuple:
    if isinstance(event, Mapping):
        return event.get("event_type"), event.get("custodian_role")
    return getattr(event, "event_type_name", None), getattr(event, "custodian_role", None)


def stage_for(event_type: Optional[str], custodian_role: Optional[str]) -> str:
    if event_type in _PINNED_KINDS:
        return _KIND_STAGES[event_type]
    role_stage = _ROLE_STAGES.get(normalize_role(custodian_role) or "")
    if role_stage is not None:
        return role_stage
    return _KIND_STAGES.get(event_type or "", STAGE_UNCLASSIFIED)


def classify_by_role(events: Iterable[Any]) -> Dict[str, List[Any]]:
    """
    Bucket events into supply-chain stages.

    The custodian role recorded with the event decides first; events with no
    usable role fall back to their kind. Harvest events are always origin.
    Accepts Event rows or their ``to_dict()`` form.
    """
    buckets: Dict[str, List[Any]] = {stage: [] for stage in STAGES}
    buckets[STAGE_UNCLASSIFIED] = []
    for event in events:
        event_type, role = _event_fields(event)
        buckets[stage_for(event_type, role)].append(event)
    return buckets


def journey_summary(events: Iterable[Any]) -> List[str]:
    kinds = {_event_fields(event)[0] for event in events}
    journey = [label for kind, label in _JOURNEY_STEPS if kind in kinds]
    return journey or ["Product journey tracked"]


def _timeline_entry(event: Event, codes: Mapping[int, str], omissions: List[Omission]) -> Dict[str, Any]:
    try:
        entry = event.to_dict(include_proof=True)
    except _BRANCH_ERRORS as exc:
        omissions.append(Omission("unreadable_proof", batch_id=event.batch_id, event_id=event.id, detail=str(exc)))
        entry = event.to_dict()
        entry["attachments"] = []
        entry["sensor_readings"] = []
    entry["batch_code"] = codes.get(event.batch_id)
    return entry


# --- Trace batch ---
# Purpose: Build the consumer-facing story for a scanned batch code.
@_storage_errors_translated
def trace_batch(batch_code: str, *, include_audit: bool = False) -> Dict[str, Any]:
    code = (batch_code or "").strip()
    if not code:
        raise ValidationError("batch_code is required")
    batch = get_batch_by_code(code)

    tree = genealogy(batch.id)
    history = full_event_history(batch.id)
    omissions = list(tree.omissions)
    seen = {(o.reason, o.batch_id, o.event_id) for o in omissions}
    for omission in history.omissions:
        if (omission.reason, omission.batch_id, omission.event_id) not in seen:
            omissions.append(omission)

    codes = {item.id: item.batch_code for item in history.chain}
    timeline = [_timeline_entry(event, codes, omissions) for event in history.events]
    stages = classify_by_role(timeline)
    parent = batch.parent

    story: Dict[str, Any] = {
        "batch": batch.to_dict(include_product=True),
        "genealogy": {
            "is_root": batch.is_root,
            "parent_batch_code": parent.batch_code if parent is not None else None,
            "tree": tree.node.to_dict(),
        },
        "timeline": timeline,
        "lifecycle_stages": {stage: stages[stage] for stage in STAGES},
        "summary": {
            "total_events": len(timeline),
            "origin": "Split from parent batch" if parent is not None else "Harvested from farm",
            "journey": journey_summary(timeline),
        },
        "omissions": [omission.to_dict() for omission in omissions],
    }
    if include_audit:
        story["audit_trail"] = get_audit_sink().transactions_for_batches(codes.values())
    return story
