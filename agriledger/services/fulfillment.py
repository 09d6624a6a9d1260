"""Order fulfillment orchestrator.

Synopsis:
Places a multi-batch order as one atomic unit: every source batch is locked in
ascending id order, every line is validated against the locked quantities,
and only then are the order, its line items, one downstream batch per line
and the Sold events written. Delivery is a separate step that flips the order
to complete and makes the downstream batches available to the buyer.

Glossary:
- Line: one (batch, quantity, unit price) entry of a basket.
- Downstream batch: the child batch the buyer receives for a line.
- Shipment: transporter assignment for an order; one per order.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import or_, select

from ..extensions import db
from ..models import Batch, Event, Order, OrderItem, Shipment
from ..utils.codes import generate_order_number
from ..utils.timezone_utils import TimezoneUtils
from .audit_sink import (
    AUDIT_DELIVERY_CONFIRMED,
    AUDIT_ORDER_CREATED,
    AUDIT_SHIPMENT_ASSIGNED,
    AUDIT_SHIPMENT_UPDATE,
)
from .errors import NotFoundError, OwnershipError, ValidationError
from .ledger._core import append_event, draw_child, ensure_drawable, mark_sold_if_exhausted, set_status
from .ledger._locking import lock_batches
from .ledger._unit import LedgerUnit
from .ledger._validation import (
    normalize_quantity,
    require_available,
    require_non_negative,
    require_party,
    require_positive,
)
from .vocabulary import (
    EVT_DELIVERED,
    EVT_IN_TRANSIT,
    EVT_PICKED_UP,
    EVT_RECEIVED,
    EVT_SHIPMENT_ASSIGNED,
    EVT_SOLD,
    IN_SHOP,
    IN_TRANSIT,
    IN_WAREHOUSE,
    PENDING_DELIVERY,
    ROLE_TRANSPORTER,
    normalize_role,
)

logger = logging.getLogger(__name__)

SHIPMENT_ASSIGNED = "Assigned"
SHIPMENT_PICKED_UP = "Picked Up"
SHIPMENT_IN_TRANSIT = "In Transit"
SHIPMENT_DELIVERED = "Delivered"

# Shipment update -> (event recorded on every downstream batch, batch status)
_SHIPMENT_STEPS: Dict[str, tuple] = {
    SHIPMENT_PICKED_UP: (EVT_PICKED_UP, IN_TRANSIT),
    SHIPMENT_IN_TRANSIT: (EVT_IN_TRANSIT, IN_TRANSIT),
    SHIPMENT_DELIVERED: (EVT_DELIVERED, IN_SHOP),
}

READY_STATUSES = frozenset({IN_SHOP, IN_WAREHOUSE})
_MAX_ORDER_NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class OrderLine:
    batch_id: int
    quantity: float
    unit_price: float

    @property
    def line_total(self) -> float:
        return round(self.quantity * self.unit_price, 2)


@dataclass(slots=True)
class OrderResult:
    order: Order
    items: List[OrderItem]
    downstream_batches: List[Batch]
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "downstream_batches": [batch.to_dict() for batch in self.downstream_batches],
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ShipmentResult:
    shipment: Optional[Shipment]
    order: Order
    batches: List[Batch]
    events: List[Event] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment": self.shipment.to_dict() if self.shipment is not None else None,
            "order": self.order.to_dict(include_items=False),
            "batches": [batch.to_dict() for batch in self.batches],
            "warnings": list(self.warnings),
        }


# --- Parse lines ---
# Purpose: Validate raw basket entries; every entry stays its own line.
def _parse_lines(items: Optional[Iterable[Mapping[str, Any]]]) -> List[OrderLine]:
    if items is None or isinstance(items, (str, bytes, Mapping)):
        raise ValidationError("items must be a non-empty list")

    lines: List[OrderLine] = []
    for position, raw in enumerate(items, start=1):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Item {position} must be an object", item=position)
        try:
            batch_id = int(raw.get("batch_id"))
        except (TypeError, ValueError):
            raise ValidationError(f"Item {position} has an invalid batch_id", item=position)
        quantity = require_positive(raw.get("quantity"), f"items[{position}].quantity")
        unit_price = require_non_negative(raw.get("unit_price", 0), f"items[{position}].unit_price")
        lines.append(OrderLine(batch_id, quantity, unit_price))

    if not lines:
        raise ValidationError("items must be a non-empty list")
    return lines


def _drawn_per_batch(lines: List[OrderLine]) -> "OrderedDict[int, float]":
    """Total quantity each source batch gives up, in first-seen order."""
    totals: "OrderedDict[int, float]" = OrderedDict()
    for line in lines:
        totals[line.batch_id] = normalize_quantity(totals.get(line.batch_id, 0.0) + line.quantity)
    return totals


def _new_order_number() -> str:
    for _ in range(_MAX_ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number()
        taken = db.session.execute(
            select(Order.id).where(Order.order_number == candidate)
        ).scalar_one_or_none()
        if taken is None:
            return candidate
    # Extremely unlikely; the unique constraint still guards the insert.
    return generate_order_number()


# --- Place order ---
# Purpose: Atomically turn a basket into an order plus downstream batches.
def place_order(
    buyer_id: Any,
    items: Iterable[Mapping[str, Any]],
    *,
    buyer_role: Optional[str] = None,
) -> OrderResult:
    """
    Place an order for ``items`` (``batch_id``, ``quantity``, ``unit_price``).

    All lines must come from one seller who is not the buyer. Each line gets
    its own downstream batch, and several lines may draw on the same source
    as long as their sum fits. The first line that fails validation aborts
    the whole basket; nothing is written.
    """
    buyer = require_party(buyer_id, "buyer_id")
    lines = _parse_lines(items)
    drawn = _drawn_per_batch(lines)
    role = normalize_role(buyer_role)

    with LedgerUnit("place_order") as unit_of_work:
        sources = lock_batches(drawn)

        seller = sources[lines[0].batch_id].custodian_id
        for batch_id, total in drawn.items():
            source = sources[batch_id]
            if source.custodian_id != seller:
                raise ValidationError(
                    f"Batch {source.batch_code} belongs to a different seller; orders are single-seller",
                    batch_code=source.batch_code,
                )
            if source.custodian_id == buyer:
                raise ValidationError(
                    f"Buyer already holds batch {source.batch_code}",
                    batch_code=source.batch_code,
                )
            require_available(source, total)
            ensure_drawable(source)

        order = Order(
            order_number=_new_order_number(),
            buyer_id=buyer,
            seller_id=seller,
            total_amount=round(sum(line.line_total for line in lines), 2),
            is_completed=False,
        )
        db.session.add(order)

        order_items: List[OrderItem] = []
        downstream: List[Batch] = []
        for line in lines:
            source = sources[line.batch_id]
            child = draw_child(
                source,
                line.quantity,
                custodian_id=buyer,
                custodian_role=role,
                status=PENDING_DELIVERY,
                kind="order",
            )
            item = OrderItem(
                order=order,
                source_batch=source,
                downstream_batch=child,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            db.session.add(item)
            order_items.append(item)
            downstream.append(child)
        for batch_id in drawn:
            mark_sold_if_exhausted(sources[batch_id])

        db.session.flush()
        children_of: Dict[int, List[Batch]] = {batch_id: [] for batch_id in drawn}
        for line, child in zip(lines, downstream):
            children_of[line.batch_id].append(child)
            unit_of_work.notify(
                AUDIT_ORDER_CREATED,
                child.batch_code,
                seller,
                buyer,
                order_number=order.order_number,
                parent_batch_code=sources[line.batch_id].batch_code,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
        # One Sold event per source batch, however many lines drew on it.
        for batch_id, total in drawn.items():
            source = sources[batch_id]
            append_event(
                source,
                EVT_SOLD,
                seller,
                details={
                    "order_number": order.order_number,
                    "quantity": total,
                    "buyer_id": buyer,
                    "child_batch_codes": [child.batch_code for child in children_of[batch_id]],
                    "remaining": source.remaining_quantity,
                },
            )
        result = OrderResult(order=order, items=order_items, downstream_batches=downstream)

    logger.info(
        "Order %s placed: %s -> %s, %d line(s), total %.2f",
        order.order_number, seller, buyer, len(lines), order.total_amount,
    )
    result.warnings.extend(unit_of_work.warnings)
    return result


def _lock_order(order_id: Any) -> Order:
    try:
        key = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer", order_id=order_id)
    order = db.session.execute(
        select(Order).where(Order.id == key).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=key)
    return order


def _lock_shipment(criterion) -> Optional[Shipment]:
    """Lock a shipment row. Callers must already hold the lock on its order."""
    return db.session.execute(
        select(Shipment).where(criterion).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _lock_downstream(order: Order) -> List[Batch]:
    ids = [item.downstream_batch_id for item in order.items if item.downstream_batch_id is not None]
    locked = lock_batches(ids)
    return [locked[batch_id] for batch_id in sorted(locked)]


def _complete_locked(order: Order, batches: List[Batch], ready_status: str) -> None:
    for batch in batches:
        set_status(batch, ready_status)
    order.is_completed = True
    order.completed_at = TimezoneUtils.utc_now()


# --- Accept shipment ---
# Purpose: Transporter takes an open order; its batches go on the road.
def accept_shipment(
    order_id: Any,
    transporter_id: Any,
    *,
    estimated_delivery: Optional[datetime] = None,
    location_coords: Optional[str] = None,
) -> ShipmentResult:
    transporter = require_party(transporter_id, "transporter_id")

    with LedgerUnit("accept_shipment") as unit_of_work:
        order = _lock_order(order_id)
        if order.is_completed:
            raise ValidationError(f"Order {order.order_number} is already completed", order_number=order.order_number)
        if order.shipment is not None:
            raise ValidationError(
                f"Order {order.order_number} already has a transporter",
                order_number=order.order_number,
            )

        batches = _lock_downstream(order)
        shipment = Shipment(
            order=order,
            transporter_id=transporter,
            estimated_delivery=estimated_delivery,
            status=SHIPMENT_ASSIGNED,
        )
        db.session.add(shipment)

        events = []
        for batch in batches:
            set_status(batch, IN_TRANSIT)
            events.append(
                append_event(
                    batch,
                    EVT_SHIPMENT_ASSIGNED,
                    transporter,
                    custodian_role=ROLE_TRANSPORTER,
                    location_coords=location_coords,
                    details={"order_number": order.order_number},
                )
            )
            unit_of_work.notify(
                AUDIT_SHIPMENT_ASSIGNED,
                batch.batch_code,
                transporter,
                order.buyer_id,
                order_number=order.order_number,
                estimated_delivery=estimated_delivery.isoformat() if estimated_delivery else None,
            )
        db.session.flush()
        result = ShipmentResult(shipment=shipment, order=order, batches=batches, events=events)

    logger.info("Shipment for order %s accepted by %s", order.order_number, transporter)
    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Update shipment ---
# Purpose: Record a transport step; delivery completes the order.
def update_shipment(
    shipment_id: Any,
    transporter_id: Any,
    status: str,
    *,
    location_coords: Optional[str] = None,
) -> ShipmentResult:
    transporter = require_party(transporter_id, "transporter_id")
    if status not in _SHIPMENT_STEPS:
        raise ValidationError(
            f"Unknown shipment status '{status}'",
            allowed=sorted(_SHIPMENT_STEPS),
        )
    event_type, batch_status = _SHIPMENT_STEPS[status]

    with LedgerUnit("update_shipment") as unit_of_work:
        try:
            key = int(shipment_id)
        except (TypeError, ValueError):
            raise ValidationError("shipment_id must be an integer", shipment_id=shipment_id)
        # order_id never changes, so it can be read before the order lock is held.
        order_id = db.session.execute(
            select(Shipment.order_id).where(Shipment.id == key)
        ).scalar_one_or_none()
        if order_id is None:
            raise NotFoundError(f"Shipment {shipment_id} not found", shipment_id=key)

        order = _lock_order(order_id)
        shipment = _lock_shipment(Shipment.id == key)
        if shipment is None:
            raise NotFoundError(f"Shipment {shipment_id} not found", shipment_id=key)
        if shipment.transporter_id != transporter:
            raise OwnershipError(
                f"Shipment {shipment.id} is assigned to another transporter",
                shipment_id=shipment.id,
            )
        if order.is_completed:
            raise ValidationError(f"Order {order.order_number} is already completed", order_number=order.order_number)

        batches = _lock_downstream(order)
        events = []
        for batch in batches:
            if status != SHIPMENT_DELIVERED:
                set_status(batch, batch_status)
            events.append(
                append_event(
                    batch,
                    event_type,
                    transporter,
                    custodian_role=ROLE_TRANSPORTER,
                    location_coords=location_coords,
                    details={"order_number": order.order_number, "shipment_status": status},
                )
            )
            unit_of_work.notify(
                AUDIT_SHIPMENT_UPDATE,
                batch.batch_code,
                transporter,
                order.buyer_id,
                order_number=order.order_number,
                status=status,
                location=location_coords,
            )

        shipment.status = status
        if status == SHIPMENT_DELIVERED:
            _complete_locked(order, batches, batch_status)
            unit_of_work.notify(
                AUDIT_DELIVERY_CONFIRMED,
                order.order_number,
                transporter,
                order.buyer_id,
                batches=[batch.batch_code for batch in batches],
            )
        result = ShipmentResult(shipment=shipment, order=order, batches=batches, events=events)

    logger.info("Shipment %s for order %s -> %s", shipment.id, order.order_number, status)
    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Confirm delivery ---
# Purpose: Flip order completion and make every downstream batch ready, together.
def confirm_delivery(
    order_id: Any,
    *,
    actor_id: Any = None,
    ready_status: str = IN_SHOP,
) -> ShipmentResult:
    if ready_status not in READY_STATUSES:
        raise ValidationError(
            f"'{ready_status}' is not a valid ready status",
            allowed=sorted(READY_STATUSES),
        )

    with LedgerUnit("confirm_delivery") as unit_of_work:
        order = _lock_order(order_id)
        shipment = _lock_shipment(Shipment.order_id == order.id)
        if actor_id is not None:
            allowed = {order.buyer_id}
            if shipment is not None:
                allowed.add(shipment.transporter_id)
            if str(actor_id) not in allowed:
                raise OwnershipError(
                    f"{actor_id} cannot confirm delivery of order {order.order_number}",
                    order_number=order.order_number,
                )
        if order.is_completed:
            raise ValidationError(f"Order {order.order_number} is already completed", order_number=order.order_number)

        batches = _lock_downstream(order)
        actor = str(actor_id) if actor_id is not None else order.buyer_id
        events = [
            append_event(
                batch,
                EVT_RECEIVED,
                actor,
                details={"order_number": order.order_number, "status": ready_status},
            )
            for batch in batches
        ]
        _complete_locked(order, batches, ready_status)
        if shipment is not None:
            shipment.status = SHIPMENT_DELIVERED

        unit_of_work.notify(
            AUDIT_DELIVERY_CONFIRMED,
            order.order_number,
            actor,
            order.seller_id,
            batches=[batch.batch_code for batch in batches],
            ready_status=ready_status,
        )
        result = ShipmentResult(shipment=shipment, order=order, batches=batches, events=events)

    logger.info("Order %s completed", order.order_number)
    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Reads ---
def get_order(order_id: Any) -> Order:
    try:
        key = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer", order_id=order_id)
    order = db.session.get(Order, key)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=key)
    return order


def orders_for_party(party_id: Any, *, as_role: Optional[str] = None) -> List[Order]:
    """Orders where the party is buyer or seller (or only one side via ``as_role``)."""
    party = require_party(party_id, "party_id")
    stmt = select(Order)
    if as_role == "buyer":
        stmt = stmt.where(Order.buyer_id == party)
    elif as_role == "seller":
        stmt = stmt.where(Order.seller_id == party)
    elif as_role is None:
        stmt = stmt.where(or_(Order.buyer_id == party, Order.seller_id == party))
    else:
        raise ValidationError("as_role must be 'buyer' or 'seller'", as_role=as_role)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
    return list(db.session.execute(stmt).scalars())


def open_orders() -> List[Order]:
    """Orders still waiting for a transporter."""
    stmt = (
        select(Order)
        .outerjoin(Shipment, Shipment.order_id == Order.id)
        .where(Order.is_completed.is_(False), Shipment.id.is_(None))
        .order_by(Order.created_at.asc(), Order.id.asc())
    )
    return list(db.session.execute(stmt).scalars())
