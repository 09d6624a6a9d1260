"""Batch state machine operations.

Every public function here is one atomic unit: it locks the rows it will
read-then-write, validates against the locked values, mutates, appends
events and commits. Audit notices go out only after the commit.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Iterable, Optional

from ...extensions import db
from ...models import Batch, Product
from ...utils.codes import generate_batch_code
from ..audit_sink import (
    AUDIT_BATCH_SPLIT,
    AUDIT_CONSUMER_PURCHASE,
    AUDIT_DISTRIBUTOR_PURCHASE,
    AUDIT_HARVEST,
    AUDIT_RETURN,
    AUDIT_TRANSFER,
)
from ..catalog_service import find_or_create_status
from ..errors import AlreadyReturnedError, NotFoundError, NotReversibleError, OwnershipError, ValidationError
from ..vocabulary import (
    CONSUMED,
    EVT_HARVEST,
    EVT_RETURNED,
    EVT_SOLD,
    EVT_SPLIT,
    EVT_TRANSFERRED,
    HARVESTED,
    IN_WAREHOUSE,
    RETURNED,
    ROLE_CONSUMER,
    ROLE_DISTRIBUTOR,
    ROLE_FARMER,
    normalize_role,
)
from ._core import (
    append_event,
    draw_child,
    ensure_drawable,
    force_status,
    get_batch_or_404,
    mark_sold_if_exhausted,
    set_status,
)
from ._locking import lock_batch, lock_batches
from ._results import BatchResult, ReversalResult, SplitResult, TransferResult
from ._state import ensure_revivable
from ._unit import LedgerUnit
from ._validation import (
    is_whole,
    normalize_quantity,
    require_available,
    require_custody,
    require_party,
    require_positive,
    require_quantities,
    require_text,
)

logger = logging.getLogger(__name__)


# --- Create root ---
# Purpose: Register a freshly harvested batch.
def create_root(
    product_id: int,
    custodian_id: Any,
    quantity: float,
    unit: str = "kg",
    origin_date: Optional[date] = None,
    *,
    custodian_role: str = ROLE_FARMER,
    location_coords: Optional[str] = None,
    details: Optional[dict] = None,
) -> BatchResult:
    quantity = require_positive(quantity)
    custodian = require_party(custodian_id, "custodian_id")
    unit = require_text(unit, "unit")

    with LedgerUnit("create_root") as unit_of_work:
        product = db.session.get(Product, product_id) if product_id is not None else None
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
        if product.farmer_id != custodian:
            raise OwnershipError(
                f"Product {product_id} does not belong to {custodian}",
                product_id=product_id,
            )

        batch = Batch(
            batch_code=generate_batch_code(),
            product=product,
            custodian_id=custodian,
            custodian_role=normalize_role(custodian_role),
            status=find_or_create_status(HARVESTED),
            initial_quantity=quantity,
            remaining_quantity=quantity,
            quantity_unit=unit,
            origin_date=origin_date,
        )
        db.session.add(batch)
        event = append_event(
            batch,
            EVT_HARVEST,
            custodian,
            location_coords=location_coords,
            details={"quantity": quantity, "unit": unit, **(details or {})},
        )
        db.session.flush()
        unit_of_work.notify(
            AUDIT_HARVEST,
            batch.batch_code,
            custodian,
            custodian,
            product_id=product.id,
            product_title=product.title,
            quantity=quantity,
            unit=unit,
            origin_date=origin_date.isoformat() if origin_date else None,
        )
        result = BatchResult(batch=batch, event=event)

    logger.info("Harvested batch %s (%s %s)", batch.batch_code, quantity, unit)
    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Split ---
# Purpose: Divide a parent's remaining quantity into new child batches.
def split(
    parent_id: int,
    quantities: Iterable[float],
    new_custodian: Any,
    new_status: str = IN_WAREHOUSE,
    *,
    actor_id: Any = None,
    new_custodian_role: Optional[str] = None,
) -> SplitResult:
    amounts = require_quantities(quantities)
    custodian = require_party(new_custodian, "new_custodian")
    total = normalize_quantity(sum(amounts))

    with LedgerUnit("split") as unit_of_work:
        parent = lock_batch(parent_id)
        require_custody(parent, actor_id)
        require_available(parent, total)

        role = normalize_role(new_custodian_role)
        if role is None and custodian == parent.custodian_id:
            role = parent.custodian_role

        children = [
            draw_child(
                parent,
                amount,
                custodian_id=custodian,
                custodian_role=role,
                status=new_status,
                kind="split",
                index=index,
            )
            for index, amount in enumerate(amounts, start=1)
        ]
        db.session.flush()
        event = append_event(
            parent,
            EVT_SPLIT,
            actor_id if actor_id is not None else parent.custodian_id,
            details={
                "children": [child.batch_code for child in children],
                "quantities": amounts,
                "total_split": total,
                "new_custodian": custodian,
            },
        )
        unit_of_work.notify(
            AUDIT_BATCH_SPLIT,
            parent.batch_code,
            parent.custodian_id,
            custodian,
            parent_batch_id=parent.id,
            splits_count=len(children),
            total_split_quantity=total,
            child_batches=[{"batch_code": c.batch_code, "quantity": c.initial_quantity} for c in children],
        )
        result = SplitResult(parent=parent, children=children, event=event)

    logger.info("Split %s into %d children (%s total)", parent.batch_code, len(children), total)
    result.warnings.extend(unit_of_work.warnings)
    return result


def _transfer_whole_locked(
    unit_of_work: LedgerUnit,
    batch: Batch,
    new_custodian: str,
    new_status: str,
    new_role: Optional[str],
    actor_id: Any,
    audit_kind: str,
) -> TransferResult:
    if batch.is_depleted:
        raise ValidationError(f"Batch {batch.batch_code} has nothing left to transfer", batch_code=batch.batch_code)
    ensure_drawable(batch)

    previous_custodian = batch.custodian_id
    previous_role = batch.custodian_role
    set_status(batch, new_status)
    batch.custodian_id = new_custodian
    batch.custodian_role = new_role

    event = append_event(
        batch,
        EVT_TRANSFERRED,
        actor_id if actor_id is not None else previous_custodian,
        custodian_role=previous_role,
        details={
            "from": previous_custodian,
            "to": new_custodian,
            "quantity": batch.remaining_quantity,
            "status": new_status,
        },
    )
    unit_of_work.notify(
        audit_kind,
        batch.batch_code,
        previous_custodian,
        new_custodian,
        mode="whole",
        quantity=batch.remaining_quantity,
        status=new_status,
    )
    return TransferResult(batch=batch, source=batch, mode="whole", event=event)


def _transfer_partial_locked(
    unit_of_work: LedgerUnit,
    source: Batch,
    quantity: float,
    buyer: str,
    new_status: str,
    buyer_role: Optional[str],
    actor_id: Any,
    audit_kind: str,
    child_kind: str = "purchase",
) -> TransferResult:
    child = draw_child(
        source,
        quantity,
        custodian_id=buyer,
        custodian_role=buyer_role,
        status=new_status,
        kind=child_kind,
    )
    mark_sold_if_exhausted(source)
    db.session.flush()

    event = append_event(
        source,
        EVT_SOLD,
        actor_id if actor_id is not None else source.custodian_id,
        details={
            "quantity": quantity,
            "buyer_id": buyer,
            "child_batch_code": child.batch_code,
            "remaining": source.remaining_quantity,
        },
    )
    unit_of_work.notify(
        audit_kind,
        child.batch_code,
        source.custodian_id,
        buyer,
        mode="partial",
        parent_batch_code=source.batch_code,
        quantity=quantity,
        status=new_status,
    )
    return TransferResult(batch=child, source=source, mode="partial", event=event)


# --- Transfer whole ---
# Purpose: Hand the entire remaining quantity over in place.
def transfer_whole(
    batch_id: int,
    new_custodian: Any,
    new_status: str,
    *,
    actor_id: Any = None,
    new_custodian_role: Optional[str] = None,
) -> TransferResult:
    custodian = require_party(new_custodian, "new_custodian")

    with LedgerUnit("transfer_whole") as unit_of_work:
        batch = lock_batch(batch_id)
        require_custody(batch, actor_id)
        result = _transfer_whole_locked(
            unit_of_work, batch, custodian, new_status,
            normalize_role(new_custodian_role), actor_id, AUDIT_TRANSFER,
        )

    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Transfer partial ---
# Purpose: Hand part of a batch over as a new child owned by the buyer.
def transfer_partial(
    batch_id: int,
    quantity: float,
    buyer: Any,
    new_status: str,
    *,
    actor_id: Any = None,
    buyer_role: Optional[str] = None,
) -> TransferResult:
    quantity = require_positive(quantity)
    buyer = require_party(buyer, "buyer")

    with LedgerUnit("transfer_partial") as unit_of_work:
        source = lock_batch(batch_id)
        require_custody(source, actor_id)
        result = _transfer_partial_locked(
            unit_of_work, source, quantity, buyer, new_status,
            normalize_role(buyer_role), actor_id, AUDIT_TRANSFER,
        )

    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Purchase ---
# Purpose: Buyer-initiated draw; whole transfer when the buyer takes everything.
def purchase(
    batch_id: int,
    quantity: float,
    buyer: Any,
    new_status: str = IN_WAREHOUSE,
    *,
    buyer_role: Optional[str] = ROLE_DISTRIBUTOR,
) -> TransferResult:
    quantity = require_positive(quantity)
    buyer = require_party(buyer, "buyer")
    role = normalize_role(buyer_role)

    with LedgerUnit("purchase") as unit_of_work:
        source = lock_batch(batch_id)
        if source.custodian_id == buyer:
            raise ValidationError(f"{buyer} already holds batch {source.batch_code}", batch_code=source.batch_code)
        require_available(source, quantity)

        if is_whole(source, quantity):
            result = _transfer_whole_locked(
                unit_of_work, source, buyer, new_status, role, buyer, AUDIT_DISTRIBUTOR_PURCHASE,
            )
        else:
            result = _transfer_partial_locked(
                unit_of_work, source, quantity, buyer, new_status, role, buyer, AUDIT_DISTRIBUTOR_PURCHASE,
            )

    logger.info("%s bought %s from %s (%s)", buyer, quantity, source.batch_code, result.mode)
    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Consume ---
# Purpose: End-consumer purchase; the drawn quantity leaves the supply chain.
def consume(batch_id: int, quantity: float, consumer_id: Any) -> TransferResult:
    quantity = require_positive(quantity)
    consumer = require_party(consumer_id, "consumer_id")

    with LedgerUnit("consume") as unit_of_work:
        source = lock_batch(batch_id)
        if source.custodian_id == consumer:
            raise ValidationError(f"{consumer} already holds batch {source.batch_code}", batch_code=source.batch_code)
        result = _transfer_partial_locked(
            unit_of_work, source, quantity, consumer, CONSUMED,
            ROLE_CONSUMER, consumer, AUDIT_CONSUMER_PURCHASE, child_kind="consume",
        )

    result.warnings.extend(unit_of_work.warnings)
    return result


def _default_restore_status(parent: Batch) -> str:
    return HARVESTED if parent.is_root else IN_WAREHOUSE


def _reverse_in_unit(
    unit_of_work: LedgerUnit,
    candidate: Batch,
    restore_status: Optional[str],
    actor_id: Any,
) -> ReversalResult:
    if candidate.parent_batch_id is None:
        raise NotReversibleError(
            f"Batch {candidate.batch_code} is a harvested root and has no parent to return to",
            batch_code=candidate.batch_code,
        )

    locked = lock_batches([candidate.id, candidate.parent_batch_id])
    batch = locked[candidate.id]
    parent = locked[candidate.parent_batch_id]
    require_custody(batch, actor_id)

    restored = normalize_quantity(batch.remaining_quantity or 0.0)
    if restored <= 0:
        raise AlreadyReturnedError(
            f"Batch {batch.batch_code} has already been returned",
            batch_code=batch.batch_code,
        )

    target = restore_status or _default_restore_status(parent)
    ensure_revivable(parent.batch_code, parent.status_name, target)
    new_parent_remaining = normalize_quantity(parent.remaining_quantity + restored)
    if new_parent_remaining > parent.initial_quantity:
        raise ValidationError(
            f"Returning {restored} to {parent.batch_code} would exceed its initial quantity",
            batch_code=parent.batch_code,
        )

    parent.remaining_quantity = new_parent_remaining
    force_status(parent, target)
    batch.remaining_quantity = 0.0
    force_status(batch, RETURNED)

    event = append_event(
        batch,
        EVT_RETURNED,
        actor_id if actor_id is not None else batch.custodian_id,
        details={
            "parent_batch_code": parent.batch_code,
            "restored_quantity": restored,
            "parent_status": target,
            "new_parent_quantity": new_parent_remaining,
        },
    )
    unit_of_work.notify(
        AUDIT_RETURN,
        batch.batch_code,
        batch.custodian_id,
        parent.custodian_id,
        parent_batch_code=parent.batch_code,
        quantity_restored=restored,
        new_parent_quantity=new_parent_remaining,
    )
    logger.info("Returned %s of %s to %s", restored, batch.batch_code, parent.batch_code)
    return ReversalResult(batch=batch, parent=parent, restored_quantity=restored, event=event)


def _revert_ownership_in_unit(unit_of_work: LedgerUnit, candidate: Batch, actor: str) -> ReversalResult:
    batch = lock_batch(candidate.id)
    require_custody(batch, actor)
    farmer_id = batch.product.farmer_id
    if batch.custodian_id == farmer_id:
        raise NotReversibleError(
            f"Batch {batch.batch_code} is still with its farmer",
            batch_code=batch.batch_code,
        )
    if batch.is_depleted:
        raise AlreadyReturnedError(
            f"Batch {batch.batch_code} has nothing left to return",
            batch_code=batch.batch_code,
        )

    ensure_revivable(batch.batch_code, batch.status_name, HARVESTED)
    previous_role = batch.custodian_role
    batch.custodian_id = farmer_id
    batch.custodian_role = ROLE_FARMER
    force_status(batch, HARVESTED)

    restored = normalize_quantity(batch.remaining_quantity)
    event = append_event(
        batch,
        EVT_RETURNED,
        actor,
        custodian_role=previous_role,
        details={"returned_to": farmer_id, "quantity": restored},
    )
    unit_of_work.notify(
        AUDIT_RETURN,
        batch.batch_code,
        actor,
        farmer_id,
        mode="ownership_reverted",
        quantity=restored,
    )
    logger.info("Ownership of %s reverted to farmer %s", batch.batch_code, farmer_id)
    return ReversalResult(batch=batch, parent=None, restored_quantity=restored, event=event)


# --- Reverse ---
# Purpose: Return a child's remaining quantity to its parent.
def reverse(
    batch_id: int,
    restore_status: Optional[str] = None,
    *,
    actor_id: Any = None,
) -> ReversalResult:
    with LedgerUnit("reverse") as unit_of_work:
        # parent_batch_id is immutable, so reading it before locking is safe.
        candidate = get_batch_or_404(batch_id)
        result = _reverse_in_unit(unit_of_work, candidate, restore_status, actor_id)

    result.warnings.extend(unit_of_work.warnings)
    return result


# --- Return batch ---
# Purpose: Custodian hands a batch back, to its parent or to the original farmer.
def return_batch(batch_id: int, actor_id: Any) -> ReversalResult:
    actor = require_party(actor_id, "actor_id")

    with LedgerUnit("return_batch") as unit_of_work:
        candidate = get_batch_or_404(batch_id)
        if candidate.parent_batch_id is not None:
            result = _reverse_in_unit(unit_of_work, candidate, None, actor)
        else:
            result = _revert_ownership_in_unit(unit_of_work, candidate, actor)

    result.warnings.extend(unit_of_work.warnings)
    return result
