"""Batch lifecycle transitions."""

from __future__ import annotations

from typing import Dict, FrozenSet

from ..errors import ValidationError
from ..vocabulary import (
    CONSUMED,
    HARVESTED,
    IN_SHOP,
    IN_TRANSIT,
    IN_WAREHOUSE,
    LIFECYCLE_STATUSES,
    PENDING_DELIVERY,
    RETURNED,
    SOLD,
)

TERMINAL_STATUSES: FrozenSet[str] = frozenset({SOLD, CONSUMED, RETURNED})

# Statuses a parent may be revived into when quantity comes back to it.
AVAILABLE_AGAIN_STATUSES: FrozenSet[str] = frozenset({HARVESTED, IN_WAREHOUSE, IN_SHOP})

# Statuses a batch may be born with when split off a parent.
CHILD_STATUSES: FrozenSet[str] = frozenset(
    {IN_WAREHOUSE, IN_TRANSIT, PENDING_DELIVERY, IN_SHOP, SOLD, CONSUMED}
)

_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    HARVESTED: frozenset({IN_WAREHOUSE, IN_TRANSIT, PENDING_DELIVERY, IN_SHOP, SOLD, CONSUMED, RETURNED}),
    IN_WAREHOUSE: frozenset({IN_TRANSIT, PENDING_DELIVERY, IN_SHOP, SOLD, CONSUMED, RETURNED}),
    PENDING_DELIVERY: frozenset({IN_TRANSIT, IN_WAREHOUSE, IN_SHOP, RETURNED}),
    IN_TRANSIT: frozenset({IN_WAREHOUSE, IN_SHOP, RETURNED}),
    IN_SHOP: frozenset({SOLD, CONSUMED, RETURNED}),
    SOLD: frozenset(),
    CONSUMED: frozenset(),
    RETURNED: frozenset(),
}


def require_known_status(name: str) -> str:
    if name not in LIFECYCLE_STATUSES:
        raise ValidationError(f"Unknown lifecycle status '{name}'", status=name)
    return name


def can_transition(current: str | None, target: str) -> bool:
    if current is None or current == target:
        return True
    return target in _TRANSITIONS.get(current, frozenset())


def ensure_transition(batch_code: str, current: str | None, target: str) -> None:
    require_known_status(target)
    if not can_transition(current, target):
        raise ValidationError(
            f"Batch {batch_code} cannot move from '{current}' to '{target}'",
            batch_code=batch_code,
            current=current,
            target=target,
        )


def ensure_child_status(target: str) -> None:
    require_known_status(target)
    if target not in CHILD_STATUSES:
        raise ValidationError(
            f"A new batch cannot start in status '{target}'",
            status=target,
            allowed=sorted(CHILD_STATUSES),
        )


def ensure_revivable(batch_code: str, current: str | None, target: str) -> None:
    """Quantity coming back from a child may revive the parent, unless it was retired for good."""
    require_known_status(target)
    if target not in AVAILABLE_AGAIN_STATUSES:
        raise ValidationError(
            f"'{target}' is not an available-again status",
            status=target,
            allowed=sorted(AVAILABLE_AGAIN_STATUSES),
        )
    if current in (RETURNED, CONSUMED):
        raise ValidationError(
            f"Batch {batch_code} is '{current}' and cannot take quantity back",
            batch_code=batch_code,
            current=current,
        )
