"""Input checks shared by ledger and orchestrator operations."""

from __future__ import annotations

import math
from typing import Any, Iterable, List, Optional

from ...models import Batch
from ..errors import InsufficientQuantityError, OwnershipError, ValidationError

# Float quantities are rounded to this many decimals after every move.
QUANTITY_PRECISION = 6
_EPSILON = 10 ** -(QUANTITY_PRECISION + 3)


def normalize_quantity(value: float) -> float:
    return round(float(value), QUANTITY_PRECISION)


def require_positive(value: Any, field: str = "quantity") -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{field} must be a finite number", field=field)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than zero", field=field, value=number)
    return normalize_quantity(number)


def require_non_negative(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValidationError(f"{field} must be zero or more", field=field)
    return number


def require_quantities(values: Optional[Iterable[Any]]) -> List[float]:
    if values is None or isinstance(values, (str, bytes)):
        raise ValidationError("quantities must be a non-empty list")
    quantities = [require_positive(value, "quantities") for value in values]
    if not quantities:
        raise ValidationError("quantities must be a non-empty list")
    return quantities


def require_party(value: Any, field: str) -> str:
    cleaned = str(value).strip() if value is not None else ""
    if not cleaned:
        raise ValidationError(f"{field} is required", field=field)
    return cleaned


def require_text(value: Any, field: str) -> str:
    cleaned = str(value).strip() if value is not None else ""
    if not cleaned:
        raise ValidationError(f"{field} is required", field=field)
    return cleaned


def require_custody(batch: Batch, actor_id: Any) -> None:
    """No-op when no actor is given; the caller then vouches for custody."""
    if actor_id is None:
        return
    if str(actor_id) != batch.custodian_id:
        raise OwnershipError(
            f"Actor {actor_id} does not hold batch {batch.batch_code}",
            batch_code=batch.batch_code,
            actor_id=str(actor_id),
        )


def require_available(batch: Batch, requested: float) -> None:
    available = batch.remaining_quantity or 0.0
    if requested - available > _EPSILON:
        raise InsufficientQuantityError(
            batch.batch_code,
            requested=requested,
            available=available,
            batch_id=batch.id,
        )


def is_whole(batch: Batch, requested: float) -> bool:
    return abs((batch.remaining_quantity or 0.0) - requested) <= _EPSILON
