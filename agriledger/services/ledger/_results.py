from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...models import Batch, Event


@dataclass(slots=True)
class BatchResult:
    batch: Batch
    event: Optional[Event] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch": self.batch.to_dict(),
            "event": self.event.to_dict() if self.event is not None else None,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class SplitResult:
    parent: Batch
    children: List[Batch]
    event: Optional[Event] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def total_split(self) -> float:
        return sum(child.initial_quantity for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent": self.parent.to_dict(),
            "children": [child.to_dict() for child in self.children],
            "total_split": self.total_split,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class TransferResult:
    """Outcome of a hand-over. ``batch`` is what the new custodian now holds."""

    batch: Batch
    source: Batch
    mode: str
    event: Optional[Event] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.mode == "partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "batch": self.batch.to_dict(),
            "source": self.source.to_dict(),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ReversalResult:
    batch: Batch
    parent: Optional[Batch]
    restored_quantity: float
    event: Optional[Event] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch": self.batch.to_dict(),
            "parent": self.parent.to_dict() if self.parent is not None else None,
            "restored_quantity": self.restored_quantity,
            "warnings": list(self.warnings),
        }
