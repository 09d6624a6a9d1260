"""Human-readable identifiers for batches and orders.

Batch codes are what ends up printed on a QR label, so they stay short,
upper-case and sortable by creation time:

    BATCH-20250301-142233-K3QZ          harvested root
    BATCH-20250301-142233-K3QZ-S1-7QF2  second-generation split child
    BATCH-20250301-142233-K3QZ-D-88ZA   bought by a distributor
    BATCH-20250301-142233-K3QZ-C-0LMN   bought by a consumer
    ORD-20250301-XQ2B                   order number

Only the most recent generations are spelled out in a code; the full
lineage is kept by the parent links.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Dict, Literal, TypedDict

from .timezone_utils import TimezoneUtils

__all__ = [
    "generate_batch_code",
    "generate_child_code",
    "generate_order_number",
    "parse_batch_code",
    "validate_batch_code",
]

BASE36_CHARS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
BATCH_PREFIX = "BATCH"
ORDER_PREFIX = "ORD"

# Width of batch.batch_code.
BATCH_CODE_MAX_LENGTH = 96
MAX_LINEAGE_GENERATIONS = 6
_ROOT_SEGMENTS = 4

CHILD_MARKERS: Dict[str, str] = {
    "split": "S",
    "purchase": "D",
    "consume": "C",
    "order": "O",
}


class ParsedBatchCode(TypedDict):
    root: str | None
    lineage: list[str]
    depth: int


def _random_suffix(length: int = 4) -> str:
    return "".join(secrets.choice(BASE36_CHARS) for _ in range(length))


def generate_batch_code(now: datetime | None = None) -> str:
    stamp = (now or TimezoneUtils.utc_now()).strftime("%Y%m%d-%H%M%S")
    return f"{BATCH_PREFIX}-{stamp}-{_random_suffix()}"


def generate_child_code(
    parent_code: str,
    kind: Literal["split", "purchase", "consume", "order"] = "split",
    *,
    index: int | None = None,
) -> str:
    marker = CHILD_MARKERS.get(kind, CHILD_MARKERS["split"])
    if index is not None:
        marker = f"{marker}{index}"

    parts = parent_code.split("-")
    root, tail = parts[:_ROOT_SEGMENTS], parts[_ROOT_SEGMENTS:]
    generations = [tail[i:i + 2] for i in range(0, len(tail), 2)]
    generations.append([marker, _random_suffix()])
    generations = generations[-MAX_LINEAGE_GENERATIONS:]

    code = _join_code(root, generations)
    while len(code) > BATCH_CODE_MAX_LENGTH and len(generations) > 1:
        generations = generations[1:]
        code = _join_code(root, generations)
    return code


def _join_code(root: list[str], generations: list[list[str]]) -> str:
    return "-".join(root + [segment for generation in generations for segment in generation])


def generate_order_number(now: datetime | None = None) -> str:
    stamp = (now or TimezoneUtils.utc_now()).strftime("%Y%m%d")
    return f"{ORDER_PREFIX}-{stamp}-{_random_suffix()}"


def parse_batch_code(code: str) -> ParsedBatchCode:
    if not validate_batch_code(code):
        return {"root": None, "lineage": [], "depth": 0}
    parts = code.split("-")
    root = "-".join(parts[:_ROOT_SEGMENTS])
    tail = parts[_ROOT_SEGMENTS:]
    lineage = [tail[i] for i in range(0, len(tail), 2)]
    return {"root": root, "lineage": lineage, "depth": len(lineage)}


def validate_batch_code(code: str | None) -> bool:
    if not code:
        return False
    parts = code.split("-")
    if len(parts) < _ROOT_SEGMENTS or parts[0] != BATCH_PREFIX:
        return False
    # Root segments plus (marker, suffix) pairs per generation.
    return (len(parts) - _ROOT_SEGMENTS) % 2 == 0
