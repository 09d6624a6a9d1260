from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

__all__ = [
    "db",
    "migrate",
    "write_intent",
    "claim_write_intent",
    "release_write_intent",
    "wants_write_lock",
]

db = SQLAlchemy()
migrate = Migrate(compare_type=True, render_as_batch=True)

# Set while code that will write is running; the SQLite begin hook reads it.
_write_intent: ContextVar[bool] = ContextVar("agriledger_write_intent", default=False)


def wants_write_lock() -> bool:
    return _write_intent.get()


def claim_write_intent() -> Token:
    return _write_intent.set(True)


def release_write_intent(token: Token) -> None:
    _write_intent.reset(token)


@contextmanager
def write_intent() -> Iterator[None]:
    """Transactions begun inside the block start as writers (BEGIN IMMEDIATE on SQLite)."""
    token = claim_write_intent()
    try:
        yield
    finally:
        release_write_intent(token)
