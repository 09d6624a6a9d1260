"""Catalog find-or-create must be idempotent, including under concurrent first use."""
import threading

import pytest
from sqlalchemy import func, select

from agriledger.extensions import db
from agriledger.models import EventType, Status
from agriledger.services import catalog_service
from agriledger.services.catalog_service import (
    find_or_create_event_type,
    find_or_create_status,
    get_event_type,
    seed_catalog,
)
from agriledger.services.errors import NotFoundError, ValidationError
from agriledger.services.vocabulary import EVENT_TYPE_DESCRIPTIONS, LIFECYCLE_STATUSES


def _rows_named(model, name):
    return db.session.execute(select(func.count(model.id)).where(model.name == name)).scalar_one()


def test_seed_catalog_is_idempotent(app_ctx):
    # The fixture already seeded once.
    assert seed_catalog() == {'statuses': 0, 'event_types': 0}
    assert db.session.execute(select(func.count(Status.id))).scalar_one() == len(LIFECYCLE_STATUSES)
    assert db.session.execute(select(func.count(EventType.id))).scalar_one() == len(EVENT_TYPE_DESCRIPTIONS)


def test_find_or_create_status_returns_existing_row(app_ctx):
    first = find_or_create_status('In Shop')
    second = find_or_create_status('  In Shop  ')
    assert first.id == second.id
    assert _rows_named(Status, 'In Shop') == 1


def test_unknown_status_is_rejected(app_ctx):
    with pytest.raises(ValidationError):
        find_or_create_status('Lost At Sea')
    with pytest.raises(ValidationError):
        find_or_create_status('   ')


def test_custom_event_type_must_be_registered_before_use(app_ctx):
    with pytest.raises(NotFoundError):
        get_event_type('Cold Storage Check')

    created = find_or_create_event_type('Cold Storage Check', 'Temperature log reviewed')
    db.session.commit()

    assert get_event_type('Cold Storage Check').id == created.id
    assert created.description == 'Temperature log reviewed'


def test_concurrent_first_use_creates_one_row(app):
    name = 'Organic Certification'
    barrier = threading.Barrier(6)
    ids = []
    errors = []

    def worker():
        with app.app_context():
            barrier.wait()
            try:
                row = find_or_create_event_type(name)
                db.session.commit()
                ids.append(row.id)
            except Exception as exc:  # surfaced through the assertion below
                errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert len(set(ids)) == 1
    with app.app_context():
        assert _rows_named(EventType, name) == 1


def test_losing_insert_falls_back_to_winner(app_ctx, monkeypatch):
    """A lookup that misses a row another transaction just committed ends in re-reading it."""
    winner = find_or_create_event_type('Harvest')
    real_lookup = catalog_service._lookup
    calls = []

    def stale_lookup(model, name):
        calls.append(name)
        if len(calls) == 1:
            return None
        return real_lookup(model, name)

    monkeypatch.setattr(catalog_service, '_lookup', stale_lookup)

    row = find_or_create_event_type('Harvest')

    assert row.id == winner.id
    assert len(calls) == 2
    assert _rows_named(EventType, 'Harvest') == 1
