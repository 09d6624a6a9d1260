"""Lock serialisation: concurrent draws, lock timeouts and storage error mapping."""
import sqlite3
import threading

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from agriledger import create_app
from agriledger.extensions import db, write_intent
from agriledger.services.errors import ContentionError, InsufficientQuantityError, StorageError
from agriledger.services.ledger import conservation_report, get_batch, purchase, split
from agriledger.services.ledger._locking import is_contention_error, translate_storage_error
from tests.conftest import DISTRIBUTOR_ID


def _run_in_threads(app, count, work):
    """Run ``work(index)`` on ``count`` threads released together; collect outcomes."""
    barrier = threading.Barrier(count)
    outcomes = [None] * count

    def runner(index):
        with app.app_context():
            barrier.wait()
            try:
                work(index)
                outcomes[index] = 'ok'
            except InsufficientQuantityError:
                outcomes[index] = 'insufficient'
            except ContentionError:
                outcomes[index] = 'contention'

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def test_concurrent_purchases_never_oversell(app, harvest):
    root_id = harvest(1000.0).id
    db.session.commit()

    outcomes = _run_in_threads(app, 8, lambda i: purchase(root_id, 150, f'buyer-{i}'))

    assert outcomes.count('ok') == 6
    assert outcomes.count('insufficient') == 2
    db.session.expire_all()
    root = get_batch(root_id)
    assert root.remaining_quantity == pytest.approx(100.0)
    assert len(root.children) == 6
    assert conservation_report(root_id)['balanced']


def test_concurrent_splits_drain_exactly_to_zero(app, harvest):
    root_id = harvest(100.0).id
    db.session.commit()

    outcomes = _run_in_threads(app, 6, lambda i: split(root_id, [25], f'{DISTRIBUTOR_ID}-{i}'))

    assert outcomes.count('ok') == 4
    assert outcomes.count('insufficient') == 2
    db.session.expire_all()
    root = get_batch(root_id)
    assert root.remaining_quantity == 0.0
    assert sum(child.initial_quantity for child in root.children) == 100.0


def test_lock_wait_timeout_raises_contention_error(app, harvest):
    root_id = harvest(100.0).id
    db.session.commit()

    impatient = create_app({
        'TESTING': True,
        'DATABASE_URL': app.config['SQLALCHEMY_DATABASE_URI'],
        'AUDIT_SINK_URL': None,
        'LEDGER_LOCK_TIMEOUT_SECONDS': 0.2,
    })

    # Hold the database write lock from another connection.
    holder = db.engine.connect()
    with write_intent():
        transaction = holder.begin()
    try:
        with impatient.app_context():
            with pytest.raises(ContentionError) as excinfo:
                purchase(root_id, 10, 'buyer-late')
            assert excinfo.value.retryable
            assert excinfo.value.to_dict()['error'] == 'contention'
            db.engine.dispose()
    finally:
        transaction.rollback()
        holder.close()

    db.session.expire_all()
    assert get_batch(root_id).remaining_quantity == 100.0


def test_contention_messages_are_recognised():
    locked = OperationalError('BEGIN IMMEDIATE', {}, sqlite3.OperationalError('database is locked'))
    assert is_contention_error(locked)
    assert isinstance(translate_storage_error(locked, 'split'), ContentionError)


def test_other_storage_errors_are_wrapped_without_driver_text():
    broken = IntegrityError('INSERT', {}, sqlite3.IntegrityError('UNIQUE constraint failed: batch.batch_code'))
    assert not is_contention_error(broken)

    error = translate_storage_error(broken, 'split')

    assert isinstance(error, StorageError)
    assert not error.retryable
    assert 'UNIQUE' not in error.message
    assert error.to_dict()['error'] == 'storage_error'
