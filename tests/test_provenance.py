"""Genealogy, full history, stage classification and the traceability story."""
import sqlite3
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from agriledger.extensions import db, write_intent
from agriledger.services.errors import ContentionError, NotFoundError, StorageError, ValidationError
from agriledger.services.event_log import events_for_batch, record_event
from agriledger.services.ledger import get_batch, purchase, split
from agriledger.services.provenance import (
    classify_by_role,
    full_event_history,
    genealogy,
    journey_summary,
    stage_for,
    trace_batch,
)
from tests.conftest import DISTRIBUTOR_ID, FARMER_ID, RETAILER_ID


@pytest.fixture
def chain(harvest):
    """harvest -> split A -> split B, plus an unrelated sibling of A."""
    root = harvest(1000.0)
    record_event(root.id, 'Irrigation', FARMER_ID, details={'litres': 500})
    a, sibling = split(root.id, [400, 100], DISTRIBUTOR_ID, new_custodian_role='DISTRIBUTOR').children
    b = split(a.id, [150], RETAILER_ID, new_custodian_role='RETAILER', new_status='In Shop').children[0]
    record_event(b.id, 'Quality Check', RETAILER_ID, details={'grade': 'A'})
    record_event(sibling.id, 'Quality Check', DISTRIBUTOR_ID)
    ids = {'root': root.id, 'a': a.id, 'b': b.id, 'sibling': sibling.id}
    db.session.commit()
    return ids


def test_genealogy_walks_parents_and_children(chain):
    tree = genealogy(chain['a'])

    assert tree.is_complete
    assert [batch.id for batch in tree.ancestors] == [chain['root']]
    assert [batch.id for batch in tree.descendants] == [chain['b']]

    data = tree.to_dict()['tree']
    assert data['batch']['id'] == chain['a']
    assert data['parent']['batch']['id'] == chain['root']
    assert data['parent']['parent'] is None
    assert [child['batch']['id'] for child in data['children']] == [chain['b']]


def test_genealogy_of_root_lists_whole_subtree(chain):
    tree = genealogy(chain['root'])
    assert tree.ancestors == []
    assert {batch.id for batch in tree.descendants} == {chain['a'], chain['b'], chain['sibling']}


def test_genealogy_unknown_batch(app_ctx):
    with pytest.raises(NotFoundError):
        genealogy(424242)
    with pytest.raises(ValidationError):
        genealogy('not-an-id')


def test_full_history_covers_every_ancestor_in_time_order(chain):
    history = full_event_history(chain['b'])

    expected = set()
    for key in ('root', 'a', 'b'):
        expected.update(event.id for event in events_for_batch(chain[key]))
    sibling_events = {event.id for event in events_for_batch(chain['sibling'])}

    got = [event.id for event in history.events]
    assert set(got) == expected
    assert not set(got) & sibling_events
    keys = [(event.recorded_at, event.id) for event in history.events]
    assert keys == sorted(keys)
    assert [batch.id for batch in history.chain] == [chain['b'], chain['a'], chain['root']]
    assert history.events[0].event_type_name == 'Harvest'
    assert history.is_complete


def test_ancestor_walk_is_bounded_by_max_depth(chain):
    history = full_event_history(chain['b'], max_depth=1)

    assert [batch.id for batch in history.chain] == [chain['b'], chain['a']]
    assert [o.reason for o in history.omissions] == ['depth_limit']


def test_parent_cycle_is_reported_not_followed(chain):
    # Corrupt the data behind the ORM's back: make the root point at its grandchild.
    db.session.execute(
        text('UPDATE batch SET parent_batch_id = :child WHERE id = :root'),
        {'child': chain['b'], 'root': chain['root']},
    )
    db.session.commit()
    db.session.remove()

    tree = genealogy(chain['a'])
    history = full_event_history(chain['a'])

    assert 'parent_cycle' in {o.reason for o in tree.omissions}
    assert 'parent_cycle' in {o.reason for o in history.omissions}
    assert [batch.id for batch in history.chain] == [chain['a'], chain['root'], chain['b']]


def test_unreadable_branch_is_omitted(chain):
    db.session.execute(
        text("UPDATE batch SET origin_date = 'not-a-date' WHERE id = :id"),
        {'id': chain['sibling']},
    )
    db.session.commit()
    db.session.remove()

    tree = genealogy(chain['root'])

    assert not tree.is_complete
    assert [(o.reason, o.batch_id) for o in tree.omissions] == [('unreadable_batch', chain['sibling'])]
    assert {batch.id for batch in tree.descendants} == {chain['a'], chain['b']}


def test_unreadable_event_is_omitted_from_history(chain):
    irrigation = [e.id for e in events_for_batch(chain['root']) if e.event_type_name == 'Irrigation'][0]
    db.session.execute(text("UPDATE event SET details = 'not json{' WHERE id = :id"), {'id': irrigation})
    db.session.commit()
    db.session.remove()

    history = full_event_history(chain['b'])

    assert irrigation not in {event.id for event in history.events}
    assert [(o.reason, o.event_id) for o in history.omissions] == [('unreadable_event', irrigation)]
    assert {event.event_type_name for event in history.events} >= {'Harvest', 'Split', 'Quality Check'}


def test_classification_prefers_recorded_role():
    events = [
        {'event_type': 'Harvest', 'custodian_role': 'DISTRIBUTOR'},
        {'event_type': 'Sold', 'custodian_role': 'FARMER'},
        {'event_type': 'Picked Up', 'custodian_role': None},
        {'event_type': 'Received', 'custodian_role': 'shopkeeper'},
        {'event_type': 'Split', 'custodian_role': 'CONSUMER'},
        {'event_type': 'Returned', 'custodian_role': None},
        {'event_type': 'Quality Check', 'custodian_role': 'DISTRIBUTOR'},
    ]

    buckets = classify_by_role(events)

    assert [e['event_type'] for e in buckets['origin']] == ['Harvest', 'Sold']
    assert [e['event_type'] for e in buckets['transport']] == ['Picked Up']
    assert [e['event_type'] for e in buckets['retail']] == ['Received']
    assert [e['event_type'] for e in buckets['processing']] == ['Split', 'Quality Check']
    assert [e['event_type'] for e in buckets['unclassified']] == ['Returned']


@pytest.mark.parametrize('event_type, role, stage', [
    ('Fertilizer Applied', None, 'origin'),
    ('Delivered', None, 'transport'),
    ('Transferred', None, 'processing'),
    ('In Transit', 'TRANSPORTER', 'transport'),
    ('Custom Audit', None, 'unclassified'),
])
def test_stage_fallback_by_kind(event_type, role, stage):
    assert stage_for(event_type, role) == stage


def test_journey_summary_defaults():
    assert journey_summary([]) == ['Product journey tracked']
    assert journey_summary([{'event_type': 'Split'}, {'event_type': 'Harvest'}]) == [
        'Harvested from farm',
        'Split into smaller batches',
    ]


def test_trace_batch_story(chain):
    code = get_batch(chain['b']).batch_code
    story = trace_batch(code)

    assert story['batch']['id'] == chain['b']
    assert story['batch']['product']['farmer_id'] == FARMER_ID
    assert story['genealogy']['is_root'] is False
    assert story['genealogy']['parent_batch_code'].startswith('BATCH-')
    assert story['summary']['origin'] == 'Split from parent batch'
    assert story['summary']['total_events'] == len(story['timeline'])
    assert 'Harvested from farm' in story['summary']['journey']
    assert story['omissions'] == []

    origin_types = {e['event_type'] for e in story['lifecycle_stages']['origin']}
    assert {'Harvest', 'Irrigation'} <= origin_types
    retail_types = {e['event_type'] for e in story['lifecycle_stages']['retail']}
    assert 'Quality Check' in retail_types
    assert all('attachments' in entry for entry in story['timeline'])
    assert story['timeline'][0]['batch_code'].startswith('BATCH-')


def test_trace_batch_includes_audit_trail_when_asked(chain):
    code = get_batch(chain['root']).batch_code
    with patch('agriledger.services.provenance.get_audit_sink') as get_sink:
        get_sink.return_value.transactions_for_batches.return_value = {code: [{'event_type': 'HARVEST'}]}
        story = trace_batch(code, include_audit=True)

    assert story['summary']['origin'] == 'Harvested from farm'
    assert story['audit_trail'] == {code: [{'event_type': 'HARVEST'}]}


def test_trace_unknown_code(app_ctx):
    with pytest.raises(NotFoundError):
        trace_batch('BATCH-19990101-000000-ZZZZ')
    with pytest.raises(ValidationError):
        trace_batch('  ')


def test_purchase_child_history_starts_at_harvest(harvest):
    root = harvest(60.0)
    child = purchase(root.id, 10, DISTRIBUTOR_ID).batch

    history = full_event_history(child.id)

    assert [e.event_type_name for e in history.events] == ['Harvest', 'Sold']


def test_provenance_reads_do_not_wait_for_a_writer(chain):
    code = get_batch(chain['b']).batch_code
    db.session.commit()

    # Another connection holds the database write lock for the whole read.
    holder = db.engine.connect()
    with write_intent():
        transaction = holder.begin()
    try:
        tree = genealogy(chain['b'])
        history = full_event_history(chain['b'])
        story = trace_batch(code)
    finally:
        transaction.rollback()
        holder.close()

    assert [batch.id for batch in tree.ancestors] == [chain['a'], chain['root']]
    assert len(history.events) >= 3
    assert story['batch']['batch_code'] == code


def test_storage_failures_surface_as_ledger_errors(chain):
    locked = OperationalError('SELECT', {}, sqlite3.OperationalError('database is locked'))
    with patch('agriledger.services.provenance._load_start', side_effect=locked):
        with pytest.raises(ContentionError):
            genealogy(chain['a'])
        with pytest.raises(ContentionError):
            full_event_history(chain['a'])

    broken = OperationalError('SELECT', {}, sqlite3.OperationalError('disk I/O error'))
    with patch('agriledger.services.provenance.get_batch_by_code', side_effect=broken):
        with pytest.raises(StorageError) as excinfo:
            trace_batch('BATCH-20250101-000000-AAAA')
    assert 'disk I/O' not in excinfo.value.message
