"""Batch state machine: create, split, transfer, purchase, consume, reverse."""
import pytest
from sqlalchemy import func, select

from agriledger.extensions import db
from agriledger.models import Batch
from agriledger.services.errors import (
    AlreadyReturnedError,
    InsufficientQuantityError,
    NotReversibleError,
    OwnershipError,
    ValidationError,
)
from agriledger.services.event_log import events_for_batch
from agriledger.services.ledger import (
    can_transition,
    conservation_report,
    consume,
    create_root,
    get_batch,
    purchase,
    return_batch,
    reverse,
    split,
    transfer_partial,
    transfer_whole,
)
from agriledger.utils.codes import BATCH_CODE_MAX_LENGTH, parse_batch_code
from tests.conftest import CONSUMER_ID, DISTRIBUTOR_ID, FARMER_ID, RETAILER_ID


def _batch_count():
    return db.session.execute(select(func.count(Batch.id))).scalar_one()


def test_create_root_records_harvest_event(harvest):
    batch = harvest(1000.0)

    assert batch.is_root
    assert batch.status_name == 'Harvested'
    assert batch.initial_quantity == batch.remaining_quantity == 1000.0
    assert batch.custodian_id == FARMER_ID
    assert batch.custodian_role == 'FARMER'
    assert batch.batch_code.startswith('BATCH-')

    events = events_for_batch(batch.id)
    assert [e.event_type_name for e in events] == ['Harvest']
    assert events[0].details['quantity'] == 1000.0


def test_create_root_requires_product_owner(product):
    with pytest.raises(OwnershipError):
        create_root(product.id, 'someone-else', 10)
    assert _batch_count() == 0


@pytest.mark.parametrize('quantity', [0, -5, 'lots', float('nan')])
def test_create_root_rejects_bad_quantity(product, quantity):
    with pytest.raises(ValidationError):
        create_root(product.id, FARMER_ID, quantity)


def test_split_moves_quantity_into_children(harvest):
    root = harvest(1000.0)
    result = split(root.id, [400, 600], DISTRIBUTOR_ID, actor_id=FARMER_ID, new_custodian_role='distributor')

    assert result.total_split == 1000.0
    assert result.parent.remaining_quantity == 0.0
    # Splitting is not a sale; the parent keeps its status.
    assert result.parent.status_name == 'Harvested'
    assert [c.initial_quantity for c in result.children] == [400.0, 600.0]
    for child in result.children:
        assert child.parent_batch_id == root.id
        assert child.custodian_id == DISTRIBUTOR_ID
        assert child.custodian_role == 'DISTRIBUTOR'
        assert child.status_name == 'In Warehouse'
        assert child.batch_code.startswith(root.batch_code + '-S')
    assert conservation_report(root.id)['balanced']



def test_deep_split_chains_keep_codes_within_column_width(harvest):
    root = harvest(4096.0)
    root_code = root.batch_code
    current_id, quantity = root.id, 4096.0

    for _ in range(12):
        quantity = quantity / 2
        child = split(current_id, [quantity], DISTRIBUTOR_ID).children[0]
        current_id = child.id
        assert len(child.batch_code) <= BATCH_CODE_MAX_LENGTH
        assert child.batch_code.startswith(root_code + '-')

    deepest = get_batch(current_id)
    assert deepest.remaining_quantity == 1.0
    assert parse_batch_code(deepest.batch_code)['root'] == root_code


def test_split_beyond_available_writes_nothing(harvest):
    root = harvest(1000.0)

    with pytest.raises(InsufficientQuantityError) as excinfo:
        split(root.id, [600, 500], DISTRIBUTOR_ID)

    assert excinfo.value.available == 1000.0
    assert excinfo.value.requested == 1100.0
    assert 'Have: 1000, Need: 1100' in excinfo.value.message
    assert get_batch(root.id).remaining_quantity == 1000.0
    assert _batch_count() == 1


def test_split_checks_custody_when_actor_given(harvest):
    root = harvest(100.0)
    with pytest.raises(OwnershipError):
        split(root.id, [10], DISTRIBUTOR_ID, actor_id=RETAILER_ID)


def test_split_rejects_status_a_child_cannot_start_in(harvest):
    root = harvest(100.0)
    with pytest.raises(ValidationError):
        split(root.id, [10], DISTRIBUTOR_ID, new_status='Returned')
    assert get_batch(root.id).remaining_quantity == 100.0


def test_transfer_whole_changes_custodian_in_place(harvest):
    root = harvest(250.0)
    result = transfer_whole(
        root.id, DISTRIBUTOR_ID, 'In Warehouse', actor_id=FARMER_ID, new_custodian_role='DISTRIBUTOR',
    )

    assert result.mode == 'whole'
    assert result.batch.id == root.id
    assert result.batch.custodian_id == DISTRIBUTOR_ID
    assert result.batch.status_name == 'In Warehouse'
    assert result.event.event_type_name == 'Transferred'
    # The event carries the role of the party that handed it over.
    assert result.event.custodian_role == 'FARMER'
    assert _batch_count() == 1


def test_transfer_whole_respects_transition_table(harvest):
    root = harvest(250.0)
    transfer_whole(root.id, RETAILER_ID, 'In Shop')
    with pytest.raises(ValidationError):
        transfer_whole(root.id, DISTRIBUTOR_ID, 'In Warehouse')
    assert get_batch(root.id).custodian_id == RETAILER_ID


def test_transfer_partial_marks_source_sold_when_exhausted(harvest):
    root = harvest(100.0)
    result = transfer_partial(root.id, 100, DISTRIBUTOR_ID, 'In Warehouse', buyer_role='DISTRIBUTOR')

    assert result.is_partial
    assert result.batch.parent_batch_id == root.id
    assert result.batch.initial_quantity == 100.0
    assert result.source.remaining_quantity == 0.0
    assert result.source.status_name == 'Sold'
    assert result.event.event_type_name == 'Sold'
    assert result.event.details['child_batch_code'] == result.batch.batch_code


def test_purchase_of_everything_is_a_whole_transfer(harvest):
    root = harvest(80.0)
    result = purchase(root.id, 80, DISTRIBUTOR_ID)

    assert result.mode == 'whole'
    assert result.batch.id == root.id
    assert result.batch.custodian_id == DISTRIBUTOR_ID
    assert result.batch.custodian_role == 'DISTRIBUTOR'


def test_purchase_of_part_creates_child(harvest):
    root = harvest(80.0)
    result = purchase(root.id, 30, DISTRIBUTOR_ID)

    assert result.mode == 'partial'
    assert result.batch.batch_code.startswith(root.batch_code + '-D')
    assert result.source.remaining_quantity == 50.0
    assert result.source.status_name == 'Harvested'


def test_holder_cannot_buy_own_batch(harvest):
    root = harvest(80.0)
    with pytest.raises(ValidationError):
        purchase(root.id, 10, FARMER_ID)


def test_consume_creates_consumed_child_and_blocks_further_draws(harvest):
    root = harvest(20.0)
    result = consume(root.id, 5, CONSUMER_ID)

    child = result.batch
    assert child.status_name == 'Consumed'
    assert child.custodian_role == 'CONSUMER'
    assert child.batch_code.startswith(root.batch_code + '-C')
    assert result.source.remaining_quantity == 15.0

    with pytest.raises(ValidationError):
        consume(child.id, 1, 'consumer-2')


def test_transition_table():
    assert can_transition('Harvested', 'In Warehouse')
    assert can_transition('In Warehouse', 'In Shop')
    assert can_transition('In Shop', 'In Shop')
    assert not can_transition('In Shop', 'Harvested')
    assert not can_transition('Sold', 'In Shop')
    assert not can_transition('Returned', 'In Warehouse')


def test_reversal_round_trip(harvest):
    root = harvest(1000.0)
    child = split(root.id, [300], DISTRIBUTOR_ID).children[0]

    result = reverse(child.id, actor_id=DISTRIBUTOR_ID)

    assert result.restored_quantity == 300.0
    assert result.parent.remaining_quantity == 1000.0
    assert result.parent.status_name == 'Harvested'
    assert result.batch.remaining_quantity == 0.0
    assert result.batch.status_name == 'Returned'
    assert result.event.details['restored_quantity'] == 300.0
    assert conservation_report(root.id)['balanced']


def test_reverse_root_is_not_reversible(harvest):
    root = harvest(10.0)
    with pytest.raises(NotReversibleError):
        reverse(root.id)


def test_reverse_twice_is_rejected(harvest):
    root = harvest(10.0)
    child = split(root.id, [4], DISTRIBUTOR_ID).children[0]
    reverse(child.id)

    with pytest.raises(AlreadyReturnedError):
        reverse(child.id)
    assert get_batch(root.id).remaining_quantity == 10.0


def test_reverse_rejects_non_available_restore_status(harvest):
    root = harvest(10.0)
    child = split(root.id, [6], DISTRIBUTOR_ID).children[0]
    with pytest.raises(ValidationError):
        reverse(child.id, restore_status='Sold')
    assert get_batch(child.id).remaining_quantity == 6.0


def test_reverse_into_returned_parent_is_rejected(harvest):
    root = harvest(10.0)
    middle = split(root.id, [6], DISTRIBUTOR_ID).children[0]
    leaf = split(middle.id, [2], RETAILER_ID).children[0]
    reverse(middle.id)

    with pytest.raises(ValidationError):
        reverse(leaf.id)
    assert get_batch(leaf.id).remaining_quantity == 2.0


def test_purchase_then_reverse_scenario(harvest):
    root = harvest(1000.0)
    small, large = split(root.id, [400, 600], DISTRIBUTOR_ID, new_custodian_role='DISTRIBUTOR').children

    bought = purchase(large.id, 250, RETAILER_ID, 'In Shop', buyer_role='RETAILER').batch
    assert _batch_count() == 4
    assert get_batch(large.id).remaining_quantity == 350.0
    assert bought.initial_quantity == 250.0

    reverse(bought.id, actor_id=RETAILER_ID)

    large = get_batch(large.id)
    bought = get_batch(bought.id)
    assert large.remaining_quantity == 600.0
    assert large.status_name == 'In Warehouse'
    assert bought.remaining_quantity == 0.0
    assert bought.status_name == 'Returned'
    assert get_batch(small.id).remaining_quantity == 400.0
    for batch_id in (root.id, small.id, large.id, bought.id):
        assert conservation_report(batch_id)['balanced']


def test_return_batch_sends_child_back_to_parent(harvest):
    root = harvest(50.0)
    child = purchase(root.id, 20, DISTRIBUTOR_ID).batch

    result = return_batch(child.id, DISTRIBUTOR_ID)

    assert result.parent.id == root.id
    assert get_batch(root.id).remaining_quantity == 50.0


def test_return_batch_of_root_reverts_ownership_to_farmer(harvest):
    root = harvest(50.0)
    transfer_whole(root.id, DISTRIBUTOR_ID, 'In Warehouse', new_custodian_role='DISTRIBUTOR')

    result = return_batch(root.id, DISTRIBUTOR_ID)

    assert result.parent is None
    assert result.batch.custodian_id == FARMER_ID
    assert result.batch.custodian_role == 'FARMER'
    assert result.batch.status_name == 'Harvested'
    assert result.batch.remaining_quantity == 50.0
    assert result.event.custodian_role == 'DISTRIBUTOR'


def test_return_batch_requires_holder(harvest):
    root = harvest(50.0)
    transfer_whole(root.id, DISTRIBUTOR_ID, 'In Warehouse')
    with pytest.raises(OwnershipError):
        return_batch(root.id, RETAILER_ID)


def test_root_still_with_farmer_cannot_be_returned(harvest):
    root = harvest(50.0)
    with pytest.raises(NotReversibleError):
        return_batch(root.id, FARMER_ID)


def test_conservation_across_mixed_operations(harvest):
    root = harvest(1000.0)
    first, second = split(root.id, [200, 300], DISTRIBUTOR_ID).children
    bought = purchase(second.id, 100, RETAILER_ID, 'In Shop').batch
    consume(bought.id, 40, CONSUMER_ID)
    reverse(bought.id)
    consume(root.id, 50, CONSUMER_ID)

    for batch_id in (root.id, first.id, second.id, bought.id):
        report = conservation_report(batch_id)
        assert report['balanced'], report

    report = conservation_report(second.id)
    assert report['remaining_quantity'] == 260.0
    assert report['returned_by_children'] == 60.0
