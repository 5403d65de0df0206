import random

import pytest

from dispatchboard.assignments import AssignmentStack, StackError
from dispatchboard.models import Assignment, ROLE_PRIMARY, ROLE_QUEUED


@pytest.fixture
def stacks():
    return AssignmentStack()


def primaries(stacks, unit_id):
    return [a for a in stacks.entries(unit_id) if a.role == ROLE_PRIMARY]


def test_queue_on_empty_unit_becomes_primary(stacks):
    change = stacks.queue('26-0001', 'M1')
    assert stacks.primary('M1') == '26-0001'
    assert stacks.queued('M1') == []
    assert change.previous_primary is None


def test_queue_behind_primary(stacks):
    stacks.queue('26-0001', 'M1')
    stacks.queue('26-0002', 'M1')
    stacks.queue('26-0003', 'M1')
    assert stacks.primary('M1') == '26-0001'
    assert stacks.queued('M1') == ['26-0002', '26-0003']


def test_queue_existing_entry_is_noop(stacks):
    stacks.queue('26-0001', 'M1')
    assert stacks.queue('26-0001', 'M1').noop
    assert len(stacks.entries('M1')) == 1


def test_promote_demotes_old_primary_to_tail(stacks):
    for key in ('A', 'B', 'C'):
        stacks.queue(key, 'M1')

    change = stacks.promote('C', 'M1')

    assert change.previous_primary == 'A'
    assert stacks.primary('M1') == 'C'
    assert stacks.queued('M1') == ['B', 'A']


def test_promote_unknown_entry(stacks):
    stacks.queue('A', 'M1')
    with pytest.raises(StackError):
        stacks.promote('Z', 'M1')


def test_assign_pushes_primary_into_queue(stacks):
    stacks.queue('A', 'M1')
    stacks.queue('B', 'M1')

    change = stacks.assign('X', 'M1')

    assert change.previous_primary == 'A'
    assert stacks.primary('M1') == 'X'
    assert stacks.queued('M1') == ['B', 'A']


def test_assign_current_primary_is_noop(stacks):
    stacks.assign('A', 'M1')
    assert stacks.assign('A', 'M1').noop


def test_clear_primary_promotes_earliest_queued(stacks):
    for key in ('A', 'B', 'C'):
        stacks.queue(key, 'M1')

    change = stacks.clear('A', 'M1')

    assert change.was_primary
    assert change.promoted == 'B'
    assert len(primaries(stacks, 'M1')) == 1
    assert stacks.primary('M1') == 'B'
    assert stacks.queued('M1') == ['C']


def test_clear_queued_entry_promotes_nothing(stacks):
    stacks.queue('A', 'M1')
    stacks.queue('B', 'M1')

    change = stacks.clear('B', 'M1')

    assert not change.was_primary
    assert change.promoted is None
    assert stacks.primary('M1') == 'A'


def test_clear_last_entry_empties_unit(stacks):
    stacks.queue('A', 'M1')
    stacks.clear('A', 'M1')
    assert stacks.entries('M1') == []
    with pytest.raises(StackError):
        stacks.clear('A', 'M1')


def test_at_most_one_primary_under_random_operations(stacks):
    rng = random.Random(48)
    units = ['M1', 'M2', 'M3']
    incidents = [f"26-{n:04d}" for n in range(1, 7)]

    for _ in range(500):
        op = rng.choice(['QUEUE', 'PRIMARY', 'ASSIGN', 'CLEAR'])
        try:
            stacks.apply(op, rng.choice(incidents), rng.choice(units))
        except StackError:
            pass
        for unit_id in units:
            entries = stacks.entries(unit_id)
            assert len(primaries(stacks, unit_id)) <= 1
            if entries:
                # Anything on the stack means something is primary
                assert len(primaries(stacks, unit_id)) == 1
                assert [a.order_index for a in entries] == list(range(len(entries)))


def test_load_skips_cleared_and_demotes_extra_primaries(stacks):
    stacks.load([
        Assignment(incident_id='A', unit_id='m1', role=ROLE_PRIMARY, order_index=0),
        Assignment(incident_id='B', unit_id='M1', role=ROLE_PRIMARY, order_index=1),
        Assignment(incident_id='C', unit_id='M1', role=ROLE_QUEUED, order_index=2, cleared=True),
    ])
    assert stacks.primary('M1') == 'A'
    assert stacks.queued('M1') == ['B']


def test_urgency_is_best_priority_across_stack(stacks):
    stacks.queue('A', 'M1')
    stacks.queue('B', 'M1')
    assert stacks.urgency('M1', {'A': 3, 'B': 1}) == 1
    assert stacks.urgency('M1', {'A': None, 'B': None}) is None
    assert stacks.urgency('M2', {'A': 1}) is None


def test_copy_is_independent(stacks):
    stacks.queue('A', 'M1')
    copy = stacks.copy()
    copy.queue('B', 'M1')
    assert stacks.queued('M1') == []
    assert copy.queued('M1') == ['B']


def test_units_for(stacks):
    stacks.queue('A', 'M2')
    stacks.queue('A', 'M1')
    assert stacks.units_for('A') == ['M1', 'M2']


def test_unknown_operation(stacks):
    with pytest.raises(StackError):
        stacks.apply('BOGUS', 'A', 'M1')
