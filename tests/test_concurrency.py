import asyncio

from dispatchboard.concurrency import ConcurrencyGuard
from dispatchboard.constants import WILDCARD_MARKER
from dispatchboard.models import ConflictRecord, RpcResult, Unit


def conflict_result(marker='r2', by='BOB', status='OS'):
    return RpcResult(ok=False, conflict=True, error=f"M1 WAS UPDATED BY {by}",
                     current=ConflictRecord(status=status, updated_at=marker, updated_by=by))


class FakeWrite:
    """call(marker) stand-in that records the marker it was given"""

    def __init__(self, *results):
        self.results = list(results)
        self.markers = []

    async def __call__(self, marker):
        self.markers.append(marker)
        return self.results.pop(0)


def test_capture_and_cite_marker():
    guard = ConcurrencyGuard()
    guard.capture([Unit(unit_id='M1', updated_at='r1')])
    write = FakeWrite(RpcResult(ok=True, unit={'updated_at': 'r2'}))

    result = asyncio.run(guard.guarded('m1', write))

    assert result.ok
    assert write.markers == ['r1']
    assert guard.marker_for('M1') == 'r2'


def test_capture_never_moves_marker_backwards():
    guard = ConcurrencyGuard()
    guard.capture([Unit(unit_id='M1', updated_at='r5')])
    guard.capture([Unit(unit_id='M1', updated_at='r3')])
    assert guard.marker_for('M1') == 'r5'


def test_bypass_sends_wildcard():
    guard = ConcurrencyGuard()
    guard.capture([Unit(unit_id='M1', updated_at='r1')])
    write = FakeWrite(RpcResult(ok=True))

    asyncio.run(guard.guarded('M1', write, bypass=True))

    assert write.markers == [WILDCARD_MARKER]


def test_conflict_blocks_until_decided():
    guard = ConcurrencyGuard()
    guard.capture([Unit(unit_id='M1', updated_at='r1')])
    write = FakeWrite(conflict_result(), RpcResult(ok=True))

    async def scenario():
        first = await guard.guarded('M1', write)
        second = await guard.guarded('M1', write)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.conflict
    assert second.conflict
    assert second.error == 'M1 HAS AN UNRESOLVED CONFLICT'
    assert second.current.updated_by == 'BOB'
    assert write.markers == ['r1']
    assert guard.pending_units() == ['M1']


def test_accept_current_adopts_server_marker():
    guard = ConcurrencyGuard()
    guard.capture([Unit(unit_id='M1', updated_at='r1')])
    write = FakeWrite(conflict_result(), RpcResult(ok=True))

    async def scenario():
        await guard.guarded('M1', write)
        current = guard.accept_current('M1')
        result = await guard.guarded('M1', write)
        return current, result

    current, result = asyncio.run(scenario())

    assert current.status == 'OS'
    assert result.ok
    assert write.markers == ['r1', 'r2']
    assert guard.pending('M1') is None


def test_discard_drops_pending_conflict():
    guard = ConcurrencyGuard()
    asyncio.run(guard.guarded('M1', FakeWrite(conflict_result())))
    assert guard.discard('M1')
    assert not guard.discard('M1')
    assert guard.accept_current('M1') is None


def test_bypass_write_settles_conflict():
    guard = ConcurrencyGuard()
    write = FakeWrite(conflict_result(), RpcResult(ok=True))

    async def scenario():
        await guard.guarded('M1', write)
        return await guard.guarded('M1', write, bypass=True)

    assert asyncio.run(scenario()).ok
    assert guard.pending_units() == []


# =============================================================================
# Two readers, one board
# =============================================================================

def test_second_writer_with_stale_marker_gets_conflict(board, make_client):
    async def scenario():
        alice, bob = make_client(), make_client()
        token_a = (await alice.login('DISPATCH', 'alice', 'pw')).payload['token']
        token_b = (await bob.login('DISPATCH', 'bob', 'pw')).payload['token']

        guard_a, guard_b = ConcurrencyGuard(), ConcurrencyGuard()
        for client, token, guard in ((alice, token_a, guard_a), (bob, token_b, guard_b)):
            state = await client.get_state(token)
            guard.capture(Unit.from_wire(u) for u in state.payload['units'])

        first = await guard_a.guarded('M1', lambda m: alice.upsert_unit(token_a, 'M1', {'status': 'D'}, m))
        second = await guard_b.guarded('M1', lambda m: bob.upsert_unit(token_b, 'M1', {'status': 'OOS'}, m))

        await alice.close()
        await bob.close()
        return first, second, guard_b

    first, second, guard_b = asyncio.run(scenario())

    assert first.ok
    assert second.conflict
    assert second.current.status == 'D'
    assert second.current.updated_by == 'ALICE'
    assert board.units['M1']['status'] == 'D'
    assert guard_b.pending('M1').current.revision_marker == board.units['M1']['updated_at']
