import asyncio

from dispatchboard.models import RpcResult
from dispatchboard.undo import UndoRegistry, UNDONE, EXPIRED, EMPTY, FAILED


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def recorder(log, name, result=None):
    async def action():
        log.append(name)
        return result if result is not None else RpcResult(ok=True)
    return action


def test_pop_runs_newest_first():
    log = []
    registry = UndoRegistry()
    registry.push('first', recorder(log, 'first'))
    registry.push('second', recorder(log, 'second'))

    result = asyncio.run(registry.pop_and_run())

    assert result.status == UNDONE
    assert result.description == 'second'
    assert log == ['second']
    assert registry.descriptions() == ['first']


def test_fourth_push_evicts_oldest():
    log = []
    registry = UndoRegistry()
    for name in ('a', 'b', 'c', 'd'):
        registry.push(name, recorder(log, name))

    assert len(registry) == 3
    assert registry.descriptions() == ['d', 'c', 'b']

    async def drain():
        return [await registry.pop_and_run() for _ in range(4)]

    results = asyncio.run(drain())
    assert [r.status for r in results] == [UNDONE, UNDONE, UNDONE, EMPTY]
    assert log == ['d', 'c', 'b']


def test_empty_registry():
    result = asyncio.run(UndoRegistry().pop_and_run())
    assert result.status == EMPTY
    assert not result.ok


def test_expired_entry_is_discarded_without_running():
    log = []
    clock = FakeClock()
    registry = UndoRegistry(clock=clock)
    registry.push('old', recorder(log, 'old'))

    clock.now += 301
    result = asyncio.run(registry.pop_and_run())

    assert result.status == EXPIRED
    assert result.description == 'old'
    assert log == []
    assert len(registry) == 0
    assert asyncio.run(registry.pop_and_run()).status == EMPTY


def test_entry_at_exactly_ttl_still_runs():
    log = []
    clock = FakeClock()
    registry = UndoRegistry(clock=clock)
    registry.push('edge', recorder(log, 'edge'))

    clock.now += 300
    assert asyncio.run(registry.pop_and_run()).status == UNDONE
    assert log == ['edge']


def test_raising_inverse_is_failed():
    async def boom():
        raise RuntimeError('backend gone')

    registry = UndoRegistry()
    registry.push('boom', boom)

    result = asyncio.run(registry.pop_and_run())

    assert result.status == FAILED
    assert result.error == 'backend gone'


def test_rejected_inverse_is_failed():
    log = []
    registry = UndoRegistry()
    registry.push('rejected', recorder(log, 'rejected', RpcResult(ok=False, error='M1 WAS CHANGED BY BOB')))

    result = asyncio.run(registry.pop_and_run())

    assert result.status == FAILED
    assert result.error == 'M1 WAS CHANGED BY BOB'
    assert log == ['rejected']


def test_clear():
    registry = UndoRegistry()
    registry.push('x', recorder([], 'x'))
    registry.clear()
    assert registry.peek() is None
