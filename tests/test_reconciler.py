import asyncio

from dispatchboard.board_cache import BoardCache
from dispatchboard.concurrency import ConcurrencyGuard
from dispatchboard.context import SessionContext
from dispatchboard.models import RpcResult
from dispatchboard.reconciler import StateReconciler, LIVE, OFFLINE, STALE


def state(full=True, units=(), marker='2026-03-14T10:00:00.000000Z', **extra):
    return RpcResult(ok=True, full=full, max_revision=marker, units=list(units), **extra)


def unit(unit_id, status='AV', marker='2026-03-14T10:00:00.000000Z'):
    return {'unit_id': unit_id, 'status': status, 'updated_at': marker, 'updated_by': 'SYSTEM'}


class FakeClient:
    def __init__(self, *results, gate=None):
        self.results = list(results)
        self.calls = []
        self.gate = gate

    async def get_state(self, token, since=None):
        self.calls.append(since)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_reconciler(client, signed_in=True, **kwargs):
    context = SessionContext(token='tok-1' if signed_in else None)
    return StateReconciler(client, context, BoardCache(), ConcurrencyGuard(), **kwargs)


def test_full_then_delta_since_max_revision():
    client = FakeClient(
        state(units=[unit('M1'), unit('M2', marker='2026-03-14T10:00:01.000000Z')],
              marker='2026-03-14T10:00:01.000000Z'),
        state(full=False, units=[unit('M1', 'D', marker='2026-03-14T10:00:02.000000Z')],
              marker='2026-03-14T10:00:02.000000Z'),
    )
    reconciler = make_reconciler(client)

    async def scenario():
        first = await reconciler.reconcile()
        second = await reconciler.reconcile()
        return first, second

    first, second = asyncio.run(scenario())

    assert client.calls == [None, '2026-03-14T10:00:01.000000Z']
    assert first.any
    assert second.changed_sections() == ['units']
    assert reconciler.cache.unit('M1').status == 'D'
    assert reconciler.cache.unit('M2') is not None
    assert reconciler.guard.marker_for('M1') == '2026-03-14T10:00:02.000000Z'
    assert reconciler.stats['full'] == 1
    assert reconciler.stats['delta'] == 1
    assert reconciler.liveness == LIVE


def test_not_signed_in_does_nothing():
    client = FakeClient()
    reconciler = make_reconciler(client, signed_in=False)
    assert asyncio.run(reconciler.reconcile()) is None
    assert client.calls == []


def test_trigger_during_cycle_is_dropped():
    async def scenario():
        gate = asyncio.Event()
        client = FakeClient(state(units=[unit('M1')]), state(), gate=gate)
        reconciler = make_reconciler(client)

        running = asyncio.ensure_future(reconciler.reconcile())
        await asyncio.sleep(0)
        assert reconciler.in_flight

        dropped_direct = await reconciler.reconcile()
        dropped_trigger = reconciler.trigger()
        gate.set()
        await running
        return reconciler, client, dropped_direct, dropped_trigger

    reconciler, client, dropped_direct, dropped_trigger = asyncio.run(scenario())

    assert dropped_direct is None
    assert dropped_trigger is None
    assert client.calls == [None]
    assert reconciler.stats['dropped'] == 2


def test_older_response_is_discarded():
    reconciler = make_reconciler(FakeClient())
    newer = reconciler.apply_response(2, state(units=[unit('M1', 'OS')]), requested_full=True)
    older = reconciler.apply_response(1, state(units=[unit('M1', 'AV')]), requested_full=True)

    assert newer is not None
    assert older is None
    assert reconciler.cache.unit('M1').status == 'OS'
    assert reconciler.stats['stale_discarded'] == 1


def test_refresh_discards_response_already_in_flight():
    async def scenario():
        gate = asyncio.Event()
        client = FakeClient(state(units=[unit('M1', 'AV')]), state(units=[unit('M1', 'OS')]), gate=gate)
        reconciler = make_reconciler(client)

        running = asyncio.ensure_future(reconciler.reconcile())
        await asyncio.sleep(0)
        reconciler.request_full_refresh()
        gate.set()
        discarded = await running
        applied = await reconciler.reconcile()
        return reconciler, client, discarded, applied

    reconciler, client, discarded, applied = asyncio.run(scenario())

    assert discarded is None
    assert applied is not None
    assert client.calls == [None, None]
    assert reconciler.cache.unit('M1').status == 'OS'


def test_transport_failure_goes_offline_and_recovers():
    seen = []
    client = FakeClient(
        state(units=[unit('M1')]),
        RpcResult(ok=False, error='NETWORK ERROR', transport_failure=True),
        state(full=False),
    )
    reconciler = make_reconciler(client, on_liveness=seen.append)

    async def scenario():
        for _ in range(3):
            await reconciler.reconcile()

    asyncio.run(scenario())

    assert seen == [LIVE, OFFLINE, LIVE]
    assert reconciler.stats['failures'] == 1


def test_liveness_starts_offline_and_ages_to_stale():
    clock = FakeClock()
    reconciler = make_reconciler(FakeClient(state()), clock=clock, poll_focused=5)
    assert reconciler.liveness == OFFLINE

    asyncio.run(reconciler.reconcile())
    assert reconciler.liveness == LIVE

    clock.now += 16
    assert reconciler.liveness == STALE


def test_unfocused_polling_stays_live_between_cycles():
    seen = []
    clock = FakeClock()
    reconciler = make_reconciler(FakeClient(state()), clock=clock, poll_focused=5, poll_unfocused=30,
                                 on_liveness=seen.append)
    reconciler.set_focus(False)

    asyncio.run(reconciler.reconcile())

    clock.now += 20
    assert reconciler.liveness == LIVE
    clock.now += 60
    assert reconciler.liveness == LIVE
    clock.now += 11
    assert reconciler.liveness == STALE
    assert seen == [LIVE]


def test_rejected_fetch_keeps_liveness():
    client = FakeClient(state(), RpcResult(ok=False, error='NOT AUTHENTICATED'))
    reconciler = make_reconciler(client)

    async def scenario():
        await reconciler.reconcile()
        await reconciler.reconcile()

    asyncio.run(scenario())

    assert reconciler.liveness == LIVE
    assert reconciler.stats['failures'] == 1


def test_unfocused_changes_held_until_focus_returns():
    delivered = []
    client = FakeClient(state(units=[unit('M1')]), state(full=False, banners=[{'kind': 'ALERT', 'message': 'X'}]))
    reconciler = make_reconciler(client, on_change=delivered.append, poll_focused=5, poll_unfocused=30)
    reconciler.set_focus(False)

    async def scenario():
        await reconciler.reconcile()
        await reconciler.reconcile()

    asyncio.run(scenario())

    assert delivered == []
    assert reconciler.interval == 30
    assert reconciler.pending.any

    flushed = reconciler.set_focus(True)

    assert delivered == [flushed]
    assert flushed.changed_sections() == ['units', 'incidents', 'banners', 'messages']
    assert reconciler.interval == 5
    assert not reconciler.pending.any


def test_focused_delivery_skips_unchanged_cycles():
    delivered = []
    client = FakeClient(state(units=[unit('M1')]), state(full=False))
    reconciler = make_reconciler(client, on_change=delivered.append)

    async def scenario():
        await reconciler.reconcile()
        await reconciler.reconcile()

    asyncio.run(scenario())

    assert len(delivered) == 1


def test_run_loop_survives_failures():
    async def scenario():
        stop = asyncio.Event()
        client = FakeClient(RuntimeError('boom'), state(units=[unit('M1')]), *[state(full=False)] * 50)
        reconciler = make_reconciler(client, poll_focused=0.01)

        task = asyncio.ensure_future(reconciler.run(stop))
        while reconciler.stats['full'] == 0:
            await asyncio.sleep(0.01)
        stop.set()
        await task
        return reconciler

    reconciler = asyncio.run(scenario())

    assert reconciler.stats['failures'] >= 1
    assert reconciler.liveness in (LIVE, STALE)
    assert reconciler.cache.unit('M1') is not None


def test_trigger_and_drain():
    client = FakeClient(state(units=[unit('M1')]))
    reconciler = make_reconciler(client)

    async def scenario():
        task = reconciler.trigger()
        await reconciler.drain()
        return task

    task = asyncio.run(scenario())

    assert task.done()
    assert reconciler.cache.unit('M1') is not None


def test_triggered_cycle_crash_is_logged(caplog):
    reconciler = make_reconciler(FakeClient(RuntimeError('boom')))

    async def scenario():
        reconciler.trigger()
        await reconciler.drain()

    with caplog.at_level('ERROR', logger='dispatchboard.reconciler'):
        asyncio.run(scenario())

    assert reconciler.stats['failures'] == 1
    assert reconciler.liveness == OFFLINE
    assert 'Triggered reconcile crashed: boom' in caplog.text


def test_trigger_without_loop_is_noop():
    reconciler = make_reconciler(FakeClient())
    assert reconciler.trigger() is None
