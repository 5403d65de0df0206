"""
State Reconciler - the poll cycle.

Each cycle asks getState for either
    - a FULL snapshot (no baseline yet, or someone asked for a refresh), or
    - a DELTA of units changed since the highest revision marker we hold,
merges it into the BoardCache, refreshes the concurrency guard's markers and
runs the change detector.

Timing:
    focused     every poll_focused seconds (5s default)
    unfocused   every poll_unfocused seconds (30s default), changes held
                back and flushed when focus returns

LIVE reads as STALE once three poll intervals at the current rate pass
without a good cycle.

Only one cycle runs at a time. A trigger (push notification, a just-sent
mutation) that lands while a cycle is running is dropped, not queued - the
running cycle or the next poll will pick the change up.

Every request gets a sequence number. A response older than the last one
applied, or issued before a full refresh was requested, is thrown away.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Set

from pydantic import ValidationError

from .board_cache import BoardCache
from .concurrency import ConcurrencyGuard
from .context import SessionContext
from .fingerprint import ChangeDetector, ChangeSet
from .models import RpcResult, StateSnapshot

logger = logging.getLogger(__name__)


LIVE = 'LIVE'
OFFLINE = 'OFFLINE'
STALE = 'STALE'


class StateReconciler:
    def __init__(
        self,
        client,
        context: SessionContext,
        cache: BoardCache,
        guard: ConcurrencyGuard,
        detector: Optional[ChangeDetector] = None,
        poll_focused: float = 5.0,
        poll_unfocused: float = 30.0,
        stale_intervals: int = 3,
        on_change: Optional[Callable[[ChangeSet], None]] = None,
        on_liveness: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.context = context
        self.cache = cache
        self.guard = guard
        self.detector = detector or ChangeDetector()
        self.poll_focused = poll_focused
        self.poll_unfocused = poll_unfocused
        self.stale_intervals = stale_intervals
        self.on_change = on_change
        self.on_liveness = on_liveness
        self._clock = clock

        self._in_flight = False
        self._full_requested = False
        self._seq = 0
        self._applied_seq = 0
        self._min_seq = 0
        self._pending = ChangeSet()
        self._state = OFFLINE
        self._last_success: Optional[float] = None
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {
            'cycles': 0,
            'full': 0,
            'delta': 0,
            'dropped': 0,
            'stale_discarded': 0,
            'failures': 0,
        }

    # =========================================================================
    # Liveness
    # =========================================================================

    @property
    def liveness(self) -> str:
        if self._state == LIVE and self._is_stale():
            return STALE
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def stale_after(self) -> float:
        """Seconds without a good cycle before LIVE reads as STALE, at the current poll rate"""
        return self.stale_intervals * self.interval

    def _is_stale(self) -> bool:
        if self._last_success is None:
            return False
        return self._clock() - self._last_success > self.stale_after

    def _set_state(self, state: str):
        before = self.liveness
        self._state = state
        after = self.liveness
        if after != before:
            logger.info(f"Board is {after}")
            if self.on_liveness:
                self.on_liveness(after)

    def _mark_failure(self, result: RpcResult):
        self.stats['failures'] += 1
        if result.transport_failure:
            logger.warning(f"State fetch failed: {result.error}")
            self._set_state(OFFLINE)
        else:
            # Server answered; liveness ages into STALE on its own
            logger.error(f"State fetch rejected: {result.error}")

    # =========================================================================
    # Cycle
    # =========================================================================

    def request_full_refresh(self):
        """Next cycle fetches everything; responses already in flight are discarded"""
        self._full_requested = True
        self._min_seq = self._seq + 1

    async def reconcile(self) -> Optional[ChangeSet]:
        """Run one cycle. Returns the changes, or None if dropped/failed/discarded."""
        if self._in_flight:
            self.stats['dropped'] += 1
            logger.debug("Reconcile dropped - cycle already in flight")
            return None
        if not self.context.signed_in:
            return None

        self._in_flight = True
        try:
            full = self._full_requested or not self.cache.has_baseline
            since = None if full else self.cache.max_revision
            self._seq += 1
            seq = self._seq
            self.stats['cycles'] += 1

            result = await self.client.get_state(self.context.token, since)
            if not result.ok:
                self._mark_failure(result)
                return None
            return self.apply_response(seq, result, requested_full=full)
        finally:
            self._in_flight = False

    def apply_response(self, seq: int, result: RpcResult, requested_full: bool = False) -> Optional[ChangeSet]:
        """Merge one getState response if it is not older than what we hold"""
        if seq < self._min_seq or seq <= self._applied_seq:
            self.stats['stale_discarded'] += 1
            logger.debug(f"Discarding stale state response #{seq} (applied #{self._applied_seq})")
            return None

        payload = result.payload
        if requested_full:
            payload.setdefault('full', True)
        try:
            snapshot = StateSnapshot.from_wire(payload)
        except ValidationError as e:
            logger.error(f"State response malformed: {e}")
            self._mark_failure(RpcResult(ok=False, error='INVALID STATE RESPONSE'))
            return None

        self._applied_seq = seq
        if snapshot.full:
            self._full_requested = False
            self.stats['full'] += 1
        else:
            self.stats['delta'] += 1

        self.cache.apply(snapshot)
        self.guard.capture(snapshot.units)
        changes = self.detector.detect(self.cache)

        self._last_success = self._clock()
        self._set_state(LIVE)
        self._deliver(changes)
        return changes

    # =========================================================================
    # Focus & change delivery
    # =========================================================================

    def _deliver(self, changes: ChangeSet):
        self._pending = self._pending.merge(changes)
        if not self.context.focused:
            return
        self.flush()

    def flush(self) -> ChangeSet:
        """Hand pending changes to the listener"""
        pending, self._pending = self._pending, ChangeSet()
        if pending.any and self.on_change:
            self.on_change(pending)
        return pending

    @property
    def pending(self) -> ChangeSet:
        return self._pending

    def set_focus(self, focused: bool) -> Optional[ChangeSet]:
        self.context.focused = focused
        if focused:
            return self.flush()
        return None

    @property
    def interval(self) -> float:
        return self.poll_focused if self.context.focused else self.poll_unfocused

    # =========================================================================
    # Loop
    # =========================================================================

    def trigger(self) -> Optional[asyncio.Task]:
        """Out-of-cycle reconciliation (push notification, just-sent mutation)"""
        if self._in_flight:
            self.stats['dropped'] += 1
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.reconcile())
        self._tasks.add(task)
        task.add_done_callback(self._trigger_done)
        return task

    def _trigger_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        e = task.exception()
        if e is not None:
            self.stats['failures'] += 1
            logger.error(f"Triggered reconcile crashed: {e}", exc_info=e)
            self._set_state(OFFLINE)

    async def drain(self):
        """Wait for triggered cycles still running"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, stop: Optional[asyncio.Event] = None):
        """Poll until stop is set. Failures are logged, never fatal."""
        stop = stop or asyncio.Event()
        logger.info(f"Reconciler started ({self.poll_focused}s focused / {self.poll_unfocused}s unfocused)")
        while not stop.is_set():
            try:
                await self.reconcile()
            except Exception as e:
                self.stats['failures'] += 1
                logger.error(f"Reconcile cycle crashed: {e}", exc_info=True)
                self._set_state(OFFLINE)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciler stopped")
