"""
Optimistic Concurrency Guard

Every unit mutation carries the revision marker we last saw for that unit.
The backend refuses the write if the unit has moved on since, and answers
with a conflict envelope holding the authoritative record:

    {ok: false, conflict: true, error: "...",
     current: {status, updated_at, updated_by, ...}}

The guard never settles a conflict on its own. It parks the authoritative
record for the unit and refuses further guarded writes to that unit until the
operator either adopts the current record (`accept_current`) or drops the
attempt (`discard`). Privileged overrides pass bypass=True, which sends the
wildcard marker and skips both the backend check and the local block.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .constants import WILDCARD_MARKER
from .models import ConflictRecord, RpcResult, Unit

logger = logging.getLogger(__name__)


@dataclass
class PendingConflict:
    unit_id: str
    supplied_marker: Optional[str]
    current: ConflictRecord
    error: str = ''


class ConcurrencyGuard:
    def __init__(self):
        self._markers: Dict[str, Optional[str]] = {}
        self._conflicts: Dict[str, PendingConflict] = {}

    # -------------------------------------------------------------------------
    # Marker capture
    # -------------------------------------------------------------------------

    def capture(self, units: Iterable[Unit]):
        """Remember the markers of freshly read units, never moving one backwards"""
        for unit in units:
            known = self._markers.get(unit.unit_id)
            if known and unit.updated_at and unit.updated_at < known:
                continue
            self._markers[unit.unit_id] = unit.updated_at

    def capture_marker(self, unit_id: str, marker: Optional[str]):
        self._markers[unit_id.upper()] = marker

    def marker_for(self, unit_id: str, bypass: bool = False) -> Optional[str]:
        if bypass:
            return WILDCARD_MARKER
        return self._markers.get(unit_id.upper())

    # -------------------------------------------------------------------------
    # Conflicts
    # -------------------------------------------------------------------------

    def pending(self, unit_id: str) -> Optional[PendingConflict]:
        return self._conflicts.get(unit_id.upper())

    def pending_units(self):
        return sorted(self._conflicts)

    def accept_current(self, unit_id: str) -> Optional[ConflictRecord]:
        """
        Operator decision: adopt the server's record as the new baseline.
        The next guarded write cites the authoritative marker.
        """
        conflict = self._conflicts.pop(unit_id.upper(), None)
        if conflict is None:
            return None
        self._markers[conflict.unit_id] = conflict.current.revision_marker
        logger.info(f"{conflict.unit_id}: operator accepted current record "
                    f"({conflict.current.status} by {conflict.current.updated_by})")
        return conflict.current

    def discard(self, unit_id: str) -> bool:
        """Operator decision: abandon the rejected write"""
        return self._conflicts.pop(unit_id.upper(), None) is not None

    # -------------------------------------------------------------------------
    # Guarded call
    # -------------------------------------------------------------------------

    async def guarded(
        self,
        unit_id: str,
        call: Callable[[Optional[str]], Awaitable[RpcResult]],
        bypass: bool = False,
    ) -> RpcResult:
        """
        Run call(marker) for a unit mutation.

        A unit with an undecided conflict is refused locally; the refusal
        carries the parked authoritative record.
        """
        unit_id = unit_id.upper()
        waiting = self._conflicts.get(unit_id)
        if waiting is not None and not bypass:
            return RpcResult(ok=False, conflict=True, current=waiting.current,
                             error=f"{unit_id} HAS AN UNRESOLVED CONFLICT")

        marker = self.marker_for(unit_id, bypass=bypass)
        result = await call(marker)

        if result.conflict:
            current = result.current or ConflictRecord()
            self._conflicts[unit_id] = PendingConflict(
                unit_id=unit_id,
                supplied_marker=marker,
                current=current,
                error=result.error or '',
            )
            logger.warning(
                f"Conflict on {unit_id}: cited {marker!r}, server has {current.revision_marker!r} "
                f"({current.status} by {current.updated_by})"
            )
            return result

        if result.ok:
            new_marker = _marker_from(result)
            if new_marker:
                self._markers[unit_id] = new_marker
            if bypass:
                self._conflicts.pop(unit_id, None)
        return result


def _marker_from(result: RpcResult) -> Optional[str]:
    """New marker from a successful write, when the backend echoes one"""
    payload = result.payload
    unit = payload.get('unit')
    if isinstance(unit, dict) and unit.get('updated_at'):
        return unit['updated_at']
    return payload.get('updated_at')
