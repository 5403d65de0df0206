"""
Change Detector - per-section fingerprints.

After each reconciliation every section of the board gets a fingerprint built
by concatenating only the fields that change what a consumer shows or does.
Comparing against the previous cycle gives a changed/unchanged flag per
section, and consumers skip unchanged sections entirely.

Fields are joined with ASCII unit/record separators, which never appear in
operator text, so two different boards can only collide if a field itself
contains those control characters.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Iterable, Any

from .board_cache import BoardCache

logger = logging.getLogger(__name__)

SECTIONS = ('units', 'incidents', 'banners', 'messages')

FIELD_SEP = '\x1f'
RECORD_SEP = '\x1e'


def _join(values: Iterable[Any]) -> str:
    return FIELD_SEP.join('' if v is None else str(v) for v in values)


def units_fingerprint(cache: BoardCache) -> str:
    rows = []
    for unit_id in sorted(cache.units):
        u = cache.units[unit_id]
        t = u.tags
        rows.append(_join((
            u.unit_id, u.status, u.incident, u.destination, u.note,
            t.eta_minutes, t.location, t.disposition, t.patient,
            u.active, u.updated_at, u.updated_by, u.level_of_care,
        )))
    # Stacks change which incidents a unit row shows
    for a in cache.stacks.all_entries():
        rows.append(_join(('@', a.unit_id, a.incident_id, a.role, a.order_index)))
    return RECORD_SEP.join(rows)


def incidents_fingerprint(cache: BoardCache) -> str:
    rows = []
    for key in sorted(cache.incidents):
        i = cache.incidents[key]
        rows.append(_join((
            i.incident_id, i.status, i.priority, i.incident_type, i.scene_address,
            i.destination, i.note, i.level_of_care, ','.join(sorted(i.related)),
            i.dispatched_at, i.enroute_at, i.on_scene_at, i.transport_at,
            i.at_destination_at, i.closed_at,
        )))
    return RECORD_SEP.join(rows)


def banners_fingerprint(cache: BoardCache) -> str:
    rows = [_join(('B', b.kind, b.message, b.acknowledged))
            for b in sorted(cache.banners, key=lambda b: b.kind)]
    rows += [_join(('V', d.destination, d.active))
             for d in sorted(cache.diversions, key=lambda d: d.destination)]
    return RECORD_SEP.join(rows)


def messages_fingerprint(cache: BoardCache) -> str:
    return RECORD_SEP.join(
        _join((m.message_id, m.read, m.urgent))
        for m in sorted(cache.messages, key=lambda m: m.message_id)
    )


FINGERPRINTERS = {
    'units': units_fingerprint,
    'incidents': incidents_fingerprint,
    'banners': banners_fingerprint,
    'messages': messages_fingerprint,
}


@dataclass
class ChangeSet:
    """Per-section changed flags for one reconciliation"""
    flags: Dict[str, bool] = field(default_factory=lambda: {s: False for s in SECTIONS})

    def __getitem__(self, section: str) -> bool:
        return self.flags[section]

    @property
    def any(self) -> bool:
        return any(self.flags.values())

    def changed_sections(self):
        return [s for s in SECTIONS if self.flags.get(s)]

    def merge(self, other: 'ChangeSet') -> 'ChangeSet':
        return ChangeSet({s: self.flags.get(s, False) or other.flags.get(s, False) for s in SECTIONS})


class ChangeDetector:
    def __init__(self):
        self._previous: Dict[str, Optional[str]] = {s: None for s in SECTIONS}

    def compute(self, cache: BoardCache) -> Dict[str, str]:
        return {s: FINGERPRINTERS[s](cache) for s in SECTIONS}

    def detect(self, cache: BoardCache) -> ChangeSet:
        """Fingerprint the cache and compare with the previous cycle"""
        current = self.compute(cache)
        flags = {s: current[s] != self._previous[s] for s in SECTIONS}
        self._previous = current
        changes = ChangeSet(flags)
        if changes.any:
            logger.debug(f"Changed sections: {', '.join(changes.changed_sections())}")
        return changes

    def reset(self):
        self._previous = {s: None for s in SECTIONS}
