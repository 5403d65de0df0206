"""
Cached board model.

Merge rules:
    - full snapshot: every section replaced, units included
    - delta: unit rows in the delta replace same-keyed cached rows, all other
      cached units untouched; every other section replaced wholesale

Applying the same snapshot twice leaves the cache exactly as applying it once.
"""

import logging
from typing import Dict, List, Optional

from .assignments import AssignmentStack
from .models import Unit, Incident, Banner, Diversion, Message, StateSnapshot

logger = logging.getLogger(__name__)


class BoardCache:
    def __init__(self):
        self.units: Dict[str, Unit] = {}
        self.incidents: Dict[str, Incident] = {}
        self.stacks = AssignmentStack()
        self.banners: List[Banner] = []
        self.diversions: List[Diversion] = []
        self.messages: List[Message] = []
        self.max_revision: Optional[str] = None
        self.has_baseline = False

    def apply(self, snapshot: StateSnapshot):
        if snapshot.full:
            self.units = {u.unit_id: u for u in snapshot.units}
            self.has_baseline = True
        else:
            for unit in snapshot.units:
                self.units[unit.unit_id] = unit

        self.incidents = {i.incident_id: i for i in snapshot.incidents}
        self.stacks.load(snapshot.assignments)
        self.banners = list(snapshot.banners)
        self.diversions = list(snapshot.diversions)
        self.messages = list(snapshot.messages)

        markers = [u.updated_at for u in snapshot.units if u.updated_at]
        if snapshot.max_revision:
            markers.append(snapshot.max_revision)
        if self.max_revision:
            markers.append(self.max_revision)
        # Markers are ISO timestamps; string order is time order
        self.max_revision = max(markers) if markers else None

        logger.debug(
            f"Applied {'full' if snapshot.full else 'delta'} snapshot: "
            f"{len(snapshot.units)} unit rows, {len(self.incidents)} incidents, max_revision={self.max_revision}"
        )

    def reset(self):
        """Drop the baseline so the next cycle fetches everything"""
        self.__init__()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def unit(self, unit_id: str) -> Optional[Unit]:
        return self.units.get(unit_id.upper()) if unit_id else None

    def incident(self, incident_id: str) -> Optional[Incident]:
        return self.incidents.get(incident_id) if incident_id else None

    def incident_keys(self) -> List[str]:
        return sorted(self.incidents)

    def unit_ids(self) -> List[str]:
        return sorted(self.units)

    def priorities(self) -> Dict[str, Optional[int]]:
        return {k: i.priority for k, i in self.incidents.items()}

    def unit_urgency(self, unit_id: str) -> Optional[int]:
        return self.stacks.urgency(unit_id, self.priorities())

    def replace_unit(self, unit: Unit):
        """Install an authoritative record outside a poll cycle (conflict payloads)"""
        self.units[unit.unit_id] = unit
