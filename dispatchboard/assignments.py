"""
Assignment Stack Manager

Each unit works at most one PRIMARY incident and may hold any number of
QUEUED incidents behind it:

    none -> {primary} -> {primary + queued(1..N)}

Operations:
    QUEUE    - becomes primary if the unit has none, else appended to the queue
    PRIMARY  - promote an entry; the old primary goes to the tail of the queue
    ASSIGN   - force the incident in as primary, old primary pushed to the queue
    CLEAR    - remove an entry; clearing the primary auto-promotes the
               earliest queued entry

Pure logic, no I/O. The dispatcher uses it to predict what the backend will do
(so it can tell the operator which entry got promoted) and to build undo
actions; the reconciler rebuilds it from every snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable

from .models import Assignment, ROLE_PRIMARY, ROLE_QUEUED

logger = logging.getLogger(__name__)


@dataclass
class StackChange:
    """What one stack operation did"""
    op: str
    incident_id: str
    unit_id: str
    previous_primary: Optional[str] = None  # Primary before the operation
    promoted: Optional[str] = None          # Entry auto-promoted by CLEAR
    was_primary: bool = False               # CLEAR removed the primary
    noop: bool = False


class StackError(ValueError):
    """Operation references an entry that isn't on the unit's stack"""


class AssignmentStack:
    """Per-unit primary/queued stacks for the whole board"""

    def __init__(self, assignments: Optional[Iterable[Assignment]] = None):
        self._stacks: Dict[str, List[Assignment]] = {}
        if assignments:
            self.load(assignments)

    def load(self, assignments: Iterable[Assignment]):
        """Replace all stacks from snapshot rows (cleared rows are skipped)"""
        self._stacks = {}
        for a in assignments:
            if a.cleared:
                continue
            self._stacks.setdefault(a.unit_id.upper(), []).append(a.model_copy())
        for unit_id, entries in self._stacks.items():
            entries.sort(key=lambda a: (a.role != ROLE_PRIMARY, a.order_index))
            # A backend that sent two primaries gets the earliest one honored
            seen_primary = False
            for a in entries:
                if a.role == ROLE_PRIMARY:
                    if seen_primary:
                        logger.warning(f"Unit {unit_id} had multiple primaries - demoting {a.incident_id}")
                        a.role = ROLE_QUEUED
                    seen_primary = True
            self._renumber(unit_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def entries(self, unit_id: str) -> List[Assignment]:
        return [a.model_copy() for a in self._stacks.get(unit_id.upper(), [])]

    def all_entries(self) -> List[Assignment]:
        return [a.model_copy() for unit_id in sorted(self._stacks) for a in self._stacks[unit_id]]

    def primary(self, unit_id: str) -> Optional[str]:
        for a in self._stacks.get(unit_id.upper(), []):
            if a.role == ROLE_PRIMARY:
                return a.incident_id
        return None

    def queued(self, unit_id: str) -> List[str]:
        entries = [a for a in self._stacks.get(unit_id.upper(), []) if a.role == ROLE_QUEUED]
        return [a.incident_id for a in sorted(entries, key=lambda a: a.order_index)]

    def has(self, unit_id: str, incident_id: str) -> bool:
        return self._find(unit_id, incident_id) is not None

    def units_for(self, incident_id: str) -> List[str]:
        return sorted(u for u, entries in self._stacks.items()
                      if any(a.incident_id == incident_id for a in entries))

    def urgency(self, unit_id: str, priorities: Dict[str, Optional[int]]) -> Optional[int]:
        """
        Most urgent priority across everything the unit holds, not just its
        primary. Lower number = more urgent. None if nothing has a priority.
        """
        values = [priorities.get(a.incident_id) for a in self._stacks.get(unit_id.upper(), [])]
        values = [p for p in values if p is not None]
        return min(values) if values else None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def queue(self, incident_id: str, unit_id: str) -> StackChange:
        unit_id = unit_id.upper()
        stack = self._stacks.setdefault(unit_id, [])
        current = self.primary(unit_id)
        change = StackChange('QUEUE', incident_id, unit_id, previous_primary=current)

        if self._find(unit_id, incident_id) is not None:
            change.noop = True
            return change

        role = ROLE_QUEUED if current else ROLE_PRIMARY
        stack.append(Assignment(incident_id=incident_id, unit_id=unit_id, role=role,
                                order_index=len(stack)))
        self._renumber(unit_id)
        return change

    def promote(self, incident_id: str, unit_id: str) -> StackChange:
        unit_id = unit_id.upper()
        target = self._find(unit_id, incident_id)
        if target is None:
            raise StackError(f"{incident_id} is not on {unit_id}'s stack")

        current = self.primary(unit_id)
        change = StackChange('PRIMARY', incident_id, unit_id, previous_primary=current)
        if current == incident_id:
            change.noop = True
            return change

        self._install_primary(unit_id, incident_id)
        return change

    def assign(self, incident_id: str, unit_id: str) -> StackChange:
        unit_id = unit_id.upper()
        current = self.primary(unit_id)
        change = StackChange('ASSIGN', incident_id, unit_id, previous_primary=current)
        if current == incident_id:
            change.noop = True
            return change

        stack = self._stacks.setdefault(unit_id, [])
        if self._find(unit_id, incident_id) is None:
            stack.append(Assignment(incident_id=incident_id, unit_id=unit_id, role=ROLE_QUEUED,
                                    order_index=len(stack)))
        self._install_primary(unit_id, incident_id)
        return change

    def clear(self, incident_id: str, unit_id: str) -> StackChange:
        unit_id = unit_id.upper()
        target = self._find(unit_id, incident_id)
        if target is None:
            raise StackError(f"{incident_id} is not on {unit_id}'s stack")

        current = self.primary(unit_id)
        change = StackChange('CLEAR', incident_id, unit_id, previous_primary=current,
                             was_primary=(target.role == ROLE_PRIMARY))
        self._stacks[unit_id].remove(target)

        if change.was_primary:
            waiting = self.queued(unit_id)
            if waiting:
                self._find(unit_id, waiting[0]).role = ROLE_PRIMARY
                change.promoted = waiting[0]
                logger.debug(f"{unit_id}: cleared primary {incident_id}, promoted {waiting[0]}")

        if not self._stacks[unit_id]:
            del self._stacks[unit_id]
        else:
            self._renumber(unit_id)
        return change

    def apply(self, op: str, incident_id: str, unit_id: str) -> StackChange:
        """Dispatch by command verb"""
        handlers = {
            'QUEUE': self.queue,
            'PRIMARY': self.promote,
            'ASSIGN': self.assign,
            'CLEAR': self.clear,
        }
        handler = handlers.get(op.upper())
        if handler is None:
            raise StackError(f"Unknown stack operation: {op}")
        return handler(incident_id, unit_id)

    def copy(self) -> 'AssignmentStack':
        return AssignmentStack(self.all_entries())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _find(self, unit_id: str, incident_id: str) -> Optional[Assignment]:
        for a in self._stacks.get(unit_id.upper(), []):
            if a.incident_id == incident_id:
                return a
        return None

    def _install_primary(self, unit_id: str, incident_id: str):
        """Make incident_id primary; old primary moves to the tail of the queue"""
        stack = self._stacks[unit_id]
        old = next((a for a in stack if a.role == ROLE_PRIMARY), None)
        target = self._find(unit_id, incident_id)

        queue = [a for a in sorted(stack, key=lambda a: a.order_index)
                 if a.role == ROLE_QUEUED and a is not target]
        if old is not None and old is not target:
            old.role = ROLE_QUEUED
            queue.append(old)
        target.role = ROLE_PRIMARY

        self._stacks[unit_id] = [target] + queue
        self._renumber(unit_id)

    def _renumber(self, unit_id: str):
        """Primary is index 0, queue follows in order"""
        stack = self._stacks.get(unit_id, [])
        primary = [a for a in stack if a.role == ROLE_PRIMARY]
        queue = sorted((a for a in stack if a.role == ROLE_QUEUED), key=lambda a: a.order_index)
        ordered = primary + queue
        for i, a in enumerate(ordered):
            a.order_index = i
        self._stacks[unit_id] = ordered
