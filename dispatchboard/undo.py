"""
Undo Registry

Bounded stack of inverse actions, newest on top:
    - capacity 3, the oldest entry is evicted when a 4th is pushed
    - entries are valid for 5 minutes
    - popping runs the newest entry; an expired entry is discarded without
      running and reported as EXPIRED, distinct from EMPTY
    - an inverse that raises or returns a failed result is reported as FAILED
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from .constants import UNDO_CAPACITY, UNDO_TTL_SECONDS

logger = logging.getLogger(__name__)

UNDONE = 'UNDONE'
EXPIRED = 'EXPIRED'
EMPTY = 'EMPTY'
FAILED = 'FAILED'


@dataclass
class UndoEntry:
    description: str
    action: Callable[[], Awaitable[Any]]
    created_at: float


@dataclass
class UndoResult:
    status: str                             # UNDONE, EXPIRED, EMPTY, FAILED
    description: str = ''
    error: Optional[str] = None
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.status == UNDONE


class UndoRegistry:
    def __init__(self, capacity: int = UNDO_CAPACITY, ttl_seconds: float = UNDO_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: List[UndoEntry] = []

    def __len__(self):
        return len(self._entries)

    def push(self, description: str, action: Callable[[], Awaitable[Any]]) -> UndoEntry:
        if len(self._entries) >= self.capacity:
            evicted = self._entries.pop(0)
            logger.debug(f"Undo evicted: {evicted.description}")
        entry = UndoEntry(description=description, action=action, created_at=self._clock())
        self._entries.append(entry)
        return entry

    def peek(self) -> Optional[UndoEntry]:
        return self._entries[-1] if self._entries else None

    def descriptions(self) -> List[str]:
        """Newest first"""
        return [e.description for e in reversed(self._entries)]

    def clear(self):
        self._entries = []

    async def pop_and_run(self) -> UndoResult:
        if not self._entries:
            return UndoResult(EMPTY)

        entry = self._entries.pop()
        age = self._clock() - entry.created_at
        if age > self.ttl_seconds:
            logger.info(f"Undo expired ({int(age)}s old): {entry.description}")
            return UndoResult(EXPIRED, entry.description)

        try:
            result = await entry.action()
        except Exception as e:
            logger.error(f"Undo failed for '{entry.description}': {e}", exc_info=True)
            return UndoResult(FAILED, entry.description, error=str(e))

        if getattr(result, 'ok', True) is False:
            error = getattr(result, 'error', None) or getattr(result, 'message', None) or 'UNDO FAILED'
            logger.warning(f"Undo rejected for '{entry.description}': {error}")
            return UndoResult(FAILED, entry.description, error=error, result=result)

        logger.info(f"Undone: {entry.description}")
        return UndoResult(UNDONE, entry.description, result=result)
