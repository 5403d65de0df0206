"""
Reporting surface.

Every command result - success or any kind of failure - goes through
Reporter.report(), which logs it and hands it to the registered sinks (the
console prints them; tests collect them). Nothing that mutates the board can
finish without producing an Outcome here.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .errors import DispatchBoardError, ParseError, ValidationError, ConflictError, TransportError, UndoExpired
from .models import ConflictRecord, RpcResult

logger = logging.getLogger(__name__)


# Outcome kinds
OK = 'OK'
INFO = 'INFO'
PARSE_ERROR = 'PARSE_ERROR'
VALIDATION_ERROR = 'VALIDATION_ERROR'
CONFLICT = 'CONFLICT'
TRANSPORT_ERROR = 'TRANSPORT_ERROR'
REMOTE_ERROR = 'REMOTE_ERROR'
UNDO_EXPIRED = 'UNDO_EXPIRED'
UNDO_EMPTY = 'UNDO_EMPTY'
UNDO_FAILED = 'UNDO_FAILED'

_LOG_LEVELS = {
    OK: logging.INFO,
    INFO: logging.INFO,
    PARSE_ERROR: logging.WARNING,
    VALIDATION_ERROR: logging.WARNING,
    CONFLICT: logging.WARNING,
    TRANSPORT_ERROR: logging.ERROR,
    REMOTE_ERROR: logging.ERROR,
    UNDO_EXPIRED: logging.INFO,
    UNDO_EMPTY: logging.INFO,
    UNDO_FAILED: logging.ERROR,
}


@dataclass
class Outcome:
    kind: str
    message: str = ''
    command: str = ''
    unit_id: Optional[str] = None
    current: Optional[ConflictRecord] = None    # Authoritative record on CONFLICT
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind in (OK, INFO)

    @classmethod
    def from_result(cls, result: RpcResult, command: str = '', unit_id: Optional[str] = None,
                    success_message: str = 'OK') -> 'Outcome':
        """Map a remote envelope onto the taxonomy"""
        if result.ok:
            return cls(OK, success_message, command, unit_id, data=result.payload)
        if result.conflict:
            current = result.current or ConflictRecord()
            who = current.updated_by or 'ANOTHER USER'
            message = result.error or f"{unit_id} WAS CHANGED BY {who}"
            return cls(CONFLICT, message, command, unit_id, current=current)
        if result.transport_failure:
            return cls(TRANSPORT_ERROR, result.error or 'NETWORK ERROR', command, unit_id)
        return cls(REMOTE_ERROR, result.error or 'REQUEST FAILED', command, unit_id)

    def raise_for_error(self) -> 'Outcome':
        """For scripts that want exceptions instead of outcomes"""
        if self.ok:
            return self
        if self.kind == PARSE_ERROR:
            raise ParseError(self.command, self.message)
        if self.kind == VALIDATION_ERROR:
            raise ValidationError(self.message)
        if self.kind == CONFLICT:
            current = self.current.model_dump() if self.current is not None else None
            raise ConflictError(self.unit_id or '', current, self.message)
        if self.kind == TRANSPORT_ERROR:
            raise TransportError(self.message)
        if self.kind == UNDO_EXPIRED:
            raise UndoExpired(self.message)
        raise DispatchBoardError(self.message)


class Reporter:
    def __init__(self, history_size: int = 100):
        self._sinks: List[Callable[[Outcome], None]] = []
        self.history: Deque[Outcome] = deque(maxlen=history_size)

    def add_sink(self, sink: Callable[[Outcome], None]):
        self._sinks.append(sink)

    def report(self, outcome: Outcome) -> Outcome:
        level = _LOG_LEVELS.get(outcome.kind, logging.INFO)
        subject = f" [{outcome.unit_id}]" if outcome.unit_id else ''
        logger.log(level, f"{outcome.kind}{subject}: {outcome.message} ({outcome.command})")

        self.history.append(outcome)
        for sink in self._sinks:
            try:
                sink(outcome)
            except Exception as e:
                logger.error(f"Report sink failed: {e}", exc_info=True)
        return outcome
