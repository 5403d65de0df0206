"""
Error taxonomy for the dispatch board client.

The engine reports every result as an Outcome and never raises these for
ordinary failures. Outcome.raise_for_error() maps an outcome onto the matching
type for callers that prefer exceptions (scripts, tests).
"""

from typing import Optional, Dict, Any


class DispatchBoardError(Exception):
    """Base class for all client-side errors"""


class ParseError(DispatchBoardError):
    """Input text matches no command grammar"""

    def __init__(self, text: str, reason: str = "UNRECOGNIZED COMMAND"):
        self.text = text
        self.reason = reason
        super().__init__(f"{reason}: {text}")


class ValidationError(DispatchBoardError):
    """Well-formed command that references a unit or incident we don't know"""


class ConflictError(DispatchBoardError):
    """Mutation rejected because the supplied revision marker was stale"""

    def __init__(self, unit_id: str, current: Optional[Dict[str, Any]] = None, message: str = ""):
        self.unit_id = unit_id
        self.current = current or {}
        super().__init__(message or f"CONFLICT ON {unit_id}")


class TransportError(DispatchBoardError):
    """Remote call unreachable or returned an unparseable body"""


class UndoExpired(DispatchBoardError):
    """Undo entry aged out before it was used"""
