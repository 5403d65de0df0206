"""
DispatchBoard client package

This package handles:
- Operator shorthand parsing (status, assignment stack, incidents, messaging)
- Revision-marker guarded mutations with explicit conflict decisions
- Per-unit primary/queued assignment stacks
- Incremental board reconciliation with per-section change detection
- Bounded, time-limited undo

Modules:
- command_parser: One line of operator input -> normalized requests
- dispatcher: Requests -> remote calls, guard, undo
- reconciler: Full/delta poll cycle into the board cache
- engine: Everything wired together for one operator session
- board_simulator: In-memory FastAPI backend for development and tests
"""

from .assignments import AssignmentStack, StackChange, StackError
from .board_cache import BoardCache
from .command_parser import CommandInterpreter, MutationRequest, DirectAction, Unrecognized, CommandOptions
from .concurrency import ConcurrencyGuard, PendingConflict
from .config import ClientConfig
from .context import SessionContext
from .dispatcher import MutationDispatcher
from .engine import DispatchEngine
from .errors import DispatchBoardError, ParseError, ValidationError, ConflictError, TransportError, UndoExpired
from .fingerprint import ChangeDetector, ChangeSet
from .models import Unit, Incident, Assignment, StateSnapshot, UnitPatch, RpcResult, ConflictRecord
from .note_tags import NoteTags
from .reconciler import StateReconciler
from .reporting import Outcome, Reporter
from .undo import UndoRegistry

__version__ = "1.0.0"
__all__ = [
    # Engine
    "DispatchEngine",
    "ClientConfig",
    "SessionContext",
    # Components
    "CommandInterpreter",
    "MutationDispatcher",
    "StateReconciler",
    "ConcurrencyGuard",
    "AssignmentStack",
    "UndoRegistry",
    "ChangeDetector",
    "BoardCache",
    "Reporter",
    # Structures
    "MutationRequest",
    "DirectAction",
    "Unrecognized",
    "CommandOptions",
    "StackChange",
    "PendingConflict",
    "ChangeSet",
    "Outcome",
    "Unit",
    "Incident",
    "Assignment",
    "StateSnapshot",
    "UnitPatch",
    "RpcResult",
    "ConflictRecord",
    "NoteTags",
    # Errors
    "DispatchBoardError",
    "ParseError",
    "ValidationError",
    "ConflictError",
    "TransportError",
    "UndoExpired",
    "StackError",
]
