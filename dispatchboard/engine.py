"""
DispatchEngine - one operator session wired end to end.

    line -> CommandInterpreter -> MutationDispatcher -> BoardApiClient
                                   |  ConcurrencyGuard, UndoRegistry
    StateReconciler <- getState    |
         -> BoardCache -> ChangeDetector -> on_change listener

A chained line is all-or-nothing up to the point of sending: every
sub-command must parse and validate before the first one goes out. Once
sending starts, a failed sub-command stops the chain and the rest are
reported as skipped.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .board_cache import BoardCache
from .command_parser import CommandInterpreter, DirectAction, MutationRequest, Unrecognized
from .concurrency import ConcurrencyGuard
from .config import ClientConfig
from .context import SessionContext
from .dispatcher import MutationDispatcher
from .fingerprint import ChangeDetector, ChangeSet
from .reconciler import StateReconciler
from .reporting import Outcome, Reporter, OK, INFO, PARSE_ERROR, VALIDATION_ERROR
from .undo import UndoRegistry

logger = logging.getLogger(__name__)

ActionHandler = Callable[[DirectAction], Awaitable[Outcome]]


class DispatchEngine:
    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        client=None,
        context: Optional[SessionContext] = None,
        store=None,
        reporter: Optional[Reporter] = None,
        on_change: Optional[Callable[[ChangeSet], None]] = None,
        today: Callable[[], date] = date.today,
    ):
        self.config = config or ClientConfig()
        if client is None:
            from .api_client import BoardApiClient
            client = BoardApiClient(self.config.api_url, self.config.api_key, self.config.timeout)
        self.client = client
        self.context = context or SessionContext()
        self.store = store
        self.reporter = reporter or Reporter()

        self.cache = BoardCache()
        self.guard = ConcurrencyGuard()
        self.undo = UndoRegistry()
        self.detector = ChangeDetector()
        self.interpreter = CommandInterpreter.for_cache(self.cache, self.config.unit_aliases, today=today)

        self.reconciler = StateReconciler(
            client, self.context, self.cache, self.guard, self.detector,
            poll_focused=self.config.poll_focused,
            poll_unfocused=self.config.poll_unfocused,
            stale_intervals=self.config.stale_intervals,
            on_change=on_change,
        )
        self.dispatcher = MutationDispatcher(
            client, self.context, self.cache, self.guard, self.undo, self.reporter,
            legacy_note_tags=self.config.legacy_note_tags,
            after_mutation=self._note_mutation,
        )

        self._actions: Dict[str, ActionHandler] = {
            'REFRESH': self._refresh,
            'INFO': self._unit_info,
            'HIST': self._unit_history,
            'STACK': self._unit_stack,
            'INC': self._incident,
            'WHO': self._who,
            'SEARCH': self._search,
        }
        self._loop_task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._mutated = False

    # =========================================================================
    # Session
    # =========================================================================

    async def login(self, username: str, password: str, role: str = 'DISPATCH') -> Outcome:
        result = await self.client.login(role, username, password)
        outcome = Outcome.from_result(result, 'LOGIN', success_message=f"SIGNED IN AS {username.upper()}")
        if outcome.kind == OK:
            self.context.token = result.payload.get('token')
            self.context.operator = result.payload.get('username') or username.upper()
            self.context.role = result.payload.get('role') or role
            if self.store is not None:
                self.store.load_preferences(self.context)
            self.reconciler.request_full_refresh()
            await self.reconciler.reconcile()
        return self.reporter.report(outcome)

    async def logout(self) -> Outcome:
        if not self.context.signed_in:
            return self.reporter.report(Outcome(INFO, 'NOT SIGNED IN', 'LOGOUT'))
        await self.reconciler.drain()
        result = await self.client.logout(self.context.token)
        self.context.token = None
        self.undo.clear()
        self.cache.reset()
        self.detector.reset()
        return self.reporter.report(Outcome.from_result(result, 'LOGOUT', success_message='SIGNED OUT'))

    def set_focus(self, focused: bool):
        """Window focus changed. Gaining focus flushes held changes and polls now."""
        self.reconciler.set_focus(focused)
        if focused:
            self.reconciler.trigger()

    # =========================================================================
    # Commands
    # =========================================================================

    async def submit(self, line: str) -> List[Outcome]:
        """Run one line of operator input"""
        parsed = self.interpreter.parse_line(line)

        unrecognized = [p for p in parsed if isinstance(p, Unrecognized)]
        if unrecognized:
            return [self.reporter.report(Outcome(PARSE_ERROR, f"{p.reason}: {p.raw}" if p.raw else p.reason, p.raw))
                    for p in unrecognized]

        scratch = self.cache.stacks.copy()
        problems = []
        for p in parsed:
            if isinstance(p, MutationRequest):
                problem = self.dispatcher.validate(p, scratch)
            else:
                problem = self._validate_action(p)
            if problem is not None:
                problems.append(problem)
        if problems:
            return [self.reporter.report(p) for p in problems]

        outcomes = []
        for i, p in enumerate(parsed):
            if isinstance(p, MutationRequest):
                outcome = await self.dispatcher.execute(p)
                if outcome.ok:
                    self._remember_destination(p)
            else:
                outcome = await self.run_action(p)
            outcomes.append(outcome)

            if not outcome.ok:
                for skipped in parsed[i + 1:]:
                    outcomes.append(self.reporter.report(
                        Outcome(INFO, f"SKIPPED: {skipped.raw}", skipped.raw)))
                break

        # One catch-up cycle per line, after the whole chain went out
        if self._mutated:
            self._mutated = False
            self.reconciler.trigger()
        return outcomes

    def _note_mutation(self):
        self._mutated = True

    def _remember_destination(self, request: MutationRequest):
        if self.store is None or not request.destination:
            return
        if request.kind in ('STATUS', 'NEW_INCIDENT'):
            self.store.remember_address(self.context.operator, request.destination)

    # -------------------------------------------------------------------------
    # Conflict decisions
    # -------------------------------------------------------------------------

    def accept_conflict(self, unit_id: str) -> Outcome:
        current = self.guard.accept_current(unit_id)
        if current is None:
            return self.reporter.report(Outcome(INFO, f"NO CONFLICT ON {unit_id.upper()}", 'ACCEPT', unit_id.upper()))
        return self.reporter.report(Outcome(
            INFO, f"{unit_id.upper()} NOW {current.status} BY {current.updated_by} - RETRY IF NEEDED",
            'ACCEPT', unit_id.upper(), current=current))

    def discard_conflict(self, unit_id: str) -> Outcome:
        dropped = self.guard.discard(unit_id)
        message = f"{unit_id.upper()} CHANGE DISCARDED" if dropped else f"NO CONFLICT ON {unit_id.upper()}"
        return self.reporter.report(Outcome(INFO, message, 'DISCARD', unit_id.upper()))

    # =========================================================================
    # Direct actions
    # =========================================================================

    def register_action(self, name: str, handler: ActionHandler):
        self._actions[name.upper()] = handler

    def _validate_action(self, action: DirectAction) -> Optional[Outcome]:
        if action.name not in self._actions:
            return Outcome(VALIDATION_ERROR, f"NO HANDLER FOR {action.name}", action.raw)
        if not self.context.signed_in:
            return Outcome(VALIDATION_ERROR, 'NOT SIGNED IN', action.raw)
        if action.name in ('INFO', 'HIST', 'STACK') and not self.interpreter.canonical_unit(' '.join(action.args)):
            return Outcome(VALIDATION_ERROR, f"{action.name} NEEDS <UNIT>", action.raw)
        if action.name == 'INC' and not (action.args and self.interpreter.resolve_incident(action.args[0])):
            return Outcome(VALIDATION_ERROR, 'INC NEEDS <INC>', action.raw)
        return None

    async def run_action(self, action: DirectAction) -> Outcome:
        problem = self._validate_action(action)
        if problem is not None:
            return self.reporter.report(problem)
        try:
            outcome = await self._actions[action.name](action)
        except Exception as e:
            logger.error(f"Action {action.name} failed: {e}", exc_info=True)
            outcome = Outcome(VALIDATION_ERROR, f"{action.name} FAILED: {e}", action.raw)
        return self.reporter.report(outcome)

    def _action_outcome(self, action: DirectAction, result, message: str, unit_id: Optional[str] = None) -> Outcome:
        outcome = Outcome.from_result(result, action.raw, unit_id, success_message=message)
        if outcome.kind == OK:
            outcome.kind = INFO
        return outcome

    async def _refresh(self, action: DirectAction) -> Outcome:
        self.reconciler.request_full_refresh()
        changes = await self.reconciler.reconcile()
        if changes is None:
            return Outcome(INFO, f"REFRESH REQUESTED - BOARD {self.reconciler.liveness}", action.raw)
        changed = ', '.join(changes.changed_sections()) or 'NO CHANGES'
        return Outcome(INFO, f"BOARD REFRESHED ({changed})", action.raw, data={'changed': changes.changed_sections()})

    async def _unit_info(self, action: DirectAction) -> Outcome:
        unit_id = self.interpreter.canonical_unit(' '.join(action.args))
        result = await self.client.get_unit_info(self.context.token, unit_id)
        return self._action_outcome(action, result, f"{unit_id} INFO", unit_id)

    async def _unit_history(self, action: DirectAction) -> Outcome:
        unit_id = self.interpreter.canonical_unit(' '.join(action.args))
        result = await self.client.get_unit_history(self.context.token, unit_id)
        return self._action_outcome(action, result, f"{unit_id} HISTORY", unit_id)

    async def _unit_stack(self, action: DirectAction) -> Outcome:
        unit_id = self.interpreter.canonical_unit(' '.join(action.args))
        result = await self.client.get_unit_stack(self.context.token, unit_id)
        primary = self.cache.stacks.primary(unit_id)
        queued = self.cache.stacks.queued(unit_id)
        outcome = self._action_outcome(
            action, result, f"{unit_id} PRIMARY {primary or '-'} QUEUED {', '.join(queued) or '-'}", unit_id)
        outcome.data.setdefault('primary', primary)
        outcome.data.setdefault('queued', queued)
        return outcome

    async def _incident(self, action: DirectAction) -> Outcome:
        incident_id = self.interpreter.resolve_incident(action.args[0])
        result = await self.client.get_incident(self.context.token, incident_id)
        return self._action_outcome(action, result, f"INCIDENT {incident_id}")

    async def _who(self, action: DirectAction) -> Outcome:
        result = await self.client.who(self.context.token, ' '.join(action.args))
        return self._action_outcome(action, result, 'USERS ONLINE')

    async def _search(self, action: DirectAction) -> Outcome:
        query = ' '.join(action.args)
        result = await self.client.search(self.context.token, query)
        return self._action_outcome(action, result, f"SEARCH {query.upper()}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> asyncio.Task:
        """Start the poll loop on the running event loop"""
        if self._loop_task is None or self._loop_task.done():
            self._stop = asyncio.Event()
            self._loop_task = asyncio.get_running_loop().create_task(self.reconciler.run(self._stop))
        return self._loop_task

    async def stop(self):
        if self._stop is not None:
            self._stop.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self.reconciler.drain()

    async def close(self):
        await self.stop()
        await self.client.close()
        if self.store is not None:
            self.store.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def status_line(self) -> Dict[str, Any]:
        return {
            'liveness': self.reconciler.liveness,
            'operator': self.context.operator,
            'units': len(self.cache.units),
            'incidents': len(self.cache.incidents),
            'undo': self.undo.descriptions(),
            'conflicts': self.guard.pending_units(),
        }
