"""
Mutation Dispatcher

Takes one normalized MutationRequest and turns it into remote calls:

    validate()  - local checks against the cached board, nothing sent
    execute()   - remote call(s), concurrency guard for unit writes,
                  undo entry for anything that has a sensible inverse

Every request ends in exactly one Outcome handed to the Reporter. A successful
write also pokes the reconciler (after_mutation) so the board catches up
without waiting for the next poll.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .assignments import AssignmentStack, StackError
from .board_cache import BoardCache
from .command_parser import MutationRequest
from .concurrency import ConcurrencyGuard
from .context import SessionContext
from .models import RpcResult, UnitPatch, Unit
from .note_tags import NoteTags
from .reporting import (
    Outcome, Reporter, OK, INFO, VALIDATION_ERROR, UNDO_EXPIRED, UNDO_EMPTY, UNDO_FAILED,
)
from . import undo as undo_status
from .undo import UndoRegistry

logger = logging.getLogger(__name__)


# Kinds that name a unit that must be on the board (FORCE skips the check)
UNIT_KINDS = {'STATUS', 'ASSIGN', 'QUEUE', 'PRIMARY', 'CLEAR', 'LOGOFF', 'RIDOFF',
              'TOUCH', 'ETA', 'LINK', 'TRANSFER', 'UNDO'}

# Kinds whose incident must already be on the board
KNOWN_INCIDENT_KINDS = {'ASSIGN', 'QUEUE', 'PRIMARY', 'CLEAR', 'CLOSE', 'REQUEUE',
                        'PRIORITY', 'LINK', 'TRANSFER'}

STACK_KINDS = ('ASSIGN', 'QUEUE', 'PRIMARY', 'CLEAR')

PRIORITY_RANGE = range(1, 10)

DEACTIVATE_RESTORE_FIELDS = ('status', 'incident', 'destination', 'note', 'tags', 'active')

_STACK_PAST = {
    'ASSIGN': 'ASSIGNED',
    'QUEUE': 'QUEUED',
    'PRIMARY': 'PRIMARY',
    'CLEAR': 'CLEARED FROM',
}


class MutationDispatcher:
    def __init__(
        self,
        client,
        context: SessionContext,
        cache: BoardCache,
        guard: ConcurrencyGuard,
        undo: UndoRegistry,
        reporter: Optional[Reporter] = None,
        legacy_note_tags: bool = True,
        after_mutation: Optional[Callable[[], Any]] = None,
    ):
        self.client = client
        self.context = context
        self.cache = cache
        self.guard = guard
        self.undo = undo
        self.reporter = reporter or Reporter()
        self.legacy_note_tags = legacy_note_tags
        self.after_mutation = after_mutation

        self._handlers: Dict[str, Callable[[MutationRequest], Awaitable[Outcome]]] = {
            'STATUS': self._status,
            'ASSIGN': self._stack,
            'QUEUE': self._stack,
            'PRIMARY': self._stack,
            'CLEAR': self._stack,
            'UNDO': self._undo,
            'LOGOFF': self._deactivate,
            'RIDOFF': self._deactivate,
            'TOUCH': self._touch,
            'OKALL': self._touch_all,
            'ETA': self._eta,
            'NOTE': self._incident_note,
            'NEW_INCIDENT': self._new_incident,
            'CLOSE': self._close,
            'REOPEN': self._reopen,
            'REQUEUE': self._requeue,
            'PRIORITY': self._priority,
            'LINK': self._link,
            'TRANSFER': self._transfer,
            'MSG': self._message,
            'BROADCAST': self._broadcast,
            'DIVERSION': self._diversion,
            'BANNER': self._banner,
        }

    @property
    def token(self) -> Optional[str]:
        return self.context.token

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, request: MutationRequest, stacks: Optional[AssignmentStack] = None) -> Optional[Outcome]:
        """
        Local checks only. Returns a VALIDATION_ERROR outcome (not reported)
        or None when the request may be sent.

        `stacks` is a scratch copy shared across one chained line, so
        "QUEUE 0031 M1 | PRIMARY 0031 M1" validates the second command
        against the stack the first one leaves behind.
        """
        kind = request.kind
        force = request.options.force

        def invalid(message: str) -> Outcome:
            return Outcome(VALIDATION_ERROR, message, request.raw, request.unit_id)

        if kind not in self._handlers:
            return invalid(f"UNSUPPORTED COMMAND {kind}")
        if not self.context.signed_in:
            return invalid('NOT SIGNED IN')

        if kind in UNIT_KINDS and request.unit_id and self.cache.has_baseline and not force:
            if self.cache.unit(request.unit_id) is None:
                return invalid(f"UNKNOWN UNIT {request.unit_id}")
        other = request.args.get('other_unit')
        if other and self.cache.has_baseline and not force and self.cache.unit(other) is None:
            return invalid(f"UNKNOWN UNIT {other}")

        if kind in KNOWN_INCIDENT_KINDS and not force:
            if not request.incident_id or self.cache.incident(request.incident_id) is None:
                return invalid(f"UNKNOWN INCIDENT {request.incident_id or ''}".strip())

        if kind == 'PRIORITY' and request.args.get('priority') not in PRIORITY_RANGE:
            return invalid(f"PRIORITY MUST BE {PRIORITY_RANGE.start}-{PRIORITY_RANGE.stop - 1}")

        if kind in STACK_KINDS:
            scratch = stacks if stacks is not None else self.cache.stacks.copy()
            try:
                scratch.apply(kind, request.incident_id, request.unit_id)
            except StackError as e:
                return invalid(str(e).upper())

        return None

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, request: MutationRequest) -> Outcome:
        """Validate, send, report. Always returns the reported outcome."""
        problem = self.validate(request)
        if problem is not None:
            return self.reporter.report(problem)

        handler = self._handlers[request.kind]
        try:
            outcome = await handler(request)
        except StackError as e:
            outcome = Outcome(VALIDATION_ERROR, str(e).upper(), request.raw, request.unit_id)

        if outcome.kind == OK and self.after_mutation is not None:
            self.after_mutation()
        return self.reporter.report(outcome)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _outcome(self, result: RpcResult, request: MutationRequest, message: str) -> Outcome:
        outcome = Outcome.from_result(result, request.raw, request.unit_id, success_message=message)
        if outcome.current is not None and request.unit_id:
            self._install_current(request.unit_id, outcome)
        return outcome

    def _install_current(self, unit_id: str, outcome: Outcome):
        """Show the authoritative record from a conflict in the cache"""
        unit = self.cache.unit(unit_id)
        if unit is None or outcome.current is None:
            return
        updates = {}
        if outcome.current.status:
            updates['status'] = outcome.current.status
        if outcome.current.revision_marker:
            updates['updated_at'] = outcome.current.revision_marker
        if outcome.current.updated_by:
            updates['updated_by'] = outcome.current.updated_by
        self.cache.replace_unit(unit.model_copy(update=updates))

    async def _upsert(self, unit_id: str, patch: UnitPatch, base_note: str = '', bypass: bool = False) -> RpcResult:
        wire = patch.to_wire(self.legacy_note_tags, base_note=base_note)
        logger.debug(f"upsertUnit {unit_id}: {wire}")
        return await self.guard.guarded(
            unit_id,
            lambda marker: self.client.upsert_unit(self.token, unit_id, wire, marker),
            bypass=bypass,
        )

    def _restore_patch(self, unit: Unit, fields) -> UnitPatch:
        """Patch that puts the given fields back the way the cached unit had them"""
        values = {}
        for name in fields:
            value = getattr(unit, name)
            if name == 'tags':
                value = value.model_copy()
            values[name] = value
        return UnitPatch(**values)

    def _push_unit_restore(self, description: str, unit: Optional[Unit], patch: UnitPatch, stack_steps=()):
        """Stack steps run first, then the unit fields go back to the cached values"""
        if unit is None:
            return
        restore = self._restore_patch(unit, patch.changed_fields())
        unit_id = unit.unit_id
        base_note = unit.note
        stack_steps = list(stack_steps)

        async def inverse():
            for step_op, step_incident in stack_steps:
                result = await self._stack_call(step_op, step_incident, unit_id)()
                if not result.ok:
                    return result
            return await self._upsert(unit_id, restore, base_note=base_note)

        self.undo.push(description, inverse)

    # -------------------------------------------------------------------------
    # Unit status
    # -------------------------------------------------------------------------

    async def _status(self, request: MutationRequest) -> Outcome:
        unit_id = request.unit_id
        unit = self.cache.unit(unit_id)

        values: Dict[str, Any] = {'status': request.status}
        if request.incident_id:
            values['incident'] = request.incident_id
            incident = self.cache.incident(request.incident_id)
            if request.destination is None and incident is not None and incident.destination:
                values['destination'] = incident.destination
        if request.destination:
            values['destination'] = request.destination
        if request.note is not None:
            values['note'] = request.note
        if request.tags is not None:
            current_tags = unit.tags if unit is not None else NoteTags()
            values['tags'] = current_tags.merged(request.tags)

        # An incident new to this unit lands on its stack as primary
        stack_steps = []
        attached = values.get('incident')
        if attached and unit is not None and not self.cache.stacks.has(unit_id, attached):
            stack_steps.append(('CLEAR', attached))
            previous = self.cache.stacks.primary(unit_id)
            if previous:
                stack_steps.append(('PRIMARY', previous))

        patch = UnitPatch(**values)
        result = await self._upsert(unit_id, patch, base_note=unit.note if unit else '')

        summary = ' '.join(str(v) for v in (unit_id, request.status, values.get('incident'),
                                            values.get('destination')) if v)
        outcome = self._outcome(result, request, summary)
        if outcome.kind == OK:
            self._push_unit_restore(f"{unit_id} {request.status}", unit, patch, stack_steps)
        return outcome

    async def _eta(self, request: MutationRequest) -> Outcome:
        unit_id = request.unit_id
        unit = self.cache.unit(unit_id)
        current_tags = unit.tags if unit is not None else NoteTags()
        patch = UnitPatch(tags=current_tags.merged(request.tags))

        result = await self._upsert(unit_id, patch, base_note=unit.note if unit else '')
        outcome = self._outcome(result, request, f"{unit_id} ETA {request.args.get('minutes')} MIN")
        if outcome.kind == OK:
            self._push_unit_restore(f"{unit_id} ETA", unit, patch)
        return outcome

    async def _deactivate(self, request: MutationRequest) -> Outcome:
        unit_id = request.unit_id
        unit = self.cache.unit(unit_id)
        call = self.client.logoff_unit if request.kind == 'LOGOFF' else self.client.ridoff_unit
        force = request.options.force

        result = await self.guard.guarded(
            unit_id, lambda marker: call(self.token, unit_id, marker), bypass=force)

        verb = 'LOGGED OFF' if request.kind == 'LOGOFF' else 'RIDDEN OFF'
        outcome = self._outcome(result, request, f"{unit_id} {verb}")
        if outcome.kind == OK and unit is not None:
            # RIDOFF also wipes the assignment fields on the backend
            fields = ('status', 'active') if request.kind == 'LOGOFF' else DEACTIVATE_RESTORE_FIELDS
            restore = self._restore_patch(unit, fields)
            base_note = unit.note

            async def inverse():
                return await self._upsert(unit_id, restore, base_note=base_note)

            self.undo.push(f"{request.kind} {unit_id}", inverse)
        return outcome

    async def _touch(self, request: MutationRequest) -> Outcome:
        unit_id = request.unit_id
        result = await self.guard.guarded(
            unit_id, lambda marker: self.client.touch_unit(self.token, unit_id, marker))
        return self._outcome(result, request, f"{unit_id} OK")

    async def _touch_all(self, request: MutationRequest) -> Outcome:
        result = await self.client.touch_all_oos(self.token)
        count = result.payload.get('count')
        message = f"{count} OOS UNITS OK" if count is not None else 'OOS UNITS OK'
        return self._outcome(result, request, message)

    # -------------------------------------------------------------------------
    # Assignment stack
    # -------------------------------------------------------------------------

    def _stack_call(self, op: str, incident_id: str, unit_id: str):
        calls = {
            'ASSIGN': self.client.assign_unit,
            'QUEUE': self.client.queue_unit,
            'PRIMARY': self.client.primary_unit,
            'CLEAR': self.client.clear_unit_assignment,
        }
        call = calls[op]

        async def run():
            return await self.guard.guarded(
                unit_id, lambda marker: call(self.token, incident_id, unit_id, marker))
        return run

    async def _stack(self, request: MutationRequest) -> Outcome:
        op, incident_id, unit_id = request.kind, request.incident_id, request.unit_id

        was_on_stack = self.cache.stacks.has(unit_id, incident_id)
        preview = self.cache.stacks.copy()
        change = preview.apply(op, incident_id, unit_id)
        if change.noop:
            return Outcome(INFO, f"{unit_id} ALREADY HAS {incident_id}"
                           f"{' AS PRIMARY' if op != 'QUEUE' else ''}", request.raw, unit_id)

        result = await self._stack_call(op, incident_id, unit_id)()
        message = f"{unit_id} {_STACK_PAST[op]} {incident_id}"
        if change.promoted:
            message += f", {change.promoted} NOW PRIMARY"
        outcome = self._outcome(result, request, message)
        if outcome.kind != OK:
            return outcome

        outcome.data['promoted'] = change.promoted
        # Local view follows until the next reconciliation replaces it
        self.cache.stacks = preview

        steps = self._stack_inverse(op, incident_id, change, was_on_stack)
        if steps:
            async def inverse():
                result = RpcResult(ok=True)
                for step_op, step_incident in steps:
                    result = await self._stack_call(step_op, step_incident, unit_id)()
                    if not result.ok:
                        break
                return result

            self.undo.push(f"{op} {incident_id} {unit_id}", inverse)
        return outcome

    @staticmethod
    def _stack_inverse(op: str, incident_id: str, change, was_on_stack: bool):
        """Stack ops that put the unit back where it was"""
        if op == 'QUEUE':
            return [('CLEAR', incident_id)]
        if op == 'PRIMARY':
            return [('PRIMARY', change.previous_primary)] if change.previous_primary else []
        if op == 'ASSIGN':
            steps = [] if was_on_stack else [('CLEAR', incident_id)]
            if change.previous_primary:
                steps.append(('PRIMARY', change.previous_primary))
            return steps or [('CLEAR', incident_id)]
        if op == 'CLEAR':
            return [('ASSIGN', incident_id)] if change.was_primary else [('QUEUE', incident_id)]
        return []

    # -------------------------------------------------------------------------
    # Undo
    # -------------------------------------------------------------------------

    async def _undo(self, request: MutationRequest) -> Outcome:
        if request.unit_id:
            result = await self.client.undo_unit(self.token, request.unit_id)
            return self._outcome(result, request, f"{request.unit_id} LAST CHANGE UNDONE")

        result = await self.undo.pop_and_run()
        if result.status == undo_status.UNDONE:
            return Outcome(OK, f"UNDONE: {result.description}", request.raw)
        if result.status == undo_status.EXPIRED:
            return Outcome(UNDO_EXPIRED, f"UNDO EXPIRED: {result.description}", request.raw)
        if result.status == undo_status.EMPTY:
            return Outcome(UNDO_EMPTY, 'NOTHING TO UNDO', request.raw)
        current = getattr(result.result, 'current', None)
        return Outcome(UNDO_FAILED, f"UNDO FAILED: {result.description} - {result.error}",
                       request.raw, current=current)

    # -------------------------------------------------------------------------
    # Incidents
    # -------------------------------------------------------------------------

    async def _incident_note(self, request: MutationRequest) -> Outcome:
        result = await self.client.append_incident_note(self.token, request.incident_id, request.args['text'])
        return self._outcome(result, request, f"NOTE ADDED TO {request.incident_id}")

    async def _new_incident(self, request: MutationRequest) -> Outcome:
        result = await self.client.create_queued_incident(self.token, request.destination, request.note or '')
        incident_id = result.payload.get('incidentId') or result.payload.get('incident_id')
        outcome = self._outcome(result, request, f"INCIDENT {incident_id} QUEUED" if incident_id else 'INCIDENT QUEUED')
        if outcome.kind == OK and incident_id:
            outcome.data['incident_id'] = incident_id

            async def inverse():
                return await self.client.close_incident(self.token, incident_id, 'CANCELLED')

            self.undo.push(f"NC {incident_id}", inverse)
        return outcome

    async def _close(self, request: MutationRequest) -> Outcome:
        incident_id = request.incident_id
        disposition = request.args.get('text', '')
        result = await self.client.close_incident(self.token, incident_id, disposition)
        outcome = self._outcome(result, request, f"{incident_id} CLOSED")
        if outcome.kind == OK:
            async def inverse():
                return await self.client.reopen_incident(self.token, incident_id)

            self.undo.push(f"CLOSE {incident_id}", inverse)
        return outcome

    async def _reopen(self, request: MutationRequest) -> Outcome:
        incident_id = request.incident_id
        result = await self.client.reopen_incident(self.token, incident_id)
        outcome = self._outcome(result, request, f"{incident_id} REOPENED")
        if outcome.kind == OK:
            async def inverse():
                return await self.client.close_incident(self.token, incident_id, '')

            self.undo.push(f"REOPEN {incident_id}", inverse)
        return outcome

    async def _requeue(self, request: MutationRequest) -> Outcome:
        result = await self.client.requeue_incident(self.token, request.incident_id)
        return self._outcome(result, request, f"{request.incident_id} REQUEUED")

    async def _priority(self, request: MutationRequest) -> Outcome:
        incident_id = request.incident_id
        priority = request.args['priority']
        incident = self.cache.incident(incident_id)
        previous = incident.priority if incident is not None else None

        result = await self.client.set_incident_priority(self.token, incident_id, priority)
        outcome = self._outcome(result, request, f"{incident_id} PRIORITY {priority}")
        if outcome.kind == OK and previous is not None and previous != priority:
            async def inverse():
                return await self.client.set_incident_priority(self.token, incident_id, previous)

            self.undo.push(f"PRI {incident_id} {priority}", inverse)
        return outcome

    async def _link(self, request: MutationRequest) -> Outcome:
        other = request.args['other_unit']
        result = await self.client.link_units(self.token, request.unit_id, other, request.incident_id)
        return self._outcome(result, request, f"{request.unit_id} + {other} LINKED ON {request.incident_id}")

    async def _transfer(self, request: MutationRequest) -> Outcome:
        source, target, incident_id = request.unit_id, request.args['other_unit'], request.incident_id
        result = await self.client.transfer_incident(self.token, source, target, incident_id)
        outcome = self._outcome(result, request, f"{incident_id} TRANSFERRED {source} -> {target}")
        if outcome.kind == OK:
            async def inverse():
                return await self.client.transfer_incident(self.token, target, source, incident_id)

            self.undo.push(f"TRANSFER {incident_id} {source} -> {target}", inverse)
        return outcome

    # -------------------------------------------------------------------------
    # Messaging, diversions, banners
    # -------------------------------------------------------------------------

    async def _message(self, request: MutationRequest) -> Outcome:
        to_role = request.args['to']
        result = await self.client.send_message(self.token, to_role, request.args['text'])
        return self._outcome(result, request, f"MESSAGE SENT TO {to_role}")

    async def _broadcast(self, request: MutationRequest) -> Outcome:
        result = await self.client.send_broadcast(self.token, request.args['text'])
        return self._outcome(result, request, 'BROADCAST SENT')

    async def _diversion(self, request: MutationRequest) -> Outcome:
        destination, active = request.destination, request.args['active']
        result = await self.client.set_diversion(self.token, destination, active)
        outcome = self._outcome(result, request, f"{destination} DIVERSION {'ON' if active else 'OFF'}")
        if outcome.kind == OK:
            async def inverse():
                return await self.client.set_diversion(self.token, destination, not active)

            self.undo.push(f"DIV {destination} {'ON' if active else 'OFF'}", inverse)
        return outcome

    async def _banner(self, request: MutationRequest) -> Outcome:
        kind, text = request.args['kind'], request.args.get('text', '')
        previous = next((b.message for b in self.cache.banners if b.kind == kind), '')

        result = await self.client.set_banner(self.token, kind, text)
        outcome = self._outcome(result, request, f"{kind} BANNER {'SET' if text else 'CLEARED'}")
        if outcome.kind == OK:
            async def inverse():
                return await self.client.set_banner(self.token, kind, previous)

            self.undo.push(f"BANNER {kind}", inverse)
        return outcome
