"""
Board Simulator - in-memory backend for development and tests

Speaks the same contract as the real board backend:

    POST /rpc   form fields action=<verb>, params=<JSON array>
                -> {ok, error?, conflict?, current?, ...}

Unit writes are checked against the caller's revision marker. A stale marker
gets the conflict envelope with the record as it stands now; an empty marker
skips the check.

Usage:
    python -m dispatchboard.board_simulator --port 8001
    python -m dispatchboard.board_simulator --port 8001 --seed
"""

import argparse
import itertools
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Form, Request

from .assignments import AssignmentStack, StackError

logger = logging.getLogger(__name__)

router = APIRouter()

# Stage timestamp stamped on the incident when a unit reports this status
STATUS_STAGE = {
    'D': 'dispatched_at',
    'DE': 'enroute_at',
    'OS': 'on_scene_at',
    'T': 'transport_at',
    'AT': 'at_destination_at',
}

UNIT_FIELDS = ('status', 'incident', 'destination', 'note', 'tags', 'active')


class RpcFailure(Exception):
    """Handler refusal, becomes {ok: false, error}"""


class BoardState:
    """Everything the simulated backend knows"""

    def __init__(self, year: Optional[int] = None):
        self.year = year or datetime.now(timezone.utc).year
        self.units: Dict[str, Dict[str, Any]] = {}
        self.incidents: Dict[str, Dict[str, Any]] = {}
        self.stacks = AssignmentStack()
        self.banners: Dict[str, Dict[str, Any]] = {}
        self.diversions: Dict[str, bool] = {}
        self.messages: List[Dict[str, Any]] = []
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.history: Dict[str, List[Dict[str, Any]]] = {}

        self._last_marker: Optional[datetime] = None
        self._serial = itertools.count(1)
        self._tokens = itertools.count(1)
        self._message_ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Markers & keys
    # -------------------------------------------------------------------------

    def next_marker(self) -> str:
        """Strictly increasing, fixed-width ISO timestamp"""
        now = datetime.now(timezone.utc)
        if self._last_marker is not None and now <= self._last_marker:
            now = self._last_marker + timedelta(microseconds=1)
        self._last_marker = now
        return now.strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    def next_incident_id(self) -> str:
        yy = f"{self.year % 100:02d}"
        while True:
            key = f"{yy}-{next(self._serial):04d}"
            if key not in self.incidents:
                return key

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add_unit(self, unit_id: str, status: str = 'AV', **fields) -> Dict[str, Any]:
        unit = {
            'unit_id': unit_id.upper(),
            'status': status,
            'incident': None,
            'destination': None,
            'note': '',
            'tags': {},
            'active': True,
            'unit_type': None,
            'level_of_care': None,
            'updated_by': 'SYSTEM',
        }
        unit.update(fields)
        unit['updated_at'] = self.next_marker()
        self.units[unit['unit_id']] = unit
        return unit

    def add_incident(self, incident_id: Optional[str] = None, status: str = 'QUEUED', **fields) -> Dict[str, Any]:
        incident_id = incident_id or self.next_incident_id()
        incident = {
            'incident_id': incident_id,
            'status': status,
            'priority': None,
            'incident_type': None,
            'scene_address': None,
            'destination': None,
            'note': '',
            'level_of_care': None,
            'related': [],
            'created_at': self.next_marker(),
        }
        incident.update(fields)
        incident['updated_at'] = self.next_marker()
        self.incidents[incident_id] = incident
        return incident

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def unit(self, unit_id: str) -> Dict[str, Any]:
        unit = self.units.get((unit_id or '').upper())
        if unit is None:
            raise RpcFailure(f"UNIT {unit_id} NOT FOUND")
        return unit

    def incident(self, incident_id: str) -> Dict[str, Any]:
        incident = self.incidents.get(incident_id or '')
        if incident is None:
            raise RpcFailure(f"INCIDENT {incident_id} NOT FOUND")
        return incident

    def conflict(self, unit: Dict[str, Any], expected: Optional[str]) -> Optional[Dict[str, Any]]:
        """Conflict envelope when expected is stale, None when the write may go ahead"""
        if not expected or expected == unit['updated_at']:
            return None
        return {
            'ok': False,
            'conflict': True,
            'error': f"{unit['unit_id']} WAS UPDATED BY {unit['updated_by']}",
            'current': {
                'status': unit['status'],
                'updated_at': unit['updated_at'],
                'updated_by': unit['updated_by'],
            },
        }

    def touch(self, unit: Dict[str, Any], user: str, remember: bool = True):
        if remember:
            self.history.setdefault(unit['unit_id'], []).append(
                {k: (dict(v) if isinstance(v, dict) else v) for k, v in unit.items()})
        unit['updated_at'] = self.next_marker()
        unit['updated_by'] = user

    def sync_unit_incident(self, unit: Dict[str, Any]):
        unit['incident'] = self.stacks.primary(unit['unit_id'])

    def stamp_incident(self, incident_id: Optional[str], status: str):
        incident = self.incidents.get(incident_id or '')
        if incident is None:
            return
        if incident['status'] == 'QUEUED' and status in STATUS_STAGE:
            incident['status'] = 'ACTIVE'
        stage = STATUS_STAGE.get(status)
        if stage and not incident.get(stage):
            incident[stage] = self.next_marker()
        incident['updated_at'] = self.next_marker()

    def snapshot(self, since: Optional[str]) -> Dict[str, Any]:
        units = list(self.units.values())
        if since:
            units = [u for u in units if u['updated_at'] > since]
        markers = [u['updated_at'] for u in self.units.values()]
        return {
            'ok': True,
            'full': not since,
            'max_revision': max(markers) if markers else None,
            'units': units,
            'incidents': [i for i in self.incidents.values() if i['status'] != 'CLOSED'],
            'assignments': [a.model_dump() for a in self.stacks.all_entries()],
            'banners': list(self.banners.values()),
            'diversions': [{'destination': d, 'active': a} for d, a in sorted(self.diversions.items())],
            'messages': list(self.messages),
        }


# =============================================================================
# HANDLERS - handler(state, user, *params) -> response dict
# =============================================================================

HANDLERS: Dict[str, Callable[..., Dict[str, Any]]] = {}


def rpc(name: str):
    def register(func):
        HANDLERS[name] = func
        return func
    return register


@rpc('getState')
def get_state(state: BoardState, user: str, since: Optional[str] = None):
    return state.snapshot(since)


@rpc('upsertUnit')
def upsert_unit(state: BoardState, user: str, unit_id: str, patch: Dict[str, Any], expected: Optional[str] = None):
    unit_id = unit_id.upper()
    patch = patch or {}
    unit = state.units.get(unit_id)
    if unit is None:
        unit = state.add_unit(unit_id)
    else:
        conflict = state.conflict(unit, expected)
        if conflict:
            return conflict

    state.touch(unit, user)
    for key in UNIT_FIELDS:
        if key in patch:
            unit[key] = patch[key]
    if patch.get('incident'):
        incident_id = patch['incident']
        if incident_id not in state.incidents:
            state.add_incident(incident_id, status='ACTIVE')
        if not state.stacks.has(unit_id, incident_id):
            state.stacks.assign(incident_id, unit_id)
        state.stamp_incident(incident_id, unit['status'])
    return {'ok': True, 'unit': unit}


def _deactivate(state: BoardState, user: str, unit_id: str, expected: Optional[str], clear: bool):
    unit = state.unit(unit_id)
    conflict = state.conflict(unit, expected)
    if conflict:
        return conflict
    state.touch(unit, user)
    unit['active'] = False
    if clear:
        unit.update({'status': 'AV', 'incident': None, 'destination': None, 'note': '', 'tags': {}})
    return {'ok': True, 'unit': unit}


@rpc('logoffUnit')
def logoff_unit(state: BoardState, user: str, unit_id: str, expected: Optional[str] = None):
    return _deactivate(state, user, unit_id, expected, clear=False)


@rpc('ridoffUnit')
def ridoff_unit(state: BoardState, user: str, unit_id: str, expected: Optional[str] = None):
    return _deactivate(state, user, unit_id, expected, clear=True)


@rpc('touchUnit')
def touch_unit(state: BoardState, user: str, unit_id: str, expected: Optional[str] = None):
    unit = state.unit(unit_id)
    conflict = state.conflict(unit, expected)
    if conflict:
        return conflict
    state.touch(unit, user, remember=False)
    return {'ok': True, 'unit': unit}


@rpc('touchAllOS')
def touch_all_oos(state: BoardState, user: str):
    units = [u for u in state.units.values() if u['status'] == 'OOS' and u['active']]
    for unit in units:
        state.touch(unit, user, remember=False)
    return {'ok': True, 'count': len(units)}


@rpc('undoUnit')
def undo_unit(state: BoardState, user: str, unit_id: str):
    unit = state.unit(unit_id)
    previous = state.history.get(unit['unit_id'])
    if not previous:
        raise RpcFailure(f"NOTHING TO UNDO FOR {unit['unit_id']}")
    restored = previous.pop()
    unit.update({k: restored[k] for k in UNIT_FIELDS})
    state.touch(unit, user, remember=False)
    return {'ok': True, 'unit': unit}


@rpc('getUnitInfo')
def get_unit_info(state: BoardState, user: str, unit_id: str):
    unit = state.unit(unit_id)
    return {'ok': True, 'unit': unit, 'stack': [a.model_dump() for a in state.stacks.entries(unit['unit_id'])]}


@rpc('getUnitHistory')
def get_unit_history(state: BoardState, user: str, unit_id: str, hours: int = 12):
    unit = state.unit(unit_id)
    rows = list(reversed(state.history.get(unit['unit_id'], [])))
    return {'ok': True, 'unit_id': unit['unit_id'], 'hours': hours, 'history': rows}


def _stack_op(op: str):
    def handler(state: BoardState, user: str, payload: Dict[str, Any]):
        unit = state.unit(payload.get('unitId'))
        incident_id = payload.get('incidentId')
        state.incident(incident_id)
        conflict = state.conflict(unit, payload.get('expectedUpdatedAt'))
        if conflict:
            return conflict
        try:
            change = state.stacks.apply(op, incident_id, unit['unit_id'])
        except StackError as e:
            raise RpcFailure(str(e).upper())
        state.touch(unit, user)
        state.sync_unit_incident(unit)
        return {'ok': True, 'unit': unit, 'promoted': change.promoted,
                'stack': [a.model_dump() for a in state.stacks.entries(unit['unit_id'])]}
    return handler


rpc('assignUnit')(_stack_op('ASSIGN'))
rpc('queueUnit')(_stack_op('QUEUE'))
rpc('primaryUnit')(_stack_op('PRIMARY'))
rpc('clearUnitAssignment')(_stack_op('CLEAR'))


@rpc('getUnitStack')
def get_unit_stack(state: BoardState, user: str, payload: Dict[str, Any]):
    unit = state.unit(payload.get('unitId'))
    entries = state.stacks.entries(unit['unit_id'])
    return {'ok': True, 'unit_id': unit['unit_id'], 'stack': [a.model_dump() for a in entries]}


@rpc('getIncident')
def get_incident(state: BoardState, user: str, incident_id: str):
    incident = state.incident(incident_id)
    return {'ok': True, 'incident': incident, 'units': state.stacks.units_for(incident_id)}


@rpc('createQueuedIncident')
def create_queued_incident(state: BoardState, user: str, destination: str, note: str = '',
                           priority: Optional[int] = None, assign_unit_id: Optional[str] = None):
    incident = state.add_incident(destination=destination or None, note=note or '', priority=priority)
    if assign_unit_id:
        unit = state.unit(assign_unit_id)
        state.stacks.queue(incident['incident_id'], unit['unit_id'])
        state.touch(unit, user)
        state.sync_unit_incident(unit)
    return {'ok': True, 'incidentId': incident['incident_id'], 'incident': incident}


@rpc('appendIncidentNote')
def append_incident_note(state: BoardState, user: str, incident_id: str, message: str):
    incident = state.incident(incident_id)
    line = f"{user}: {message}"
    incident['note'] = f"{incident['note']}\n{line}" if incident['note'] else line
    incident['updated_at'] = state.next_marker()
    return {'ok': True, 'incident': incident}


@rpc('closeIncident')
def close_incident(state: BoardState, user: str, incident_id: str, disposition: str = ''):
    incident = state.incident(incident_id)
    if incident['status'] == 'CLOSED':
        raise RpcFailure(f"{incident_id} ALREADY CLOSED")
    incident.update({'status': 'CLOSED', 'closed_at': state.next_marker(), 'updated_at': state.next_marker()})
    if disposition:
        incident['disposition'] = disposition
    for unit_id in state.stacks.units_for(incident_id):
        state.stacks.clear(incident_id, unit_id)
        unit = state.units[unit_id]
        state.touch(unit, user)
        state.sync_unit_incident(unit)
    return {'ok': True, 'incident': incident}


@rpc('reopenIncident')
def reopen_incident(state: BoardState, user: str, incident_id: str):
    incident = state.incident(incident_id)
    if incident['status'] != 'CLOSED':
        raise RpcFailure(f"{incident_id} IS NOT CLOSED")
    incident.update({'status': 'ACTIVE', 'closed_at': None, 'updated_at': state.next_marker()})
    return {'ok': True, 'incident': incident}


@rpc('requeueIncident')
def requeue_incident(state: BoardState, user: str, incident_id: str):
    incident = state.incident(incident_id)
    incident.update({'status': 'QUEUED', 'updated_at': state.next_marker()})
    return {'ok': True, 'incident': incident}


@rpc('setIncidentPriority')
def set_incident_priority(state: BoardState, user: str, incident_id: str, priority: int):
    incident = state.incident(incident_id)
    incident.update({'priority': priority, 'updated_at': state.next_marker()})
    return {'ok': True, 'incident': incident}


@rpc('linkUnits')
def link_units(state: BoardState, user: str, unit1: str, unit2: str, incident_id: str):
    state.incident(incident_id)
    for unit in (state.unit(unit1), state.unit(unit2)):
        state.stacks.queue(incident_id, unit['unit_id'])
        state.touch(unit, user)
        state.sync_unit_incident(unit)
    return {'ok': True}


@rpc('transferIncident')
def transfer_incident(state: BoardState, user: str, from_unit: str, to_unit: str, incident_id: str):
    state.incident(incident_id)
    source, target = state.unit(from_unit), state.unit(to_unit)
    if not state.stacks.has(source['unit_id'], incident_id):
        raise RpcFailure(f"{incident_id} IS NOT ON {source['unit_id']}")
    state.stacks.clear(incident_id, source['unit_id'])
    state.stacks.queue(incident_id, target['unit_id'])
    for unit in (source, target):
        state.touch(unit, user)
        state.sync_unit_incident(unit)
    return {'ok': True}


@rpc('search')
def search(state: BoardState, user: str, query: str):
    q = (query or '').upper()
    incidents = [i for i in state.incidents.values()
                 if q in ' '.join(str(v) for v in i.values() if v).upper()]
    units = [u for u in state.units.values() if q in u['unit_id'] or q in (u['note'] or '').upper()]
    return {'ok': True, 'incidents': incidents, 'units': units}


def _post_message(state: BoardState, user: str, to_role: str, text: str, urgent: bool):
    message = {
        'message_id': f"M{next(state._message_ids)}",
        'from_role': user,
        'to_role': to_role,
        'text': text,
        'urgent': bool(urgent),
        'read': False,
        'created_at': state.next_marker(),
    }
    state.messages.append(message)
    return {'ok': True, 'message': message}


@rpc('sendMessage')
def send_message(state: BoardState, user: str, to_role: str, message: str, urgent: bool = False):
    return _post_message(state, user, to_role.upper(), message, urgent)


@rpc('sendBroadcast')
def send_broadcast(state: BoardState, user: str, message: str, urgent: bool = False):
    return _post_message(state, user, 'ALL', message, urgent)


@rpc('setBanner')
def set_banner(state: BoardState, user: str, kind: str, message: str = ''):
    kind = kind.upper()
    if message:
        state.banners[kind] = {'kind': kind, 'message': message, 'set_by': user, 'acknowledged': False}
    else:
        state.banners.pop(kind, None)
    return {'ok': True}


@rpc('setDiversion')
def set_diversion(state: BoardState, user: str, destination: str, active: bool):
    state.diversions[destination.upper()] = bool(active)
    return {'ok': True}


@rpc('who')
def who(state: BoardState, user: str, filter_text: str = ''):
    users = sorted({s['username'] for s in state.sessions.values()})
    if filter_text:
        users = [u for u in users if filter_text.upper() in u]
    return {'ok': True, 'users': users}


# =============================================================================
# SESSION + ROUTE
# =============================================================================

def login(state: BoardState, role: str, username: str, password: str, *rest):
    if not username:
        return {'ok': False, 'error': 'USERNAME REQUIRED'}
    token = f"tok-{next(state._tokens)}"
    state.sessions[token] = {'username': username.upper(), 'role': (role or 'DISPATCH').upper()}
    return {'ok': True, 'token': token, 'username': username.upper(), 'role': (role or 'DISPATCH').upper()}


def handle(state: BoardState, action: str, params: List[Any]) -> Dict[str, Any]:
    """Run one RPC against the state"""
    if action == 'login':
        return login(state, *params)
    if action == 'logout':
        state.sessions.pop(params[0] if params else None, None)
        return {'ok': True}

    handler = HANDLERS.get(action)
    if handler is None:
        return {'ok': False, 'error': f"UNKNOWN ACTION {action}"}

    token, args = (params[0], params[1:]) if params else (None, [])
    session = state.sessions.get(token)
    if session is None:
        return {'ok': False, 'error': 'NOT AUTHENTICATED'}

    try:
        return handler(state, session['username'], *args)
    except RpcFailure as e:
        return {'ok': False, 'error': str(e)}
    except TypeError as e:
        logger.warning(f"Bad params for {action}: {e}")
        return {'ok': False, 'error': f"BAD PARAMETERS FOR {action}"}


@router.post("/rpc")
async def rpc_endpoint(request: Request, action: str = Form(...), params: str = Form('[]')):
    state: BoardState = request.app.state.board
    try:
        decoded = json.loads(params)
    except ValueError:
        return {'ok': False, 'error': 'PARAMS MUST BE A JSON ARRAY'}
    if not isinstance(decoded, list):
        return {'ok': False, 'error': 'PARAMS MUST BE A JSON ARRAY'}
    logger.debug(f"RPC {action} {decoded}")
    return handle(state, action, decoded)


@router.get("/health")
async def health():
    return {"status": "healthy"}


def create_app(state: Optional[BoardState] = None) -> FastAPI:
    app = FastAPI(
        title="DispatchBoard Simulator",
        description="In-memory dispatch board backend",
        version="1.0.0",
    )
    app.state.board = state or BoardState()
    app.include_router(router)
    return app


def seed(state: BoardState) -> BoardState:
    """A few units and incidents to play with"""
    for unit_id in ('M1', 'M2', 'M3', 'M7', 'E48'):
        state.add_unit(unit_id, unit_type='ALS' if unit_id.startswith('M') else None)
    state.add_incident(destination='SCH', scene_address='100 MAIN ST', priority=2)
    state.add_incident(destination='CCH', scene_address='45 OAK AVE', priority=1)
    return state


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description='DispatchBoard Simulator')
    parser.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8001, help='Port (default: 8001)')
    parser.add_argument('--seed', action='store_true', help='Start with sample units and incidents')
    parser.add_argument('--debug', action='store_true', help='Debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    state = BoardState()
    if args.seed:
        seed(state)
    print(f"Board simulator on http://{args.host}:{args.port}/rpc")
    uvicorn.run(create_app(state), host=args.host, port=args.port)


if __name__ == '__main__':
    main()
