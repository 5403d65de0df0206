"""
Board API client - the remote call boundary.

Every backend function is reached the same way: POST form fields
`action=<verb>` and `params=<JSON array of positional args>`, answer is a
JSON envelope `{ok, error?, conflict?, current?, ...}`.

Network failures and non-JSON bodies never raise out of here; they come back
as `RpcResult(ok=False, transport_failure=True)` so the reconciler can mark
the board offline and carry on.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .models import RpcResult

logger = logging.getLogger(__name__)


class BoardApiClient:
    def __init__(
        self,
        api_url: str,
        api_key: str = '',
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key

        client_args: Dict[str, Any] = {}
        if timeout is not None:
            client_args['timeout'] = timeout
        if transport is not None:
            client_args['transport'] = transport
        self._client = httpx.AsyncClient(**client_args)

        self.stats = {
            'calls': 0,
            'failures': 0,
            'conflicts': 0,
        }

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    async def call(self, action: str, *params) -> RpcResult:
        """Call one backend function with positional params"""
        self.stats['calls'] += 1
        body = {
            'action': action,
            'params': json.dumps(list(params)),
        }

        try:
            response = await self._client.post(self.api_url, data=body, headers=self._headers())
        except httpx.HTTPError as e:
            self.stats['failures'] += 1
            logger.error(f"API call failed: {action} - {e}")
            return RpcResult(ok=False, error=f"NETWORK ERROR: {e}", transport_failure=True)

        try:
            data = response.json()
        except ValueError:
            self.stats['failures'] += 1
            logger.error(f"API response not JSON ({action}): {response.text[:200]}")
            return RpcResult(ok=False, error='INVALID RESPONSE FROM SERVER', transport_failure=True)

        try:
            result = RpcResult.from_wire(data)
        except ValidationError as e:
            self.stats['failures'] += 1
            logger.error(f"API envelope malformed ({action}): {e}")
            return RpcResult(ok=False, error='INVALID RESPONSE FROM SERVER', transport_failure=True)

        if result.conflict:
            self.stats['conflicts'] += 1
        return result

    # =========================================================================
    # Session
    # =========================================================================

    async def login(self, role: str, username: str, password: str, target: str = 'board') -> RpcResult:
        return await self.call('login', role, username, password, target, False)

    async def logout(self, token: str) -> RpcResult:
        return await self.call('logout', token)

    # =========================================================================
    # State
    # =========================================================================

    async def get_state(self, token: str, since: Optional[str] = None) -> RpcResult:
        return await self.call('getState', token, since)

    # =========================================================================
    # Units (revision-marker guarded)
    # =========================================================================

    async def upsert_unit(self, token: str, unit_id: str, patch: Dict[str, Any], expected: Optional[str]) -> RpcResult:
        return await self.call('upsertUnit', token, unit_id, patch, expected)

    async def logoff_unit(self, token: str, unit_id: str, expected: Optional[str]) -> RpcResult:
        return await self.call('logoffUnit', token, unit_id, expected)

    async def ridoff_unit(self, token: str, unit_id: str, expected: Optional[str]) -> RpcResult:
        return await self.call('ridoffUnit', token, unit_id, expected)

    async def touch_unit(self, token: str, unit_id: str, expected: Optional[str]) -> RpcResult:
        return await self.call('touchUnit', token, unit_id, expected)

    async def undo_unit(self, token: str, unit_id: str) -> RpcResult:
        """Server-side revert of the unit's last change"""
        return await self.call('undoUnit', token, unit_id)

    async def touch_all_oos(self, token: str) -> RpcResult:
        return await self.call('touchAllOS', token)

    async def get_unit_info(self, token: str, unit_id: str) -> RpcResult:
        return await self.call('getUnitInfo', token, unit_id)

    async def get_unit_history(self, token: str, unit_id: str, hours: int = 12) -> RpcResult:
        return await self.call('getUnitHistory', token, unit_id, hours)

    # =========================================================================
    # Assignment stack
    # =========================================================================

    async def stack_op(self, action: str, token: str, incident_id: str, unit_id: str,
                       expected: Optional[str] = None) -> RpcResult:
        """assignUnit / queueUnit / primaryUnit / clearUnitAssignment"""
        return await self.call(action, token, {
            'incidentId': incident_id,
            'unitId': unit_id,
            'expectedUpdatedAt': expected,
        })

    async def assign_unit(self, token: str, incident_id: str, unit_id: str, expected: Optional[str] = None) -> RpcResult:
        return await self.stack_op('assignUnit', token, incident_id, unit_id, expected)

    async def queue_unit(self, token: str, incident_id: str, unit_id: str, expected: Optional[str] = None) -> RpcResult:
        return await self.stack_op('queueUnit', token, incident_id, unit_id, expected)

    async def primary_unit(self, token: str, incident_id: str, unit_id: str, expected: Optional[str] = None) -> RpcResult:
        return await self.stack_op('primaryUnit', token, incident_id, unit_id, expected)

    async def clear_unit_assignment(self, token: str, incident_id: str, unit_id: str,
                                    expected: Optional[str] = None) -> RpcResult:
        return await self.stack_op('clearUnitAssignment', token, incident_id, unit_id, expected)

    async def get_unit_stack(self, token: str, unit_id: str) -> RpcResult:
        return await self.call('getUnitStack', token, {'unitId': unit_id})

    # =========================================================================
    # Incidents
    # =========================================================================

    async def get_incident(self, token: str, incident_id: str) -> RpcResult:
        return await self.call('getIncident', token, incident_id)

    async def create_queued_incident(self, token: str, destination: str, note: str,
                                     priority: Optional[int] = None, assign_unit_id: Optional[str] = None) -> RpcResult:
        return await self.call('createQueuedIncident', token, destination, note, priority, assign_unit_id)

    async def append_incident_note(self, token: str, incident_id: str, message: str) -> RpcResult:
        return await self.call('appendIncidentNote', token, incident_id, message)

    async def close_incident(self, token: str, incident_id: str, disposition: str = '') -> RpcResult:
        return await self.call('closeIncident', token, incident_id, disposition)

    async def reopen_incident(self, token: str, incident_id: str) -> RpcResult:
        return await self.call('reopenIncident', token, incident_id)

    async def requeue_incident(self, token: str, incident_id: str) -> RpcResult:
        return await self.call('requeueIncident', token, incident_id)

    async def set_incident_priority(self, token: str, incident_id: str, priority: int) -> RpcResult:
        return await self.call('setIncidentPriority', token, incident_id, priority)

    async def link_units(self, token: str, unit1: str, unit2: str, incident_id: str) -> RpcResult:
        return await self.call('linkUnits', token, unit1, unit2, incident_id)

    async def transfer_incident(self, token: str, from_unit: str, to_unit: str, incident_id: str) -> RpcResult:
        return await self.call('transferIncident', token, from_unit, to_unit, incident_id)

    async def search(self, token: str, query: str) -> RpcResult:
        return await self.call('search', token, query)

    # =========================================================================
    # Messaging, banners, diversions
    # =========================================================================

    async def send_message(self, token: str, to_role: str, message: str, urgent: bool = False) -> RpcResult:
        return await self.call('sendMessage', token, to_role, message, urgent)

    async def send_broadcast(self, token: str, message: str, urgent: bool = False) -> RpcResult:
        return await self.call('sendBroadcast', token, message, urgent)

    async def set_banner(self, token: str, kind: str, message: str) -> RpcResult:
        return await self.call('setBanner', token, kind, message)

    async def set_diversion(self, token: str, destination: str, active: bool) -> RpcResult:
        return await self.call('setDiversion', token, destination, active)

    async def who(self, token: str, filter_text: str = '') -> RpcResult:
        return await self.call('who', token, filter_text)


