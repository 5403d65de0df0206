import asyncio
import json
from urllib.parse import parse_qs

import httpx

from dispatchboard.api_client import BoardApiClient

API_URL = 'http://board.test/rpc'


def form_of(request: httpx.Request):
    fields = parse_qs(request.content.decode())
    return fields['action'][0], json.loads(fields['params'][0])


def client_with(handler, **kwargs) -> BoardApiClient:
    return BoardApiClient(API_URL, transport=httpx.MockTransport(handler), **kwargs)


def run(coro):
    return asyncio.run(coro)


def test_posts_action_and_json_params():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), *form_of(request)))
        return httpx.Response(200, json={'ok': True, 'full': True})

    async def scenario():
        client = client_with(handler)
        result = await client.get_state('tok-1', None)
        await client.close()
        return result

    result = run(scenario())

    assert result.ok
    assert result.payload == {'full': True}
    assert seen == [('POST', API_URL, 'getState', ['tok-1', None])]


def test_stack_op_sends_object_param():
    seen = []

    def handler(request):
        seen.append(form_of(request))
        return httpx.Response(200, json={'ok': True})

    async def scenario():
        async with client_with(handler) as client:
            await client.queue_unit('tok-1', '26-0031', 'M1', 'r1')

    run(scenario())

    assert seen == [('queueUnit', ['tok-1', {'incidentId': '26-0031', 'unitId': 'M1', 'expectedUpdatedAt': 'r1'}])]


def test_api_key_headers():
    seen = []

    def handler(request):
        seen.append(request.headers)
        return httpx.Response(200, json={'ok': True})

    async def scenario():
        async with client_with(handler, api_key='secret') as client:
            await client.who('tok-1')

    run(scenario())

    assert seen[0]['apikey'] == 'secret'
    assert seen[0]['authorization'] == 'Bearer secret'


def test_network_failure_is_transport_failure():
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    async def scenario():
        async with client_with(handler) as client:
            return await client.touch_unit('tok-1', 'M1', 'r1'), client.stats

    result, stats = run(scenario())

    assert not result.ok
    assert result.transport_failure
    assert result.error.startswith('NETWORK ERROR')
    assert stats['failures'] == 1


def test_non_json_body_is_transport_failure():
    def handler(request):
        return httpx.Response(502, text='<html>Bad Gateway</html>')

    async def scenario():
        async with client_with(handler) as client:
            return await client.get_state('tok-1')

    result = run(scenario())

    assert result.transport_failure
    assert result.error == 'INVALID RESPONSE FROM SERVER'


def test_malformed_envelope_is_transport_failure():
    def handler(request):
        return httpx.Response(200, json={'ok': 'maybe', 'conflict': {'no': 1}})

    async def scenario():
        async with client_with(handler) as client:
            return await client.get_state('tok-1')

    assert run(scenario()).transport_failure


def test_conflict_envelope_is_counted():
    def handler(request):
        return httpx.Response(200, json={
            'ok': False, 'conflict': True, 'error': 'M1 WAS CHANGED BY BOB',
            'current': {'status': 'OS', 'updated_at': 'r2', 'updated_by': 'BOB'},
        })

    async def scenario():
        async with client_with(handler) as client:
            result = await client.upsert_unit('tok-1', 'M1', {'status': 'AV'}, 'r1')
            return result, client.stats

    result, stats = run(scenario())

    assert result.conflict
    assert result.current.updated_by == 'BOB'
    assert stats == {'calls': 1, 'failures': 0, 'conflicts': 1}


def test_login_params():
    seen = []

    def handler(request):
        seen.append(form_of(request))
        return httpx.Response(200, json={'ok': True, 'token': 'tok-9'})

    async def scenario():
        async with client_with(handler) as client:
            return await client.login('DISPATCH', 'alice', 'pw')

    result = run(scenario())

    assert result.payload['token'] == 'tok-9'
    assert seen == [('login', ['DISPATCH', 'alice', 'pw', 'board', False])]
