"""
Shared fixtures: a seeded in-memory board and engines talking to it over
httpx's ASGI transport (no sockets).
"""

from datetime import date

import httpx
import pytest

from dispatchboard.api_client import BoardApiClient
from dispatchboard.board_simulator import BoardState, create_app
from dispatchboard.config import ClientConfig
from dispatchboard.engine import DispatchEngine

TODAY = date(2026, 3, 14)
API_URL = 'http://board.test/rpc'


@pytest.fixture
def board() -> BoardState:
    state = BoardState(year=2026)
    for unit_id in ('M1', 'M2', 'M7', 'E48'):
        state.add_unit(unit_id)
    state.add_unit('M9', status='OOS')
    state.add_incident('26-0023', destination='SCH', priority=2, scene_address='100 MAIN ST')
    state.add_incident('26-0031', priority=1, scene_address='45 OAK AVE')
    state.add_incident('25-0047', priority=3)
    return state


@pytest.fixture
def app(board):
    return create_app(board)


@pytest.fixture
def make_client(app):
    def factory() -> BoardApiClient:
        return BoardApiClient(API_URL, transport=httpx.ASGITransport(app=app))
    return factory


@pytest.fixture
def make_engine(make_client):
    """async factory: signed-in engine with a full baseline already loaded"""
    async def factory(username: str = 'alice', store=None, **config) -> DispatchEngine:
        engine = DispatchEngine(
            ClientConfig(api_url=API_URL, **config),
            client=make_client(),
            store=store,
            today=lambda: TODAY,
        )
        await engine.login(username, 'pw')
        return engine
    return factory
