import pytest

from dispatchboard.config import ClientConfig, DEFAULT_API_URL
from dispatchboard.models import ConflictRecord, RpcResult, Unit, UnitPatch
from dispatchboard.note_tags import NoteTags, join_note, split_note


# =============================================================================
# Note tags
# =============================================================================

def test_split_note_lifts_known_tags():
    text, tags = split_note('PT IN ROOM 4 [ETA:10] [LOC:ER BAY 2]')
    assert text == 'PT IN ROOM 4'
    assert tags == NoteTags(eta_minutes=10, location='ER BAY 2')


def test_split_note_keeps_unknown_tags_and_bad_eta():
    text, tags = split_note('[FOO:BAR] CALL BACK [ETA:SOON]')
    assert text == '[FOO:BAR] CALL BACK'
    assert tags.eta_minutes is None


def test_split_note_empty():
    assert split_note(None) == ('', NoteTags())


def test_join_note_orders_tags():
    tags = NoteTags(patient='ADULT M', eta_minutes=5, disposition='TX')
    assert join_note('ENROUTE', tags) == 'ENROUTE [ETA:5] [DISPO:TX] [PAT:ADULT M]'
    assert join_note('', tags) == '[ETA:5] [DISPO:TX] [PAT:ADULT M]'
    assert join_note('ONLY TEXT', None) == 'ONLY TEXT'


def test_merged_prefers_set_fields():
    base = NoteTags(eta_minutes=10, location='LOBBY')
    assert base.merged(NoteTags(eta_minutes=3)) == NoteTags(eta_minutes=3, location='LOBBY')
    assert NoteTags().is_empty()
    assert not base.is_empty()


# =============================================================================
# Units & patches
# =============================================================================

def test_unit_from_wire_normalizes():
    unit = Unit.from_wire({
        'unit_id': 'm1', 'status': 'T', 'incident': '', 'destination': 'SCH',
        'note': 'PT STABLE [ETA:7]', 'tags': {'location': 'BAY 1'},
    })
    assert unit.unit_id == 'M1'
    assert unit.incident is None
    assert unit.note == 'PT STABLE'
    assert unit.tags == NoteTags(eta_minutes=7, location='BAY 1')


def test_patch_sends_only_set_fields():
    patch = UnitPatch(status='OS')
    assert patch.to_wire() == {'status': 'OS'}
    assert patch.changed_fields() == ['status']


def test_patch_renders_legacy_tags_into_note():
    patch = UnitPatch(tags=NoteTags(eta_minutes=10))
    assert patch.to_wire(base_note='ENROUTE') == {'tags': {'eta_minutes': 10}, 'note': 'ENROUTE [ETA:10]'}
    assert patch.to_wire(legacy_note_tags=False) == {'tags': {'eta_minutes': 10}}


def test_patch_explicit_note_wins_over_base_note():
    patch = UnitPatch(note='NEW', tags=NoteTags(location='ER'))
    assert patch.to_wire(base_note='OLD')['note'] == 'NEW [LOC:ER]'


# =============================================================================
# Envelope
# =============================================================================

@pytest.mark.parametrize('current', [
    {'status': 'OS', 'revisionMarker': 'r2', 'updatedBy': 'BOB'},
    {'status': 'OS', 'updated_at': 'r2', 'updated_by': 'BOB'},
])
def test_conflict_record_accepts_both_spellings(current):
    record = ConflictRecord.model_validate(current)
    assert (record.status, record.revision_marker, record.updated_by) == ('OS', 'r2', 'BOB')


def test_conflict_envelope():
    result = RpcResult.from_wire({
        'ok': False, 'conflict': True, 'error': 'M1 WAS CHANGED BY BOB',
        'current': {'status': 'OS', 'updated_at': 'r2', 'updated_by': 'BOB', 'unit_id': 'M1'},
    })
    assert result.conflict
    assert result.current.revision_marker == 'r2'
    assert result.current.model_extra['unit_id'] == 'M1'


def test_payload_holds_extra_fields():
    result = RpcResult.from_wire({'ok': True, 'token': 'tok-1', 'role': 'DISPATCH'})
    assert result.payload == {'token': 'tok-1', 'role': 'DISPATCH'}


@pytest.mark.parametrize('body', [None, ['ok'], 'OK', 3])
def test_non_dict_body_is_transport_failure(body):
    result = RpcResult.from_wire(body)
    assert not result.ok
    assert result.transport_failure


# =============================================================================
# Config
# =============================================================================

def test_config_defaults(monkeypatch):
    for name in ('DISPATCHBOARD_API_URL', 'DISPATCHBOARD_TIMEOUT', 'DISPATCHBOARD_POLL_FOCUSED',
                 'DISPATCHBOARD_LEGACY_NOTE_TAGS'):
        monkeypatch.delenv(name, raising=False)
    config = ClientConfig.from_env()
    assert config.api_url == DEFAULT_API_URL
    assert config.timeout is None
    assert config.legacy_note_tags is True
    assert config.stale_intervals == 3


def test_config_from_env(monkeypatch):
    monkeypatch.setenv('DISPATCHBOARD_API_URL', 'http://board.local/rpc')
    monkeypatch.setenv('DISPATCHBOARD_TIMEOUT', '2.5')
    monkeypatch.setenv('DISPATCHBOARD_POLL_FOCUSED', 'often')
    monkeypatch.setenv('DISPATCHBOARD_POLL_UNFOCUSED', '60')
    monkeypatch.setenv('DISPATCHBOARD_LEGACY_NOTE_TAGS', 'false')

    config = ClientConfig.from_env()

    assert config.api_url == 'http://board.local/rpc'
    assert config.timeout == 2.5
    assert config.poll_focused == 5.0
    assert config.poll_unfocused == 60.0
    assert config.legacy_note_tags is False
