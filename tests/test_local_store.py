import pytest

from dispatchboard.context import SessionContext
from dispatchboard.local_store import LocalStore, _parse_value, normalize_address


@pytest.fixture
def store():
    store = LocalStore()
    yield store
    store.close()


@pytest.mark.parametrize('value', ['status', 12, 2.5, True, False, {'cols': ['unit', 'status']}, [1, 2]])
def test_setting_round_trips_its_type(store, value):
    store.set_setting('ALICE', 'view', 'k', value)
    assert store.get_setting('ALICE', 'view', 'k') == value


def test_setting_default_and_overwrite(store):
    assert store.get_setting('ALICE', 'view', 'sort', 'unit') == 'unit'
    store.set_setting('ALICE', 'view', 'sort', 'status')
    store.set_setting('ALICE', 'view', 'sort', 'incident')
    assert store.get_setting('ALICE', 'view', 'sort') == 'incident'


def test_settings_are_per_operator(store):
    store.set_setting('ALICE', 'view', 'sort', 'status')
    store.set_setting('BOB', 'view', 'sort', 'unit')
    store.set_setting('BOB', 'sound', 'alerts', False)

    assert store.get_all_settings('ALICE') == {'view': {'sort': 'status'}}
    assert store.get_all_settings('BOB') == {'sound': {'alerts': False}, 'view': {'sort': 'unit'}}


def test_load_preferences(store):
    store.set_setting('ALICE', 'view', 'compact', True)
    context = SessionContext(operator='ALICE')
    store.load_preferences(context)
    assert context.pref('compact') is True
    assert context.pref('missing', 'x') == 'x'


@pytest.mark.parametrize('raw, value_type, expected', [
    ('10', 'number', 10),
    ('1.5', 'number', 1.5),
    ('ten', 'number', 'ten'),
    ('yes', 'boolean', True),
    ('off', 'boolean', False),
    ('{bad', 'json', '{bad'),
    (None, 'string', None),
])
def test_parse_value(raw, value_type, expected):
    assert _parse_value(raw, value_type) == expected


def test_address_history_newest_first_and_deduplicated(store):
    for address in ('100 main st', 'SCH', '100  MAIN  ST', 'CCH'):
        store.remember_address('ALICE', address)

    assert store.address_history('ALICE') == ['CCH', '100 MAIN ST', 'SCH']


def test_address_history_prefix_and_blank(store):
    store.remember_address('ALICE', '45 OAK AVE')
    store.remember_address('ALICE', '100 MAIN ST')
    assert store.remember_address('ALICE', '  ') is None
    assert store.address_history('ALICE', '45 o') == ['45 OAK AVE']
    assert store.address_history('BOB') == []


def test_address_history_is_capped():
    store = LocalStore(history_limit=3)
    for n in range(5):
        store.remember_address('ALICE', f"{n} MAIN ST")
    assert store.address_history('ALICE') == ['4 MAIN ST', '3 MAIN ST', '2 MAIN ST']
    store.close()


def test_clear_address_history(store):
    store.remember_address('ALICE', 'SCH')
    store.remember_address('BOB', 'CCH')
    assert store.clear_address_history('ALICE') == 1
    assert store.address_history('ALICE') == []
    assert store.address_history('BOB') == ['CCH']


def test_file_store_persists(tmp_path):
    path = tmp_path / 'nested' / 'local.db'
    first = LocalStore.at_path(str(path))
    first.remember_address('ALICE', 'SCH')
    first.close()

    second = LocalStore.at_path(str(path))
    assert second.address_history('ALICE') == ['SCH']
    second.close()


def test_normalize_address():
    assert normalize_address('  45   oak ave ') == '45 OAK AVE'
