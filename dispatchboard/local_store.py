"""
Local store - per-operator state kept on this workstation.

Two tables in a small SQLite file:
    local_settings   - view preferences, (operator, category, key) -> typed value
    address_history  - recently typed destinations/addresses, newest first,
                       deduplicated, capped at 50 per operator

Values are stored as text with a value_type of string, number, boolean or
json and parsed back on read.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Integer, String, Text, TIMESTAMP, UniqueConstraint, create_engine, func
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .constants import ADDRESS_HISTORY_LIMIT
from .command_parser import canonical_text

logger = logging.getLogger(__name__)

Base = declarative_base()


class LocalSetting(Base):
    """Operator preference"""
    __tablename__ = "local_settings"

    id = Column(Integer, primary_key=True)
    operator = Column(String(50), nullable=False, default='')
    category = Column(String(50), nullable=False)
    key = Column(String(50), nullable=False)
    value = Column(Text)
    value_type = Column(String(20), default='string')  # string, number, boolean, json
    updated_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())

    __table_args__ = (
        UniqueConstraint('operator', 'category', 'key', name='uq_local_setting'),
    )


class AddressEntry(Base):
    """One remembered address; higher id = more recent"""
    __tablename__ = "address_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operator = Column(String(50), nullable=False, default='')
    address = Column(String(200), nullable=False)
    used_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())


# =============================================================================
# VALUE ENCODING
# =============================================================================

def _value_type(value: Any) -> str:
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, (dict, list)):
        return 'json'
    return 'string'


def _encode_value(value: Any, value_type: str) -> Optional[str]:
    if value is None:
        return None
    if value_type == 'boolean':
        return 'true' if value else 'false'
    if value_type == 'json':
        return json.dumps(value)
    return str(value)


def _parse_value(value: Optional[str], value_type: str) -> Any:
    """Parse string value to appropriate type"""
    if value is None:
        return None

    if value_type == 'number':
        try:
            if '.' in value:
                return float(value)
            return int(value)
        except ValueError:
            return value
    elif value_type == 'boolean':
        return value.lower() in ('true', '1', 'yes')
    elif value_type == 'json':
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def normalize_address(address: str) -> str:
    """Uppercase, collapsed whitespace"""
    return ' '.join((address or '').upper().split())


# =============================================================================
# STORE
# =============================================================================

class LocalStore:
    def __init__(self, url: str = 'sqlite://', history_limit: int = ADDRESS_HISTORY_LIMIT):
        engine_args: Dict[str, Any] = {}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            # One shared connection, otherwise every session sees an empty database
            engine_args = {'poolclass': StaticPool, 'connect_args': {'check_same_thread': False}}
        self.engine = create_engine(url, **engine_args)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.history_limit = history_limit
        Base.metadata.create_all(self.engine)

    @classmethod
    def at_path(cls, path: str, **kwargs) -> 'LocalStore':
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        return cls(f"sqlite:///{path}", **kwargs)

    def close(self):
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_setting(self, operator: str, category: str, key: str, default: Any = None) -> Any:
        db = self.SessionLocal()
        try:
            row = db.query(LocalSetting).filter(
                LocalSetting.operator == (operator or ''),
                LocalSetting.category == category,
                LocalSetting.key == key,
            ).first()
            if row is None:
                return default
            return _parse_value(row.value, row.value_type)
        finally:
            db.close()

    def set_setting(self, operator: str, category: str, key: str, value: Any):
        value_type = _value_type(value)
        db = self.SessionLocal()
        try:
            row = db.query(LocalSetting).filter(
                LocalSetting.operator == (operator or ''),
                LocalSetting.category == category,
                LocalSetting.key == key,
            ).first()
            if row is None:
                row = LocalSetting(operator=operator or '', category=category, key=key)
                db.add(row)
            row.value = _encode_value(value, value_type)
            row.value_type = value_type
            row.updated_at = func.current_timestamp()
            db.commit()
            logger.debug(f"Setting {category}.{key} = {value!r} for {operator or '(default)'}")
        finally:
            db.close()

    def get_all_settings(self, operator: str) -> Dict[str, Dict[str, Any]]:
        """All settings for an operator grouped by category"""
        db = self.SessionLocal()
        try:
            rows = db.query(LocalSetting).filter(
                LocalSetting.operator == (operator or '')
            ).order_by(LocalSetting.category, LocalSetting.key).all()

            settings: Dict[str, Dict[str, Any]] = {}
            for row in rows:
                settings.setdefault(row.category, {})[row.key] = _parse_value(row.value, row.value_type)
            return settings
        finally:
            db.close()

    def load_preferences(self, context, category: str = 'view'):
        """Copy the operator's view preferences onto the session context"""
        context.preferences.update(self.get_all_settings(context.operator).get(category, {}))
        return context.preferences

    # -------------------------------------------------------------------------
    # Address history
    # -------------------------------------------------------------------------

    def remember_address(self, operator: str, address: str) -> Optional[str]:
        """Move address to the top of the operator's history"""
        normalized = normalize_address(address)
        if not canonical_text(normalized):
            return None

        db = self.SessionLocal()
        try:
            db.query(AddressEntry).filter(
                AddressEntry.operator == (operator or ''),
                AddressEntry.address == normalized,
            ).delete(synchronize_session=False)
            db.add(AddressEntry(operator=operator or '', address=normalized))
            db.flush()

            overflow = db.query(AddressEntry.id).filter(
                AddressEntry.operator == (operator or '')
            ).order_by(AddressEntry.id.desc()).offset(self.history_limit).all()
            if overflow:
                db.query(AddressEntry).filter(
                    AddressEntry.id.in_([row.id for row in overflow])
                ).delete(synchronize_session=False)
            db.commit()
            return normalized
        finally:
            db.close()

    def address_history(self, operator: str, prefix: str = '') -> List[str]:
        """Newest first, optionally filtered by prefix"""
        db = self.SessionLocal()
        try:
            query = db.query(AddressEntry.address).filter(AddressEntry.operator == (operator or ''))
            if prefix:
                query = query.filter(AddressEntry.address.startswith(normalize_address(prefix)))
            return [row.address for row in query.order_by(AddressEntry.id.desc()).all()]
        finally:
            db.close()

    def clear_address_history(self, operator: str) -> int:
        db = self.SessionLocal()
        try:
            count = db.query(AddressEntry).filter(AddressEntry.operator == (operator or '')).delete()
            db.commit()
            return count
        finally:
            db.close()
