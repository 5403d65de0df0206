"""
Board records - Pydantic schemas for the remote contract.

The backend owns these records; the client keeps read-mostly copies that are
replaced wholesale on every reconciliation. Field names match the wire format
(snake_case); a few conflict-payload fields also accept their camelCase form.
"""

from pydantic import BaseModel, Field, AliasChoices, ConfigDict
from typing import Optional, List, Dict, Any

from .note_tags import NoteTags, split_note, join_note


ROLE_PRIMARY = 'primary'
ROLE_QUEUED = 'queued'


# =============================================================================
# UNITS & INCIDENTS
# =============================================================================

class Unit(BaseModel):
    """A vehicle on the board"""
    unit_id: str
    status: str = 'AV'
    incident: Optional[str] = None
    destination: Optional[str] = None
    note: str = ''
    tags: NoteTags = Field(default_factory=NoteTags)
    active: bool = True
    updated_at: Optional[str] = None        # Revision marker (opaque)
    updated_by: Optional[str] = None
    unit_type: Optional[str] = None         # ALS, BLS, CCT ...
    level_of_care: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> 'Unit':
        """Build from a backend row, lifting legacy bracket tags out of the note"""
        data = dict(data)
        data['unit_id'] = str(data.get('unit_id', '')).upper()
        text, legacy = split_note(data.get('note') or '')
        data['note'] = text
        tags = NoteTags(**(data.get('tags') or {}))
        data['tags'] = legacy.merged(tags)
        for key in ('incident', 'destination'):
            if data.get(key) == '':
                data[key] = None
        return cls.model_validate(data)


class Incident(BaseModel):
    """An incident (call) on the board"""
    incident_id: str
    status: str = 'QUEUED'                  # QUEUED, ACTIVE, CLOSED
    priority: Optional[int] = None          # 1 = most urgent
    incident_type: Optional[str] = None
    scene_address: Optional[str] = None
    destination: Optional[str] = None
    note: str = ''
    level_of_care: Optional[str] = None
    related: List[str] = Field(default_factory=list)

    # Stage timestamps (ISO, UTC)
    created_at: Optional[str] = None
    dispatched_at: Optional[str] = None
    enroute_at: Optional[str] = None
    on_scene_at: Optional[str] = None
    transport_at: Optional[str] = None
    at_destination_at: Optional[str] = None
    closed_at: Optional[str] = None
    updated_at: Optional[str] = None


class Assignment(BaseModel):
    """One (incident, unit) pairing in a unit's assignment stack"""
    incident_id: str
    unit_id: str
    role: str = ROLE_QUEUED                 # primary, queued
    order_index: int = 0
    cleared: bool = False


# =============================================================================
# BOARD-WIDE SECTIONS
# =============================================================================

class Banner(BaseModel):
    kind: str                               # ALERT, NOTE
    message: str = ''
    set_by: Optional[str] = None
    acknowledged: bool = False


class Diversion(BaseModel):
    destination: str
    active: bool = True


class Message(BaseModel):
    message_id: str
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    text: str = ''
    urgent: bool = False
    read: bool = False
    created_at: Optional[str] = None


class StateSnapshot(BaseModel):
    """Response body of getState - either a full board or a unit delta"""
    full: bool = True
    max_revision: Optional[str] = None
    units: List[Unit] = Field(default_factory=list)
    incidents: List[Incident] = Field(default_factory=list)
    assignments: List[Assignment] = Field(default_factory=list)
    banners: List[Banner] = Field(default_factory=list)
    diversions: List[Diversion] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> 'StateSnapshot':
        units = [Unit.from_wire(u) for u in data.get('units') or []]
        banners = data.get('banners') or []
        if isinstance(banners, dict):
            # Older backends keyed banners by kind
            banners = [dict(b or {}, kind=k) for k, b in banners.items() if b]
        return cls(
            full=bool(data.get('full', True)),
            max_revision=data.get('max_revision') or data.get('ts'),
            units=units,
            incidents=data.get('incidents') or [],
            assignments=data.get('assignments') or [],
            banners=banners,
            diversions=data.get('diversions') or [],
            messages=data.get('messages') or [],
        )


# =============================================================================
# MUTATIONS
# =============================================================================

class UnitPatch(BaseModel):
    """
    Changed fields for upsertUnit.

    Only fields that were explicitly set are sent, so a status change never
    overwrites a destination some other dispatcher just typed.
    """
    status: Optional[str] = None
    incident: Optional[str] = None
    destination: Optional[str] = None
    note: Optional[str] = None
    tags: Optional[NoteTags] = None
    active: Optional[bool] = None

    def changed_fields(self) -> List[str]:
        return sorted(self.model_fields_set)

    def to_wire(self, legacy_note_tags: bool = True, base_note: str = '') -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        if 'tags' in data:
            tags = self.tags or NoteTags()
            data['tags'] = tags.model_dump(exclude_none=True)
            if legacy_note_tags:
                text = self.note if 'note' in self.model_fields_set else base_note
                data['note'] = join_note(text, tags)
        return data


# =============================================================================
# RESULT ENVELOPE
# =============================================================================

class ConflictRecord(BaseModel):
    """Authoritative unit record returned with a conflict"""
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    status: Optional[str] = None
    revision_marker: Optional[str] = Field(
        default=None, validation_alias=AliasChoices('revisionMarker', 'updated_at', 'revision_marker'))
    updated_by: Optional[str] = Field(
        default=None, validation_alias=AliasChoices('updatedBy', 'updated_by'))


class RpcResult(BaseModel):
    """Envelope every remote call returns"""
    model_config = ConfigDict(extra='allow')

    ok: bool = False
    error: Optional[str] = None
    conflict: bool = False
    current: Optional[ConflictRecord] = None
    transport_failure: bool = False

    @classmethod
    def from_wire(cls, data: Any) -> 'RpcResult':
        if not isinstance(data, dict):
            return cls(ok=False, error='INVALID RESPONSE FROM SERVER', transport_failure=True)
        return cls.model_validate(data)

    @property
    def payload(self) -> Dict[str, Any]:
        """Everything the backend sent beyond the envelope fields"""
        return dict(self.model_extra or {})
