"""
Structured note side-channel.

Older boards stored ETA, location, disposition and patient info as bracket
markers inside the free-text note, e.g.

    "PT IN ROOM 4 [ETA:10] [LOC:ER BAY 2]"

Units now carry these as explicit fields (NoteTags). The codec below reads
legacy notes into (text, tags) and, while downstream readers still expect it,
renders tags back into the combined text.
"""

import re
from typing import Optional, Tuple, Dict

from pydantic import BaseModel


# Tag name on the wire -> NoteTags field
TAG_FIELDS = {
    'ETA': 'eta_minutes',
    'LOC': 'location',
    'DISPO': 'disposition',
    'PAT': 'patient',
}

# Render order for the combined text
TAG_ORDER = ('ETA', 'LOC', 'DISPO', 'PAT')

TAG_RE = re.compile(r'\[([A-Z]+):([^\]]*)\]')


class NoteTags(BaseModel):
    """Structured values that used to live inside the note text"""
    eta_minutes: Optional[int] = None
    location: Optional[str] = None
    disposition: Optional[str] = None
    patient: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(v not in (None, '') for v in self.model_dump().values())

    def merged(self, other: Optional['NoteTags']) -> 'NoteTags':
        """Fields set on other win"""
        if other is None:
            return self.model_copy()
        data = self.model_dump()
        data.update({k: v for k, v in other.model_dump().items() if v is not None})
        return NoteTags(**data)


def _coerce(field: str, raw: str):
    raw = raw.strip()
    if field == 'eta_minutes':
        try:
            return int(raw)
        except ValueError:
            return None
    return raw or None


def split_note(note: Optional[str]) -> Tuple[str, NoteTags]:
    """
    Pull known bracket tags out of a note.

    Unknown tags stay in the text untouched.
    """
    if not note:
        return '', NoteTags()

    found: Dict[str, object] = {}

    def _take(match):
        name = match.group(1).upper()
        field = TAG_FIELDS.get(name)
        if not field:
            return match.group(0)
        value = _coerce(field, match.group(2))
        if value is not None:
            found[field] = value
        return ''

    text = TAG_RE.sub(_take, note)
    text = re.sub(r'\s+', ' ', text).strip()
    return text, NoteTags(**found)


def join_note(text: Optional[str], tags: Optional[NoteTags]) -> str:
    """Render text plus tags in the legacy combined format"""
    parts = [text.strip()] if text and text.strip() else []
    if tags is not None:
        for name in TAG_ORDER:
            value = getattr(tags, TAG_FIELDS[name])
            if value is None or value == '':
                continue
            parts.append(f"[{name}:{value}]")
    return ' '.join(parts)
