"""
Session context.

Everything that used to be ambient module state - the session token, the
operator, the selected unit, view preferences - lives on one object owned by
the engine and passed to whoever needs it. Two engines in one process never
share a token.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class SessionContext:
    token: Optional[str] = None
    operator: Optional[str] = None          # Username / CAD id, shown as updated_by
    role: Optional[str] = None              # DISPATCH, FIELD, VIEWER
    selected_unit: Optional[str] = None
    focused: bool = True
    preferences: Dict[str, Any] = field(default_factory=dict)

    @property
    def signed_in(self) -> bool:
        return bool(self.token)

    def pref(self, key: str, default: Any = None) -> Any:
        return self.preferences.get(key, default)

    def select_unit(self, unit_id: Optional[str]):
        self.selected_unit = unit_id.upper() if unit_id else None
