"""
Client configuration.

Defaults live here, environment variables override them, and the console
flags override both.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


DEFAULT_API_URL = "http://127.0.0.1:8001/rpc"
DEFAULT_STORE_PATH = str(Path.home() / ".dispatchboard" / "local.db")

# Poll intervals (seconds). Unfocused keeps updating, just less often.
DEFAULT_POLL_FOCUSED = 5.0
DEFAULT_POLL_UNFOCUSED = 30.0

# STALE after this many poll intervals (at the current focus) without a good cycle
STALE_AFTER_INTERVALS = 3


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('true', '1', 'yes')


@dataclass
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    api_key: str = ''
    timeout: Optional[float] = None         # None = httpx default
    poll_focused: float = DEFAULT_POLL_FOCUSED
    poll_unfocused: float = DEFAULT_POLL_UNFOCUSED
    store_path: str = DEFAULT_STORE_PATH
    legacy_note_tags: bool = True           # Also render tags into the note text
    unit_aliases: Dict[str, str] = field(default_factory=dict)
    stale_intervals: int = STALE_AFTER_INTERVALS

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        timeout = os.environ.get('DISPATCHBOARD_TIMEOUT')
        return cls(
            api_url=os.environ.get('DISPATCHBOARD_API_URL', DEFAULT_API_URL),
            api_key=os.environ.get('DISPATCHBOARD_API_KEY', ''),
            timeout=float(timeout) if timeout else None,
            poll_focused=_env_float('DISPATCHBOARD_POLL_FOCUSED', DEFAULT_POLL_FOCUSED),
            poll_unfocused=_env_float('DISPATCHBOARD_POLL_UNFOCUSED', DEFAULT_POLL_UNFOCUSED),
            store_path=os.environ.get('DISPATCHBOARD_STORE_PATH', DEFAULT_STORE_PATH),
            legacy_note_tags=_env_bool('DISPATCHBOARD_LEGACY_NOTE_TAGS', True),
        )
