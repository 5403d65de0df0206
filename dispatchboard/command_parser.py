"""
Command Interpreter

Turns one line of operator shorthand into normalized requests:

    D M1 0023               status D, unit M1, incident 26-0023
    M1 AV; BACK IN QTRS     status AV, note "BACK IN QTRS"
    MEDIC 1 T SCH           alias "MEDIC 1" -> M1, destination SCH
    QUEUE 0031 M1 | OS M2   two commands chained with "|"
    MSG DISP CALL ME | ASAP whole-line family, "|" is part of the text

Steps per line:
    1. Chain split on "|", except when a sub-command starts with a whole-line
       verb (MSG, BC, NOTE, NC, SEARCH, BANNER) - then the rest is text.
    2. Segment each sub-command into verb / first argument / remainder.
    3. Status/unit disambiguation: first token a status code wins, else the
       last token, else "<multi-word unit> <status> ...".
    4. Unit canonicalization against the alias table, longest label first.
    5. Incident resolution of bare 3-4 digit references.
    6. A trailing FORCE token becomes options.force.

Anything that matches no rule comes back as Unrecognized - never dropped.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .constants import (
    STATUS_CODES, CHAIN_SEPARATOR, NOTE_SEPARATOR, WHOLE_LINE_VERBS, SINGLE_ARG_VERBS,
    ASSIGNMENT_VERBS, QUERY_VERBS, OPTION_TOKENS, INCIDENT_KEY_RE, BARE_INCIDENT_RE,
    INCIDENT_SERIAL_WIDTH,
)
from .note_tags import NoteTags, split_note

logger = logging.getLogger(__name__)


# =============================================================================
# PARSED COMMAND STRUCTURES
# =============================================================================

@dataclass
class CommandOptions:
    force: bool = False


@dataclass
class MutationRequest:
    """A normalized state-changing command"""
    kind: str                                   # STATUS, QUEUE, ASSIGN, PRIMARY, CLEAR, UNDO, ...
    unit_id: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None                  # None = leave note alone, '' = clear it
    tags: Optional[NoteTags] = None
    incident_id: Optional[str] = None
    destination: Optional[str] = None
    options: CommandOptions = field(default_factory=CommandOptions)
    args: Dict[str, Any] = field(default_factory=dict)
    raw: str = field(default='', compare=False)


@dataclass
class DirectAction:
    """Non-mutating command forwarded to its handler as typed"""
    name: str
    args: List[str] = field(default_factory=list)
    raw: str = field(default='', compare=False)


@dataclass
class Unrecognized:
    raw: str
    reason: str = 'UNRECOGNIZED COMMAND'


ParseResult = Union[MutationRequest, DirectAction, Unrecognized]


@dataclass
class Segment:
    verb: str
    arg: str = ''
    rest: str = ''


# =============================================================================
# TEXT HELPERS
# =============================================================================

_PUNCT_RE = re.compile(r'[^A-Z0-9\s-]')
_SPACE_RE = re.compile(r'\s+')


def canonical_text(text: str) -> str:
    """Uppercase, strip punctuation except hyphen, collapse whitespace"""
    text = _PUNCT_RE.sub('', (text or '').upper())
    return _SPACE_RE.sub(' ', text).strip()


def split_chain(line: str) -> List[str]:
    """Split a line into sub-commands on "|", honoring whole-line verbs"""
    parts = []
    remaining = (line or '').strip()
    while remaining:
        first = remaining.split(None, 1)[0].upper()
        if first in WHOLE_LINE_VERBS:
            parts.append(remaining)
            break
        head, _, tail = remaining.partition(CHAIN_SEPARATOR)
        if head.strip():
            parts.append(head.strip())
        remaining = tail.strip()
    return parts


def segment(text: str) -> Segment:
    """
    verb / first argument / remainder.

    Single-argument verbs keep the whole remainder as their argument.
    Otherwise only the first two whitespace boundaries split, so the
    remainder keeps its own spacing (notes, messages).
    """
    parts = text.strip().split(None, 1)
    if not parts:
        return Segment('')
    verb = parts[0].upper()
    remainder = parts[1].strip() if len(parts) > 1 else ''
    if verb in SINGLE_ARG_VERBS:
        return Segment(verb, remainder, '')
    pieces = remainder.split(None, 1)
    arg = pieces[0] if pieces else ''
    rest = pieces[1].strip() if len(pieces) > 1 else ''
    return Segment(verb, arg, rest)


def _extract_options(text: str) -> Tuple[str, CommandOptions]:
    """Lift trailing option keywords off the command head (before any note)"""
    head, sep, note = text.partition(NOTE_SEPARATOR)
    tokens = head.split()
    options = CommandOptions()
    while len(tokens) > 1 and tokens[-1].upper() in OPTION_TOKENS:
        if tokens.pop().upper() == 'FORCE':
            options.force = True
    rebuilt = ' '.join(tokens)
    if sep:
        rebuilt = f"{rebuilt}{sep}{note}"
    return rebuilt, options


# =============================================================================
# INTERPRETER
# =============================================================================

class CommandInterpreter:
    """
    Stateless apart from what it reads through the providers:
        unit_ids()      -> known unit ids (they are their own aliases)
        incident_keys() -> incident keys currently on the board
        today()         -> date used for the two-digit year
    """

    def __init__(
        self,
        aliases: Optional[Dict[str, str]] = None,
        unit_ids: Optional[Callable[[], Iterable[str]]] = None,
        incident_keys: Optional[Callable[[], Iterable[str]]] = None,
        today: Callable[[], date] = date.today,
    ):
        self.aliases = {canonical_text(k): v.upper() for k, v in (aliases or {}).items()}
        self._unit_ids = unit_ids or (lambda: [])
        self._incident_keys = incident_keys or (lambda: [])
        self._today = today

    @classmethod
    def for_cache(cls, cache, aliases: Optional[Dict[str, str]] = None,
                  today: Callable[[], date] = date.today) -> 'CommandInterpreter':
        return cls(aliases=aliases, unit_ids=cache.unit_ids, incident_keys=cache.incident_keys, today=today)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def parse_line(self, line: str) -> List[ParseResult]:
        commands = split_chain(line)
        if not commands:
            return [Unrecognized(line or '', 'EMPTY COMMAND')]
        return [self.parse_command(c) for c in commands]

    def parse_command(self, text: str) -> ParseResult:
        raw = text.strip()
        verb = raw.split(None, 1)[0].upper() if raw else ''

        if verb in WHOLE_LINE_VERBS:
            result = self._parse_whole_line(verb, raw)
        else:
            body, options = _extract_options(raw)
            result = self._parse_structured(body, options)

        if result is None:
            logger.debug(f"Unrecognized command: {raw!r}")
            return Unrecognized(raw)
        if isinstance(result, Unrecognized):
            return result
        result.raw = raw
        return result

    # -------------------------------------------------------------------------
    # Unit & incident resolution
    # -------------------------------------------------------------------------

    def alias_table(self) -> List[Tuple[str, str]]:
        """(label, unit_id) pairs, longest label first"""
        table = {canonical_text(u): u.upper() for u in self._unit_ids()}
        table.update(self.aliases)
        return sorted(table.items(), key=lambda kv: (-len(kv[0].split(' ')), -len(kv[0]), kv[0]))

    def canonical_unit(self, text: str) -> Optional[str]:
        """Whole text as a unit reference"""
        unit_id, remaining = self.take_unit(text.split())
        return unit_id if unit_id and not remaining else None

    def take_unit(self, tokens: List[str]) -> Tuple[Optional[str], List[str]]:
        """
        Match the longest known label at the front of tokens.
        Falls back to the first token itself, canonicalized.
        """
        tokens = [t for t in tokens if canonical_text(t)]
        if not tokens:
            return None, []
        words = [canonical_text(t) for t in tokens]

        for label, unit_id in self.alias_table():
            label_words = label.split(' ')
            n = len(label_words)
            if words[:n] == label_words:
                return unit_id, tokens[n:]

        first = words[0].replace(' ', '')
        if not re.search(r'[A-Z0-9]', first):
            return None, tokens
        return first, tokens[1:]

    def looks_like_incident(self, token: str) -> bool:
        tok = (token or '').strip().upper()
        return bool(INCIDENT_KEY_RE.match(tok) or BARE_INCIDENT_RE.match(tok)) or tok in set(self._incident_keys())

    def resolve_incident(self, token: str) -> Optional[str]:
        """
        Full keys and known keys pass through. A bare 3-4 digit number
        becomes the existing key with that serial (current year first),
        else the existing key ending with those digits, else YY-NNNN for
        the current year.
        """
        tok = (token or '').strip().upper()
        keys = list(self._incident_keys())
        if tok in keys or INCIDENT_KEY_RE.match(tok):
            return tok
        if not BARE_INCIDENT_RE.match(tok):
            return None

        yy = f"{self._today().year % 100:02d}"

        suffix = [k for k in keys if k.endswith(tok)]
        exact = [k for k in suffix if k.split('-')[-1].lstrip('0') == tok.lstrip('0')]
        for candidates in (exact, suffix):
            if candidates:
                current_year = [k for k in candidates if k.startswith(f"{yy}-")]
                return max(current_year) if current_year else max(candidates)

        return f"{yy}-{tok.zfill(INCIDENT_SERIAL_WIDTH)}"

    # -------------------------------------------------------------------------
    # Grammar
    # -------------------------------------------------------------------------

    def _parse_structured(self, text: str, options: CommandOptions) -> Optional[ParseResult]:
        seg = segment(text)
        verb = seg.verb
        tokens = text.split()

        if verb == 'UNDO':
            if len(tokens) == 1:
                return MutationRequest('UNDO', options=options)
            unit_id = self.canonical_unit(' '.join(tokens[1:]))
            if unit_id:
                return MutationRequest('UNDO', unit_id=unit_id, options=options)
            return None

        if verb in ASSIGNMENT_VERBS:
            return self._parse_assignment(seg, options)

        handler = self._VERB_HANDLERS.get(verb)
        if handler is not None:
            result = handler(self, seg, tokens, options)
            if result is not None:
                return result

        if verb in QUERY_VERBS:
            return DirectAction(verb, tokens[1:])

        return self._parse_status(text, options)

    def _parse_status(self, text: str, options: CommandOptions) -> Optional[ParseResult]:
        head, sep, note_text = text.partition(NOTE_SEPARATOR)
        tokens = head.split()
        if not tokens:
            return None

        status = None
        trailing: List[str] = []
        unit_id = None

        if tokens[0].upper() in STATUS_CODES:
            status = tokens[0].upper()
            unit_id, trailing = self.take_unit(tokens[1:])
        elif len(tokens) >= 2 and tokens[-1].upper() in STATUS_CODES:
            status = tokens[-1].upper()
            unit_id, trailing = self.take_unit(tokens[:-1])
        else:
            unit_id, remaining = self.take_unit(tokens)
            if remaining and remaining[0].upper() in STATUS_CODES:
                status = remaining[0].upper()
                trailing = remaining[1:]

        if status is None:
            return None
        if unit_id is None:
            return Unrecognized(text, f"NO UNIT FOR STATUS {status}")

        request = MutationRequest('STATUS', unit_id=unit_id, status=status, options=options)

        leftover = []
        for tok in trailing:
            if request.incident_id is None and not leftover and self.looks_like_incident(tok):
                request.incident_id = self.resolve_incident(tok)
            else:
                leftover.append(tok)
        if leftover:
            request.destination = canonical_text(' '.join(leftover)) or None

        if sep:
            note, tags = split_note(note_text.strip())
            request.note = note
            request.tags = None if tags.is_empty() else tags
        return request

    def _parse_assignment(self, seg: Segment, options: CommandOptions) -> Optional[ParseResult]:
        if not seg.arg or not seg.rest:
            return Unrecognized(f"{seg.verb} {seg.arg}".strip(), f"{seg.verb} NEEDS <INC> <UNIT>")

        first, rest = seg.arg, seg.rest
        if not self.looks_like_incident(first):
            # Tolerate <UNIT> <INC>
            rest_tokens = rest.split()
            if len(rest_tokens) == 1 and self.looks_like_incident(rest_tokens[0]):
                first, rest = rest_tokens[0], seg.arg
            else:
                return Unrecognized(f"{seg.verb} {seg.arg} {seg.rest}", f"{seg.verb}: NO INCIDENT")

        incident_id = self.resolve_incident(first)
        unit_id, remaining = self.take_unit(rest.split())
        if unit_id is None or remaining:
            return Unrecognized(f"{seg.verb} {seg.arg} {seg.rest}", f"{seg.verb}: BAD UNIT")
        return MutationRequest(seg.verb, unit_id=unit_id, incident_id=incident_id, options=options)

    def _parse_whole_line(self, verb: str, raw: str) -> Optional[ParseResult]:
        seg = segment(raw)

        if verb == 'MSG':
            if not seg.arg or not seg.rest:
                return Unrecognized(raw, 'MSG NEEDS <ROLE> <TEXT>')
            return MutationRequest('MSG', args={'to': seg.arg.upper(), 'text': seg.rest})

        if verb == 'BC':
            if not seg.arg:
                return Unrecognized(raw, 'BC NEEDS <TEXT>')
            return MutationRequest('BROADCAST', args={'text': seg.arg})

        if verb == 'NOTE':
            if not seg.arg or not seg.rest or not self.looks_like_incident(seg.arg):
                return Unrecognized(raw, 'NOTE NEEDS <INC> <TEXT>')
            return MutationRequest('NOTE', incident_id=self.resolve_incident(seg.arg), args={'text': seg.rest})

        if verb == 'NC':
            destination, _, note = seg.arg.partition(NOTE_SEPARATOR)
            destination = canonical_text(destination)
            if not destination:
                return Unrecognized(raw, 'NC NEEDS <DEST>[; NOTE]')
            return MutationRequest('NEW_INCIDENT', destination=destination, note=note.strip())

        if verb == 'SEARCH':
            if not seg.arg:
                return Unrecognized(raw, 'SEARCH NEEDS <QUERY>')
            return DirectAction('SEARCH', [seg.arg])

        if verb == 'BANNER':
            if not seg.arg:
                return Unrecognized(raw, 'BANNER NEEDS <KIND> [TEXT]')
            return MutationRequest('BANNER', args={'kind': seg.arg.upper(), 'text': seg.rest})

        return None

    # -------------------------------------------------------------------------
    # Verb handlers: (self, seg, tokens, options) -> result or None
    # -------------------------------------------------------------------------

    def _unit_only(kind: str):
        def handler(self, seg, tokens, options):
            unit_id, remaining = self.take_unit(tokens[1:])
            if unit_id is None or remaining:
                return Unrecognized(' '.join(tokens), f"{seg.verb} NEEDS <UNIT>")
            return MutationRequest(kind, unit_id=unit_id, options=options)
        return handler

    def _incident_only(kind: str):
        def handler(self, seg, tokens, options):
            if not seg.arg or not self.looks_like_incident(seg.arg):
                return Unrecognized(' '.join(tokens), f"{seg.verb} NEEDS <INC>")
            request = MutationRequest(kind, incident_id=self.resolve_incident(seg.arg), options=options)
            if seg.rest:
                request.args['text'] = seg.rest
            return request
        return handler

    def _okall(self, seg, tokens, options):
        if len(tokens) != 1:
            return None
        return MutationRequest('OKALL', options=options)

    def _eta(self, seg, tokens, options):
        unit_id, remaining = self.take_unit(tokens[1:])
        if unit_id is None or len(remaining) != 1 or not remaining[0].isdigit():
            return Unrecognized(' '.join(tokens), 'ETA NEEDS <UNIT> <MINUTES>')
        minutes = int(remaining[0])
        return MutationRequest('ETA', unit_id=unit_id, tags=NoteTags(eta_minutes=minutes),
                               args={'minutes': minutes}, options=options)

    def _priority(self, seg, tokens, options):
        rest = seg.rest.split()
        if not seg.arg or not self.looks_like_incident(seg.arg) or len(rest) != 1:
            return Unrecognized(' '.join(tokens), 'PRI NEEDS <INC> <PRIORITY>')
        value = rest[0].upper().lstrip('P')
        if not value.isdigit():
            return Unrecognized(' '.join(tokens), 'PRI NEEDS <INC> <PRIORITY>')
        return MutationRequest('PRIORITY', incident_id=self.resolve_incident(seg.arg),
                               args={'priority': int(value)}, options=options)

    def _two_units(kind: str):
        def handler(self, seg, tokens, options):
            first, remaining = self.take_unit(tokens[1:])
            second, remaining = self.take_unit(remaining)
            if not first or not second or len(remaining) != 1 or not self.looks_like_incident(remaining[0]):
                return Unrecognized(' '.join(tokens), f"{seg.verb} NEEDS <UNIT> <UNIT> <INC>")
            return MutationRequest(kind, unit_id=first, incident_id=self.resolve_incident(remaining[0]),
                                   args={'other_unit': second}, options=options)
        return handler

    def _diversion(self, seg, tokens, options):
        rest = seg.rest.upper()
        if not seg.arg or rest not in ('ON', 'OFF'):
            return Unrecognized(' '.join(tokens), 'DIV NEEDS <DEST> ON|OFF')
        return MutationRequest('DIVERSION', destination=canonical_text(seg.arg),
                               args={'active': rest == 'ON'}, options=options)

    _VERB_HANDLERS = {
        'LOGOFF': _unit_only('LOGOFF'),
        'RIDOFF': _unit_only('RIDOFF'),
        'OK': _unit_only('TOUCH'),
        'OKALL': _okall,
        'ETA': _eta,
        'CLOSE': _incident_only('CLOSE'),
        'REOPEN': _incident_only('REOPEN'),
        'RQ': _incident_only('REQUEUE'),
        'PRI': _priority,
        'LINK': _two_units('LINK'),
        'TRANSFER': _two_units('TRANSFER'),
        'DIV': _diversion,
    }

    del _unit_only, _incident_only, _two_units
