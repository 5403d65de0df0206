"""
Board vocabulary: status codes, command families, incident key format.
"""

import re


# =============================================================================
# UNIT STATUS CODES
# =============================================================================

STATUS_CODES = {
    'AV': 'AVAILABLE',
    'D': 'DISPATCHED',
    'DE': 'ENROUTE',
    'OS': 'ON SCENE',
    'T': 'TRANSPORTING',
    'AT': 'AT DESTINATION',
    'OOS': 'OUT OF SERVICE',
    'BRK': 'BREAK',
}

# Statuses that mean the unit is working an incident
ACTIVE_STATUSES = {'D', 'DE', 'OS', 'T', 'AT'}

# Statuses where a trailing non-incident token names a destination
DESTINATION_STATUSES = {'T', 'AT'}

INCIDENT_STATUSES = ('QUEUED', 'ACTIVE', 'CLOSED')


# =============================================================================
# COMMAND FAMILIES
# =============================================================================

CHAIN_SEPARATOR = '|'
NOTE_SEPARATOR = ';'

# First token means "the rest of the line is argument text", chain separator included
WHOLE_LINE_VERBS = {'MSG', 'BC', 'NOTE', 'NC', 'SEARCH', 'BANNER'}

# Verbs whose argument is everything after the verb
SINGLE_ARG_VERBS = {'BC', 'NC', 'SEARCH'}

ASSIGNMENT_VERBS = {'ASSIGN', 'QUEUE', 'PRIMARY', 'CLEAR'}

# Non-mutating commands forwarded to their handler unchanged
QUERY_VERBS = {'WHO', 'INFO', 'HIST', 'STACK', 'INC', 'SEARCH', 'REFRESH'}

OPTION_TOKENS = {'FORCE'}


# =============================================================================
# INCIDENT KEYS
# =============================================================================

# 26-0023
INCIDENT_KEY_RE = re.compile(r'^\d{2}-\d{3,6}$')

# Bare 3-4 digit reference typed by an operator
BARE_INCIDENT_RE = re.compile(r'^\d{3,4}$')

INCIDENT_SERIAL_WIDTH = 4


# =============================================================================
# LIMITS
# =============================================================================

UNDO_CAPACITY = 3
UNDO_TTL_SECONDS = 5 * 60

ADDRESS_HISTORY_LIMIT = 50

# Wildcard revision marker, accepted by the backend as "skip the check"
WILDCARD_MARKER = ''
