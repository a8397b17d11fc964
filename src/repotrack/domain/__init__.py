from repotrack.domain.errors import ReparseError
from repotrack.domain.events import EventType, normalize_event_type
from repotrack.domain.models import (
    ExecutionMode,
    OutcomeStatus,
    ReparseOperation,
    VcsKind,
    parse_commit_reference,
)

__all__ = [
    'EventType',
    'ExecutionMode',
    'OutcomeStatus',
    'ReparseError',
    'ReparseOperation',
    'VcsKind',
    'normalize_event_type',
    'parse_commit_reference',
]
