from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re

from repotrack.domain.errors import MalformedCommitReferenceError, ReparseError

_COMMIT_REFERENCE_RE = re.compile(r'^r([A-Z]+)([a-z0-9]+)$')


class VcsKind(str, Enum):
    GIT = 'git'
    MERCURIAL = 'mercurial'
    SVN = 'svn'


class ReparseOperation(str, Enum):
    MESSAGE = 'message'
    CHANGE = 'change'
    HERALD = 'herald'
    OWNERS = 'owners'


# Work items are always emitted in this order for a commit.
OPERATION_ORDER: tuple[ReparseOperation, ...] = (
    ReparseOperation.MESSAGE,
    ReparseOperation.CHANGE,
    ReparseOperation.HERALD,
    ReparseOperation.OWNERS,
)

VCS_SPECIFIC_OPERATIONS = frozenset({ReparseOperation.MESSAGE, ReparseOperation.CHANGE})


class ExecutionMode(str, Enum):
    DEFERRED = 'deferred'
    IMMEDIATE = 'immediate'


class OutcomeStatus(str, Enum):
    QUEUED = 'queued'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


def normalize_operations(values) -> frozenset[ReparseOperation]:
    out: set[ReparseOperation] = set()
    for raw in values or []:
        if isinstance(raw, ReparseOperation):
            out.add(raw)
            continue
        text = str(raw or '').strip().lower()
        if not text:
            continue
        try:
            out.add(ReparseOperation(text))
        except ValueError as exc:
            raise ReparseError(f'unknown operation: {text}', field='operations', code='unknown_operation') from exc
    return frozenset(out)


@dataclass(frozen=True)
class RepositoryRecord:
    id: int
    phid: str
    callsign: str
    name: str
    vcs: VcsKind


@dataclass(frozen=True)
class CommitRecord:
    id: int
    repository_id: int
    commit_identifier: str
    epoch: int


@dataclass(frozen=True)
class CommitReference:
    callsign: str
    commit_identifier: str

    @property
    def name(self) -> str:
        return f'r{self.callsign}{self.commit_identifier}'


def parse_commit_reference(value: str) -> CommitReference:
    """Parse ``r<CALLSIGN><identifier>``, e.g. ``rGITdeadbeef01``."""
    text = str(value or '').strip()
    match = _COMMIT_REFERENCE_RE.match(text)
    if match is None:
        raise MalformedCommitReferenceError(text)
    return CommitReference(callsign=match.group(1), commit_identifier=match.group(2))


@dataclass(frozen=True)
class ExplicitCommits:
    references: tuple[CommitReference, ...]


@dataclass(frozen=True)
class AllInRepository:
    repository: str
    min_epoch: int | None = None


@dataclass(frozen=True)
class ReparseTarget:
    repository: RepositoryRecord
    commit: CommitRecord

    @property
    def commit_name(self) -> str:
        return f'r{self.repository.callsign}{self.commit.commit_identifier}'


@dataclass(frozen=True)
class WorkItem:
    target: ReparseTarget
    operation: ReparseOperation
    worker_class: str

    @property
    def payload(self) -> dict:
        return {'commitID': self.target.commit.id, 'only': True}


@dataclass(frozen=True)
class WorkItemResult:
    item: WorkItem
    status: OutcomeStatus
    reason: str | None = None
    task_id: int | None = None

    def to_dict(self) -> dict:
        return {
            'commit': self.item.target.commit_name,
            'commit_id': self.item.target.commit.id,
            'operation': self.item.operation.value,
            'worker_class': self.item.worker_class,
            'status': self.status.value,
            'reason': self.reason,
            'task_id': self.task_id,
        }


@dataclass
class ReparseReport:
    mode: ExecutionMode
    commit_count: int
    results: list[WorkItemResult] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def queued_count(self) -> int:
        return self._count(OutcomeStatus.QUEUED)

    @property
    def succeeded_count(self) -> int:
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def failures(self) -> list[WorkItemResult]:
        return [r for r in self.results if r.status == OutcomeStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            'mode': self.mode.value,
            'commit_count': self.commit_count,
            'queued': self.queued_count,
            'succeeded': self.succeeded_count,
            'failed': self.failed_count,
            'items': [r.to_dict() for r in self.results],
        }
