from __future__ import annotations

from importlib.metadata import entry_points
import logging
from typing import Callable, Iterable, Protocol

from repotrack.domain.models import (
    OPERATION_ORDER,
    VCS_SPECIFIC_OPERATIONS,
    ReparseOperation,
    ReparseTarget,
    VcsKind,
    WorkItem,
)

_log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = 'repotrack.workers'

VCS_WORKER_CLASSES: dict[tuple[VcsKind, ReparseOperation], str] = {
    (VcsKind.GIT, ReparseOperation.MESSAGE): 'git.commit_message_parser',
    (VcsKind.GIT, ReparseOperation.CHANGE): 'git.commit_change_parser',
    (VcsKind.MERCURIAL, ReparseOperation.MESSAGE): 'mercurial.commit_message_parser',
    (VcsKind.MERCURIAL, ReparseOperation.CHANGE): 'mercurial.commit_change_parser',
    (VcsKind.SVN, ReparseOperation.MESSAGE): 'svn.commit_message_parser',
    (VcsKind.SVN, ReparseOperation.CHANGE): 'svn.commit_change_parser',
}

COMMON_WORKER_CLASSES: dict[ReparseOperation, str] = {
    ReparseOperation.HERALD: 'commit.herald',
    ReparseOperation.OWNERS: 'commit.owners',
}


class Worker(Protocol):
    def do_work(self) -> None:
        ...


WorkerFactory = Callable[[dict], Worker]


class UnknownWorkerError(KeyError):
    def __init__(self, worker_class: str):
        super().__init__(worker_class)
        self.worker_class = worker_class

    def __str__(self) -> str:
        return f'no executor registered for {self.worker_class}'


def worker_class_for(
    vcs: VcsKind,
    operation: ReparseOperation,
    *,
    vcs_workers: dict[tuple[VcsKind, ReparseOperation], str] | None = None,
    common_workers: dict[ReparseOperation, str] | None = None,
) -> str | None:
    if operation in VCS_SPECIFIC_OPERATIONS:
        table = VCS_WORKER_CLASSES if vcs_workers is None else vcs_workers
        return table.get((vcs, operation))
    table = COMMON_WORKER_CLASSES if common_workers is None else common_workers
    return table.get(operation)


def plan_work_items(
    target: ReparseTarget,
    operations: Iterable[ReparseOperation],
    *,
    vcs_workers: dict[tuple[VcsKind, ReparseOperation], str] | None = None,
    common_workers: dict[ReparseOperation, str] | None = None,
) -> list[WorkItem]:
    """Build the ordered work items for one commit.

    VCS-specific operations come first, then the VCS-agnostic ones, each group
    in ``OPERATION_ORDER``. Operations without a worker for the repository's
    VCS are skipped.
    """
    requested = set(operations)
    items: list[WorkItem] = []
    for operation in OPERATION_ORDER:
        if operation not in requested:
            continue
        worker_class = worker_class_for(
            target.repository.vcs,
            operation,
            vcs_workers=vcs_workers,
            common_workers=common_workers,
        )
        if worker_class is None:
            _log.debug(
                'no worker for operation=%s vcs=%s; skipping',
                operation.value,
                target.repository.vcs.value,
            )
            continue
        items.append(WorkItem(target=target, operation=operation, worker_class=worker_class))
    return items


class WorkerRegistry:
    def __init__(self, factories: dict[str, WorkerFactory] | None = None):
        self._factories: dict[str, WorkerFactory] = dict(factories or {})

    def register(self, worker_class: str, factory: WorkerFactory) -> None:
        key = str(worker_class or '').strip()
        if not key:
            raise ValueError('worker_class cannot be empty')
        self._factories[key] = factory

    def is_registered(self, worker_class: str) -> bool:
        return worker_class in self._factories

    def registered(self) -> list[str]:
        return sorted(self._factories)

    def create(self, worker_class: str, payload: dict) -> Worker:
        if not self.is_registered(worker_class):
            raise UnknownWorkerError(worker_class)
        return self._factories[worker_class](dict(payload))

    @classmethod
    def from_entry_points(cls, group: str = ENTRY_POINT_GROUP) -> 'WorkerRegistry':
        registry = cls()
        for ep in entry_points(group=group):
            try:
                factory = ep.load()
            except Exception:
                _log.exception('failed to load worker entry point name=%s value=%s', ep.name, ep.value)
                continue
            registry.register(ep.name, factory)
        _log.debug('worker registry loaded group=%s workers=%s', group, ','.join(registry.registered()) or '-')
        return registry


__all__ = [
    'COMMON_WORKER_CLASSES',
    'ENTRY_POINT_GROUP',
    'UnknownWorkerError',
    'VCS_WORKER_CLASSES',
    'Worker',
    'WorkerRegistry',
    'plan_work_items',
    'worker_class_for',
]
