from __future__ import annotations

from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()

    cleaned: list[str] = []
    seen: set[str] = set()

    def add(item: str) -> None:
        text = str(item or '').strip()
        if not text:
            return
        key = text.replace('\\', '/').lower()
        if key in seen:
            return
        seen.add(key)
        cleaned.append(text)

    add(src_text)
    for item in list(sys.path):
        text = str(item or '').strip()
        if not text:
            continue
        key = text.replace('\\', '/').lower()
        if key == normalized:
            continue
        add(text)
    sys.path[:] = cleaned


_prepend_repo_src_to_syspath()

from repotrack.repository import InMemoryRepositoryCatalog, InMemoryWorkerTaskQueue  # noqa: E402
from repotrack.workers import COMMON_WORKER_CLASSES, VCS_WORKER_CLASSES, WorkerRegistry  # noqa: E402


class RecordingWorker:
    def __init__(self, worker_class: str, payload: dict, calls: list, fail_for: set):
        self.worker_class = worker_class
        self.payload = payload
        self.calls = calls
        self.fail_for = fail_for

    def do_work(self) -> None:
        self.calls.append((self.worker_class, self.payload['commitID']))
        if (self.worker_class, self.payload['commitID']) in self.fail_for:
            raise RuntimeError(f'parser crashed on commit {self.payload["commitID"]}')


class RecordingRegistry(WorkerRegistry):
    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, int]] = []
        self.fail_for: set[tuple[str, int]] = set()
        for worker_class in [*VCS_WORKER_CLASSES.values(), *COMMON_WORKER_CLASSES.values()]:
            self.register(worker_class, self._factory(worker_class))

    def _factory(self, worker_class: str):
        def build(payload: dict) -> RecordingWorker:
            return RecordingWorker(worker_class, payload, self.calls, self.fail_for)

        return build


@pytest.fixture
def catalog() -> InMemoryRepositoryCatalog:
    catalog = InMemoryRepositoryCatalog()
    git = catalog.add_repository(callsign='GIT', vcs='git', phid='PHID-REPO-git0001')
    svn = catalog.add_repository(callsign='X', vcs='svn')
    catalog.add_repository(callsign='EMPTY', vcs='mercurial')
    catalog.add_commit(git.id, commit_identifier='deadbeef01', epoch=1_700_000_000)
    catalog.add_commit(git.id, commit_identifier='deadbeef02', epoch=1_700_000_100)
    catalog.add_commit(git.id, commit_identifier='deadbeef03', epoch=1_700_000_200)
    catalog.add_commit(svn.id, commit_identifier='123', epoch=1_600_000_000)
    return catalog


@pytest.fixture
def queue() -> InMemoryWorkerTaskQueue:
    return InMemoryWorkerTaskQueue()


@pytest.fixture
def registry() -> RecordingRegistry:
    return RecordingRegistry()
