from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Protocol
from uuid import uuid4

from repotrack.domain.models import CommitRecord, RepositoryRecord, VcsKind


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_repository_phid() -> str:
    return f'PHID-REPO-{uuid4().hex[:20]}'


def encode_task_data(data: dict) -> str:
    return json.dumps(data, ensure_ascii=True, sort_keys=True)


def decode_task_data(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


class RepositoryCatalog(Protocol):
    def find_repository(self, identifier: str) -> RepositoryRecord | None:
        """Look up a repository by callsign or PHID."""
        ...

    def get_repository_by_callsign(self, callsign: str) -> RepositoryRecord | None:
        ...

    def get_commit(self, repository_id: int, commit_identifier: str) -> CommitRecord | None:
        ...

    def list_commits(self, repository_id: int, *, min_epoch: int | None = None) -> list[CommitRecord]:
        """Return commits ordered by id, optionally only those with ``epoch > min_epoch``."""
        ...


class WorkerTaskQueue(Protocol):
    def enqueue(self, *, task_class: str, data: dict) -> dict:
        ...

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        ...


class InMemoryRepositoryCatalog:
    def __init__(self):
        self.repositories: dict[int, RepositoryRecord] = {}
        self.commits: dict[int, CommitRecord] = {}
        self._next_repository_id = 1
        self._next_commit_id = 1

    def add_repository(
        self,
        *,
        callsign: str,
        vcs: VcsKind | str,
        name: str | None = None,
        phid: str | None = None,
    ) -> RepositoryRecord:
        record = RepositoryRecord(
            id=self._next_repository_id,
            phid=phid or new_repository_phid(),
            callsign=callsign,
            name=name or callsign,
            vcs=VcsKind(vcs),
        )
        self._next_repository_id += 1
        self.repositories[record.id] = record
        return record

    def add_commit(self, repository_id: int, *, commit_identifier: str, epoch: int) -> CommitRecord:
        if repository_id not in self.repositories:
            raise KeyError(repository_id)
        record = CommitRecord(
            id=self._next_commit_id,
            repository_id=repository_id,
            commit_identifier=commit_identifier,
            epoch=int(epoch),
        )
        self._next_commit_id += 1
        self.commits[record.id] = record
        return record

    def find_repository(self, identifier: str) -> RepositoryRecord | None:
        for record in self.repositories.values():
            if identifier in (record.callsign, record.phid):
                return record
        return None

    def get_repository_by_callsign(self, callsign: str) -> RepositoryRecord | None:
        for record in self.repositories.values():
            if record.callsign == callsign:
                return record
        return None

    def get_commit(self, repository_id: int, commit_identifier: str) -> CommitRecord | None:
        for record in self.commits.values():
            if record.repository_id == repository_id and record.commit_identifier == commit_identifier:
                return record
        return None

    def list_commits(self, repository_id: int, *, min_epoch: int | None = None) -> list[CommitRecord]:
        rows = [
            r for r in self.commits.values()
            if r.repository_id == repository_id and (min_epoch is None or r.epoch > min_epoch)
        ]
        return sorted(rows, key=lambda r: r.id)


class InMemoryWorkerTaskQueue:
    def __init__(self):
        self.items: list[dict] = []

    def enqueue(self, *, task_class: str, data: dict) -> dict:
        row = {
            'id': len(self.items) + 1,
            'task_class': task_class,
            'data': decode_task_data(encode_task_data(data)),
            'created_at': _utc_now_iso(),
        }
        self.items.append(row)
        return dict(row)

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        return [dict(r) for r in self.items[: max(0, int(limit))]]
