from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from repotrack.db import Database, SqlRepositoryCatalog, SqlWorkerTaskQueue
from repotrack.domain.errors import NoCommitsFoundError
from repotrack.domain.models import ReparseOperation, VcsKind
from repotrack.service import ReparseRequest, ReparseService


def _db(tmp_path: Path) -> Database:
    db_file = tmp_path / 'repotrack.sqlite3'
    db = Database(f'sqlite+pysqlite:///{db_file.as_posix()}')
    db.create_schema()
    return db


def test_database_schema_creates_expected_indexes(tmp_path: Path):
    db = _db(tmp_path)
    with db.engine.connect() as conn:
        rows = conn.execute(text("SELECT name FROM sqlite_master WHERE type='index'")).fetchall()
    names = {str(row[0]) for row in rows}
    assert 'ix_repository_commits_repository_id_epoch' in names
    assert 'ix_worker_tasks_task_class' in names


def test_catalog_looks_up_repository_by_callsign_or_phid(tmp_path: Path):
    catalog = SqlRepositoryCatalog(_db(tmp_path))
    created = catalog.create_repository(callsign='GIT', vcs='git', phid='PHID-REPO-abc')

    assert created.vcs == VcsKind.GIT
    assert catalog.find_repository('GIT') == created
    assert catalog.find_repository('PHID-REPO-abc') == created
    assert catalog.find_repository('NOPE') is None
    assert catalog.get_repository_by_callsign('GIT') == created
    assert catalog.get_repository_by_callsign('PHID-REPO-abc') is None


def test_catalog_commits_are_unique_per_repository(tmp_path: Path):
    catalog = SqlRepositoryCatalog(_db(tmp_path))
    repo = catalog.create_repository(callsign='GIT', vcs='git')
    catalog.create_commit(repo.id, commit_identifier='abc', epoch=1)
    with pytest.raises(IntegrityError):
        catalog.create_commit(repo.id, commit_identifier='abc', epoch=2)
    with pytest.raises(KeyError):
        catalog.create_commit(999, commit_identifier='abc', epoch=2)


def test_catalog_lists_commits_in_id_order_with_min_epoch(tmp_path: Path):
    catalog = SqlRepositoryCatalog(_db(tmp_path))
    repo = catalog.create_repository(callsign='HG', vcs='mercurial')
    other = catalog.create_repository(callsign='SVN', vcs='svn')
    a = catalog.create_commit(repo.id, commit_identifier='aaa', epoch=300)
    b = catalog.create_commit(repo.id, commit_identifier='bbb', epoch=100)
    c = catalog.create_commit(repo.id, commit_identifier='ccc', epoch=200)
    catalog.create_commit(other.id, commit_identifier='1', epoch=500)

    assert catalog.list_commits(repo.id) == [a, b, c]
    assert catalog.list_commits(repo.id, min_epoch=100) == [a, c]
    assert catalog.list_commits(repo.id, min_epoch=300) == []
    assert catalog.get_commit(repo.id, 'bbb') == b
    assert catalog.get_commit(other.id, 'bbb') is None


def test_queue_round_trips_task_data_with_timezone(tmp_path: Path):
    queue = SqlWorkerTaskQueue(_db(tmp_path))
    first = queue.enqueue(task_class='commit.herald', data={'commitID': 5, 'only': True})
    second = queue.enqueue(task_class='commit.owners', data={'commitID': 5, 'only': True})

    rows = queue.list_tasks()
    assert [r['id'] for r in rows] == [first['id'], second['id']]
    assert rows[0]['task_class'] == 'commit.herald'
    assert rows[0]['data'] == {'commitID': 5, 'only': True}
    ts = rows[0]['created_at']
    assert ('+' in ts) or ts.endswith('Z')
    assert len(queue.list_tasks(limit=1)) == 1


def test_service_over_sql_stores_queues_repository_commits(tmp_path: Path):
    db = _db(tmp_path)
    catalog = SqlRepositoryCatalog(db)
    queue = SqlWorkerTaskQueue(db)
    repo = catalog.create_repository(callsign='SVN', vcs='svn', phid='PHID-REPO-svn')
    catalog.create_commit(repo.id, commit_identifier='10', epoch=1_000)
    catalog.create_commit(repo.id, commit_identifier='11', epoch=2_000)
    service = ReparseService(catalog=catalog, queue=queue)

    report = service.dispatch(
        ReparseRequest(
            repository='PHID-REPO-svn',
            operations=frozenset({ReparseOperation.CHANGE, ReparseOperation.MESSAGE}),
        )
    )

    assert report.queued_count == 4
    assert [(r['task_class'], r['data']['commitID']) for r in queue.list_tasks()] == [
        ('svn.commit_message_parser', 1),
        ('svn.commit_change_parser', 1),
        ('svn.commit_message_parser', 2),
        ('svn.commit_change_parser', 2),
    ]

    with pytest.raises(NoCommitsFoundError):
        service.dispatch(
            ReparseRequest(repository='SVN', min_epoch=2_000, operations=frozenset({ReparseOperation.HERALD}))
        )
    assert len(queue.list_tasks()) == 4
