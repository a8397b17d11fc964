from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import time
from typing import Iterator

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from repotrack.domain.models import CommitRecord, RepositoryRecord, VcsKind
from repotrack.repository import decode_task_data, encode_task_data, new_repository_phid


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class RepositoryEntity(Base):
    __tablename__ = 'repositories'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    phid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    callsign: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    vcs: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    commits: Mapped[list['CommitEntity']] = relationship('CommitEntity', back_populates='repository', cascade='all,delete-orphan')


class CommitEntity(Base):
    __tablename__ = 'repository_commits'
    __table_args__ = (
        UniqueConstraint('repository_id', 'commit_identifier', name='uq_repository_commits_repository_id_identifier'),
        Index('ix_repository_commits_repository_id_epoch', 'repository_id', 'epoch'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(Integer(), ForeignKey('repositories.id'), nullable=False, index=True)
    commit_identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    epoch: Mapped[int] = mapped_column(BigInteger(), nullable=False)

    repository: Mapped[RepositoryEntity] = relationship('RepositoryEntity', back_populates='commits')


class WorkerTaskEntity(Base):
    __tablename__ = 'worker_tasks'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_class: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    data_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # The web app and CLI may write to the same sqlite file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class _SqliteLockRetry:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))


class SqlRepositoryCatalog(_SqliteLockRetry):
    def create_repository(
        self,
        *,
        callsign: str,
        vcs: VcsKind | str,
        name: str | None = None,
        phid: str | None = None,
    ) -> RepositoryRecord:
        row = RepositoryEntity(
            phid=phid or new_repository_phid(),
            callsign=callsign,
            name=name or callsign,
            vcs=VcsKind(vcs).value,
            created_at=datetime.now(timezone.utc),
        )
        with self.db.session() as session:
            session.add(row)
            session.flush()
            return self._repository_to_record(row)

    def create_commit(self, repository_id: int, *, commit_identifier: str, epoch: int) -> CommitRecord:
        with self.db.session() as session:
            if session.get(RepositoryEntity, repository_id) is None:
                raise KeyError(repository_id)
            row = CommitEntity(
                repository_id=repository_id,
                commit_identifier=commit_identifier,
                epoch=int(epoch),
            )
            session.add(row)
            session.flush()
            return self._commit_to_record(row)

    def find_repository(self, identifier: str) -> RepositoryRecord | None:
        with self.db.session() as session:
            row = session.execute(
                select(RepositoryEntity)
                .where(or_(RepositoryEntity.callsign == identifier, RepositoryEntity.phid == identifier))
                .limit(1)
            ).scalars().first()
            if row is None:
                return None
            return self._repository_to_record(row)

    def get_repository_by_callsign(self, callsign: str) -> RepositoryRecord | None:
        with self.db.session() as session:
            row = session.execute(
                select(RepositoryEntity).where(RepositoryEntity.callsign == callsign)
            ).scalars().first()
            if row is None:
                return None
            return self._repository_to_record(row)

    def get_commit(self, repository_id: int, commit_identifier: str) -> CommitRecord | None:
        with self.db.session() as session:
            row = session.execute(
                select(CommitEntity).where(
                    CommitEntity.repository_id == repository_id,
                    CommitEntity.commit_identifier == commit_identifier,
                )
            ).scalars().first()
            if row is None:
                return None
            return self._commit_to_record(row)

    def list_commits(self, repository_id: int, *, min_epoch: int | None = None) -> list[CommitRecord]:
        stmt = select(CommitEntity).where(CommitEntity.repository_id == repository_id)
        if min_epoch is not None:
            stmt = stmt.where(CommitEntity.epoch > int(min_epoch))
        with self.db.session() as session:
            rows = session.execute(stmt.order_by(CommitEntity.id.asc())).scalars().all()
            return [self._commit_to_record(r) for r in rows]

    @staticmethod
    def _repository_to_record(row: RepositoryEntity) -> RepositoryRecord:
        return RepositoryRecord(
            id=row.id,
            phid=row.phid,
            callsign=row.callsign,
            name=row.name,
            vcs=VcsKind(row.vcs),
        )

    @staticmethod
    def _commit_to_record(row: CommitEntity) -> CommitRecord:
        return CommitRecord(
            id=row.id,
            repository_id=row.repository_id,
            commit_identifier=row.commit_identifier,
            epoch=int(row.epoch),
        )


class SqlWorkerTaskQueue(_SqliteLockRetry):
    def enqueue(self, *, task_class: str, data: dict) -> dict:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    row = WorkerTaskEntity(
                        task_class=task_class,
                        data_json=encode_task_data(data),
                        created_at=datetime.now(timezone.utc),
                    )
                    session.add(row)
                    session.flush()
                    return self._task_to_dict(row)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('enqueue_retry_exhausted')

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(WorkerTaskEntity).order_by(WorkerTaskEntity.id.asc()).limit(max(0, int(limit)))
            ).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    @staticmethod
    def _task_to_dict(row: WorkerTaskEntity) -> dict:
        return {
            'id': row.id,
            'task_class': row.task_class,
            'data': decode_task_data(row.data_json),
            'created_at': _iso_utc(row.created_at),
        }
