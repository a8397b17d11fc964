from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from repotrack.domain.errors import (
    ConfirmationRequiredError,
    ConflictingTargetError,
    MinDateRequiresRepositoryError,
    MissingTargetError,
    NoCommitsFoundError,
    NoOperationsRequestedError,
    ReparseError,
    UnknownCommitError,
    UnknownRepositoryError,
)
from repotrack.domain.events import EventType, normalize_event_type
from repotrack.domain.models import (
    AllInRepository,
    ExecutionMode,
    ExplicitCommits,
    OutcomeStatus,
    ReparseOperation,
    ReparseReport,
    ReparseTarget,
    WorkItem,
    WorkItemResult,
    normalize_operations,
    parse_commit_reference,
)
from repotrack.observability import get_logger, get_tracer, set_reparse_context, traced_span
from repotrack.repository import RepositoryCatalog, WorkerTaskQueue
from repotrack.workers import WorkerRegistry, plan_work_items

_log = get_logger('repotrack.service')

OWNERS_WARNING = (
    'You are about to recreate the relationship entries between the commits '
    'and the packages they touch. This might delete some existing '
    'relationship entries for some old commits.'
)


@dataclass(frozen=True)
class ReparseRequest:
    commits: tuple[str, ...] = ()
    repository: str | None = None
    min_epoch: int | None = None
    operations: frozenset[ReparseOperation] = field(default_factory=frozenset)
    force: bool = False
    force_local: bool = False
    confirm_destructive: bool = False


def parse_min_date(value: str | int | None) -> int | None:
    """Accept an epoch integer or an ISO-8601 date/datetime; naive values use local time."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip('-').isdigit():
        return int(text)
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError as exc:
        raise ReparseError(f'invalid date: {text}', field='min_date', code='invalid_min_date') from exc
    return int(parsed.timestamp())


def build_selector(request: ReparseRequest) -> ExplicitCommits | AllInRepository:
    commits = [str(c or '').strip() for c in request.commits if str(c or '').strip()]
    repository = str(request.repository or '').strip() or None
    if not commits and repository is None:
        raise MissingTargetError()
    if commits and repository is not None:
        raise ConflictingTargetError()
    if repository is not None:
        return AllInRepository(repository=repository, min_epoch=request.min_epoch)
    if request.min_epoch is not None:
        raise MinDateRequiresRepositoryError()
    return ExplicitCommits(references=tuple(parse_commit_reference(c) for c in commits))


def resolve_execution_mode(selector: ExplicitCommits | AllInRepository, *, force_local: bool) -> ExecutionMode:
    if isinstance(selector, ExplicitCommits):
        return ExecutionMode.IMMEDIATE
    return ExecutionMode.IMMEDIATE if force_local else ExecutionMode.DEFERRED


class ReparseService:
    def __init__(
        self,
        *,
        catalog: RepositoryCatalog,
        queue: WorkerTaskQueue,
        registry: WorkerRegistry | None = None,
        confirm: Callable[[str], bool] | None = None,
        tracer=None,
    ):
        self.catalog = catalog
        self.queue = queue
        self.registry = registry or WorkerRegistry()
        self.confirm = confirm
        self.tracer = tracer if tracer is not None else get_tracer('repotrack.service')

    def dispatch(
        self,
        request: ReparseRequest,
        *,
        on_event: Callable[[dict], None] | None = None,
    ) -> ReparseReport:
        selector = build_selector(request)
        operations = normalize_operations(request.operations)
        if not operations:
            raise NoOperationsRequestedError()
        if ReparseOperation.OWNERS in operations:
            self._require_owners_confirmation(request)

        targets = self.resolve_targets(selector)
        mode = resolve_execution_mode(selector, force_local=request.force_local)
        items: list[WorkItem] = []
        for target in targets:
            items.extend(plan_work_items(target, operations))

        report = ReparseReport(mode=mode, commit_count=len(targets))
        _log.info(
            'reparse dispatch mode=%s commits=%d items=%d operations=%s',
            mode.value,
            len(targets),
            len(items),
            ','.join(sorted(op.value for op in operations)),
        )
        self._emit(on_event, EventType.DISPATCH_STARTED, mode=mode.value, commit_count=len(targets), item_count=len(items))

        dispatch_attributes = {
            'reparse.mode': mode.value,
            'reparse.commit_count': len(targets),
            'reparse.item_count': len(items),
        }
        with traced_span(self.tracer, 'reparse.dispatch', dispatch_attributes) as dispatch_span:
            try:
                for item in items:
                    set_reparse_context(repository=item.target.repository.callsign, commit=item.target.commit_name)
                    result = self._process(item, mode=mode, on_event=on_event)
                    report.results.append(result)
                    self._emit(on_event, self._event_for(result), **result.to_dict())
            finally:
                set_reparse_context(repository=None, commit=None)
            if dispatch_span is not None:
                dispatch_span.set_attribute('reparse.failed', report.failed_count)

        self._emit(
            on_event,
            EventType.DISPATCH_COMPLETED,
            mode=mode.value,
            queued=report.queued_count,
            succeeded=report.succeeded_count,
            failed=report.failed_count,
        )
        if report.failed_count:
            _log.warning('reparse finished with failures failed=%d total=%d', report.failed_count, len(report.results))
        return report

    def resolve_targets(self, selector: ExplicitCommits | AllInRepository) -> list[ReparseTarget]:
        if isinstance(selector, AllInRepository):
            repository = self.catalog.find_repository(selector.repository)
            if repository is None:
                raise UnknownRepositoryError(selector.repository)
            commits = self.catalog.list_commits(repository.id, min_epoch=selector.min_epoch)
            if not commits:
                raise NoCommitsFoundError(selector.repository)
            return [ReparseTarget(repository=repository, commit=c) for c in commits]

        targets: list[ReparseTarget] = []
        for reference in selector.references:
            repository = self.catalog.get_repository_by_callsign(reference.callsign)
            if repository is None:
                raise UnknownRepositoryError(reference.callsign)
            commit = self.catalog.get_commit(repository.id, reference.commit_identifier)
            if commit is None:
                raise UnknownCommitError(reference.callsign, reference.commit_identifier)
            targets.append(ReparseTarget(repository=repository, commit=commit))
        if not targets:
            raise MissingTargetError()
        return targets

    def list_queue(self, *, limit: int = 100) -> list[dict]:
        return self.queue.list_tasks(limit=limit)

    def _require_owners_confirmation(self, request: ReparseRequest) -> None:
        if request.force or request.confirm_destructive:
            return
        if self.confirm is not None and self.confirm(OWNERS_WARNING):
            return
        raise ConfirmationRequiredError()

    def _process(
        self,
        item: WorkItem,
        *,
        mode: ExecutionMode,
        on_event: Callable[[dict], None] | None,
    ) -> WorkItemResult:
        attributes = {
            'reparse.repository': item.target.repository.callsign,
            'reparse.commit': item.target.commit_name,
            'reparse.operation': item.operation.value,
            'reparse.worker_class': item.worker_class,
        }
        with traced_span(self.tracer, 'reparse.item', attributes) as span:
            if mode == ExecutionMode.DEFERRED:
                result = self._enqueue(item)
            else:
                result = self._run(item, on_event=on_event)
            if span is not None:
                span.set_attribute('reparse.outcome', result.status.value)
                if result.reason:
                    span.set_attribute('reparse.reason', result.reason)
        return result

    def _enqueue(self, item: WorkItem) -> WorkItemResult:
        row = self.queue.enqueue(task_class=item.worker_class, data=item.payload)
        _log.info('queued worker=%s commit=%s task_id=%s', item.worker_class, item.target.commit_name, row.get('id'))
        return WorkItemResult(item=item, status=OutcomeStatus.QUEUED, task_id=row.get('id'))

    def _run(self, item: WorkItem, *, on_event: Callable[[dict], None] | None) -> WorkItemResult:
        self._emit(
            on_event,
            EventType.ITEM_STARTED,
            commit=item.target.commit_name,
            operation=item.operation.value,
            worker_class=item.worker_class,
        )
        try:
            worker = self.registry.create(item.worker_class, item.payload)
            worker.do_work()
        except Exception as exc:
            reason = str(exc).strip() or exc.__class__.__name__
            _log.exception('worker failed worker=%s commit=%s reason=%s', item.worker_class, item.target.commit_name, reason)
            return WorkItemResult(item=item, status=OutcomeStatus.FAILED, reason=reason)
        return WorkItemResult(item=item, status=OutcomeStatus.SUCCEEDED)

    @staticmethod
    def _event_for(result: WorkItemResult) -> EventType:
        if result.status == OutcomeStatus.QUEUED:
            return EventType.ITEM_QUEUED
        if result.status == OutcomeStatus.SUCCEEDED:
            return EventType.ITEM_SUCCEEDED
        return EventType.ITEM_FAILED

    @staticmethod
    def _emit(on_event: Callable[[dict], None] | None, event_type: EventType, **fields) -> None:
        if on_event is None:
            return
        on_event({'type': normalize_event_type(event_type), **fields})
