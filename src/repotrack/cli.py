from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap

import httpx

from repotrack.config import Settings, load_settings
from repotrack.db import Database, SqlRepositoryCatalog, SqlWorkerTaskQueue
from repotrack.domain.errors import ConfirmationRequiredError, ReparseError
from repotrack.domain.events import EventType
from repotrack.domain.models import OPERATION_ORDER, ReparseOperation, normalize_operations
from repotrack.observability import configure_observability
from repotrack.service import OWNERS_WARNING, ReparseRequest, ReparseService, parse_min_date
from repotrack.workers import WorkerRegistry

_OPERATION_HELP = {
    ReparseOperation.MESSAGE: 'Reparse commit messages.',
    ReparseOperation.CHANGE: 'Reparse changes.',
    ReparseOperation.HERALD: 'Reevaluate Herald rules (may send huge amounts of email!)',
    ReparseOperation.OWNERS: (
        'Reevaluate related commits for owners packages (may delete existing '
        'relationship entries between your package and some old commits!)'
    ),
}

_API_BASE_HELP = 'Submit to a running repotrack API instead of the local database'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='repotrack', description='Reparse commits and inspect the worker queue')
    parser.add_argument('--api-base', default=None, help=_API_BASE_HELP)
    # Also accepted after the subcommand; SUPPRESS keeps the top-level value when omitted there.
    remote = argparse.ArgumentParser(add_help=False)
    remote.add_argument('--api-base', default=argparse.SUPPRESS, help=_API_BASE_HELP)

    sub = parser.add_subparsers(dest='command', required=True)

    reparse = sub.add_parser(
        'reparse',
        parents=[remote],
        help='Rerun commit parsers on specific commits or repositories',
        description='Rerun the commit parsers on specific commits and repositories. '
        'Mostly useful for debugging changes to the parsers.',
    )
    reparse.add_argument('commits', nargs='*', metavar='COMMIT', help='Commit reference such as rXabcdef123')
    reparse.add_argument(
        '--all',
        dest='all_from_repo',
        default=None,
        metavar='CALLSIGN_OR_PHID',
        help='Reparse all commits in the repository. This queues tasks for the worker '
        'daemons; use --force-local to run them in this process instead.',
    )
    reparse.add_argument(
        '--min-date',
        default=None,
        metavar='DATE',
        help='With --all, only reparse commits newer than DATE (epoch or ISO-8601)',
    )
    for operation in OPERATION_ORDER:
        reparse.add_argument(f'--{operation.value}', action='store_true', help=_OPERATION_HELP[operation])
    reparse.add_argument('-f', '--force', action='store_true', help='Act noninteractively, without prompting.')
    reparse.add_argument(
        '--force-local',
        action='store_true',
        help='With --all, run the tasks locally instead of deferring them to worker daemons.',
    )

    queue = sub.add_parser('queue', parents=[remote], help='List queued worker tasks')
    queue.add_argument('--limit', type=int, default=20)

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _requested_operations(args: argparse.Namespace) -> list[str]:
    return [op.value for op in OPERATION_ORDER if getattr(args, op.value, False)]


def _console_confirm(message: str) -> bool:
    print(textwrap.fill(message, width=78))
    try:
        answer = input('Are you ready to continue? [y/N] ')
    except EOFError:
        return False
    return answer.strip().lower() in {'y', 'yes'}


def _print_event(event: dict) -> None:
    event_type = event.get('type')
    if event_type == EventType.DISPATCH_STARTED.value:
        if event.get('mode') == 'deferred':
            print(
                'NOTE: This command will queue tasks to reparse the data. Once the tasks '
                'have been queued, you need to run worker daemons to execute them.\n'
            )
            print(f"QUEUEING TASKS ({int(event.get('commit_count') or 0):,} Commits):")
    elif event_type == EventType.ITEM_QUEUED.value:
        print(f"  Queued '{event.get('worker_class')}' for commit '{event.get('commit')}'.")
    elif event_type == EventType.ITEM_STARTED.value:
        print(f"Running '{event.get('worker_class')}'...")
    elif event_type == EventType.ITEM_FAILED.value:
        print(f"  Failed '{event.get('worker_class')}' for commit '{event.get('commit')}': {event.get('reason')}")


def _main_local(args: argparse.Namespace, settings: Settings) -> int:
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=logging.WARNING,
    )
    db = Database(settings.database_url)
    db.create_schema()
    queue = SqlWorkerTaskQueue(db)

    if args.command == 'queue':
        _print_json(queue.list_tasks(limit=int(args.limit)))
        return 0

    service = ReparseService(
        catalog=SqlRepositoryCatalog(db),
        queue=queue,
        registry=WorkerRegistry.from_entry_points(),
        confirm=_console_confirm,
    )
    try:
        request = ReparseRequest(
            commits=tuple(args.commits),
            repository=args.all_from_repo,
            min_epoch=parse_min_date(args.min_date),
            operations=normalize_operations(_requested_operations(args)),
            force=bool(args.force),
            force_local=bool(args.force_local),
        )
        report = service.dispatch(request, on_event=_print_event)
    except ConfirmationRequiredError:
        print('Cancelled.')
        return 1
    except ReparseError as exc:
        print(f'Usage Exception: {exc}', file=sys.stderr)
        return 1

    print('\nDone.')
    if report.failed_count:
        print(
            f'{report.failed_count} of {len(report.results)} work items failed:',
            file=sys.stderr,
        )
        for result in report.failures:
            print(
                f'  {result.item.worker_class} {result.item.target.commit_name}: {result.reason}',
                file=sys.stderr,
            )
    return 0


def _main_remote(args: argparse.Namespace, base: str, *, timeout: int) -> int:
    payload: dict | None = None
    if args.command == 'reparse':
        operations = _requested_operations(args)
        confirm_destructive = bool(args.force)
        if ReparseOperation.OWNERS.value in operations and not confirm_destructive:
            if not _console_confirm(OWNERS_WARNING):
                print('Cancelled.')
                return 1
            confirm_destructive = True
        payload = {
            'commits': list(args.commits),
            'repository': args.all_from_repo,
            'min_date': args.min_date,
            'operations': operations,
            'confirm_destructive': confirm_destructive,
            'force': bool(args.force),
            'force_local': bool(args.force_local),
        }

    with httpx.Client(timeout=timeout) as client:
        if args.command == 'reparse':
            response = client.post(f'{base}/api/reparse', json=payload)
        else:
            response = client.get(f'{base}/api/queue', params={'limit': int(args.limit)})

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'reparse':
        if args.min_date and not args.all_from_repo:
            parser.error('--min-date can only be used with --all')
        if args.force_local and not args.all_from_repo:
            parser.error('--force-local can only be used with --all')
        if not args.commits and not args.all_from_repo:
            parser.error('specify a commit or repository to reparse')
        if not _requested_operations(args):
            parser.error('specify what information to reparse with --message, --change, --herald, and/or --owners')

    settings = load_settings()
    base = str(args.api_base or settings.api_base or '').strip().rstrip('/')
    if base:
        return _main_remote(args, base, timeout=settings.http_timeout_seconds)
    return _main_local(args, settings)


if __name__ == '__main__':
    raise SystemExit(main())
