from __future__ import annotations

import logging

from repotrack.api import create_app
from repotrack.config import load_settings
from repotrack.db import Database, SqlRepositoryCatalog, SqlWorkerTaskQueue
from repotrack.observability import configure_observability
from repotrack.repository import InMemoryRepositoryCatalog, InMemoryWorkerTaskQueue
from repotrack.service import ReparseService
from repotrack.workers import WorkerRegistry

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        catalog = SqlRepositoryCatalog(db)
        queue = SqlWorkerTaskQueue(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory stores')
        catalog = InMemoryRepositoryCatalog()
        queue = InMemoryWorkerTaskQueue()

    service = ReparseService(
        catalog=catalog,
        queue=queue,
        registry=WorkerRegistry.from_entry_points(),
    )
    return create_app(service=service, post_max_size=settings.post_max_size)


app = build_app()
