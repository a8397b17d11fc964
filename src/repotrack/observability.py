from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Any, Iterator

LOGGER_NAME = 'repotrack'

_repository_var: ContextVar[str | None] = ContextVar('repository', default=None)
_commit_var: ContextVar[str | None] = ContextVar('commit', default=None)


def set_reparse_context(repository: str | None = None, commit: str | None = None) -> None:
    """Tag subsequent log lines with the repository and commit being reparsed."""
    _repository_var.set(repository)
    _commit_var.set(commit)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``repository``/``commit`` only when known."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, var in (('repository', _repository_var), ('commit', _commit_var)):
            value = getattr(record, key, None) or var.get(None)
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_lock = Lock()
_handler_installed = False
_tracing_endpoint: str | None = None


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _install_json_handler(level: int) -> None:
    global _handler_installed
    with _lock:
        if _handler_installed:
            return
        logger = logging.getLogger(LOGGER_NAME)
        if not any(isinstance(getattr(h, 'formatter', None), _JsonFormatter) for h in logger.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(_JsonFormatter())
            logger.addHandler(handler)
        logger.setLevel(level)
        _handler_installed = True


def _install_tracing(service_name: str, endpoint: str) -> None:
    global _tracing_endpoint
    with _lock:
        if _tracing_endpoint == endpoint:
            return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logging.getLogger(f'{LOGGER_NAME}.observability').warning(
            'opentelemetry is not installed; tracing disabled (install repotrack[otel])',
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _lock:
        _tracing_endpoint = endpoint


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: int = logging.DEBUG) -> None:
    """Install the JSON log handler once and, given an endpoint, OTLP span export."""
    _install_json_handler(level)
    endpoint = str(otlp_endpoint or '').strip()
    if endpoint:
        _install_tracing(service_name, endpoint)


def get_tracer(name: str):
    """Return an OpenTelemetry tracer, or None when the API package is missing."""
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer(name)


@contextmanager
def traced_span(tracer, name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Open ``name`` as the current span; yields None when tracing is unavailable."""
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
