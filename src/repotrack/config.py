from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    post_max_size: str
    http_timeout_seconds: int
    api_base: str | None


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def load_settings() -> Settings:
    database_url = os.getenv('REPOTRACK_DATABASE_URL', 'sqlite+pysqlite:///repotrack.sqlite3')
    service_name = os.getenv('REPOTRACK_SERVICE_NAME', 'repotrack')
    otel_endpoint = os.getenv('REPOTRACK_OTEL_EXPORTER_OTLP_ENDPOINT')
    post_max_size = str(os.getenv('REPOTRACK_POST_MAX_SIZE', '8M') or '8M').strip()
    http_timeout_seconds = _env_int('REPOTRACK_HTTP_TIMEOUT_SECONDS', 60, minimum=1)
    api_base = str(os.getenv('REPOTRACK_API_BASE', '') or '').strip() or None
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        post_max_size=post_max_size,
        http_timeout_seconds=http_timeout_seconds,
        api_base=api_base,
    )
