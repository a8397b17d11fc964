from __future__ import annotations

from repotrack.config import load_settings


def test_load_settings_defaults(monkeypatch):
    for name in (
        'REPOTRACK_DATABASE_URL',
        'REPOTRACK_SERVICE_NAME',
        'REPOTRACK_OTEL_EXPORTER_OTLP_ENDPOINT',
        'REPOTRACK_POST_MAX_SIZE',
        'REPOTRACK_HTTP_TIMEOUT_SECONDS',
        'REPOTRACK_API_BASE',
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.database_url == 'sqlite+pysqlite:///repotrack.sqlite3'
    assert settings.service_name == 'repotrack'
    assert settings.otel_endpoint is None
    assert settings.post_max_size == '8M'
    assert settings.http_timeout_seconds == 60
    assert settings.api_base is None


def test_load_settings_allows_overrides(monkeypatch):
    monkeypatch.setenv('REPOTRACK_DATABASE_URL', 'postgresql+psycopg://u:p@localhost/repotrack')
    monkeypatch.setenv('REPOTRACK_POST_MAX_SIZE', ' 2M ')
    monkeypatch.setenv('REPOTRACK_HTTP_TIMEOUT_SECONDS', '15')
    monkeypatch.setenv('REPOTRACK_API_BASE', 'http://127.0.0.1:8000')
    settings = load_settings()
    assert settings.database_url.startswith('postgresql+psycopg://')
    assert settings.post_max_size == '2M'
    assert settings.http_timeout_seconds == 15
    assert settings.api_base == 'http://127.0.0.1:8000'


def test_load_settings_invalid_timeout_falls_back(monkeypatch):
    monkeypatch.setenv('REPOTRACK_HTTP_TIMEOUT_SECONDS', 'soon')
    assert load_settings().http_timeout_seconds == 60
    monkeypatch.setenv('REPOTRACK_HTTP_TIMEOUT_SECONDS', '-3')
    assert load_settings().http_timeout_seconds == 1


def test_load_settings_blank_api_base_is_none(monkeypatch):
    monkeypatch.setenv('REPOTRACK_API_BASE', '   ')
    assert load_settings().api_base is None
