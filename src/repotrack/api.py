from __future__ import annotations

from ipaddress import ip_address
import logging
import os
from typing import Literal

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from repotrack.domain.errors import ReparseError
from repotrack.domain.models import normalize_operations
from repotrack.guard import (
    RequestContext,
    RequestIntegrityError,
    RequestOverseer,
    is_form_content_type,
    parse_byte_size,
    parse_content_length,
)
from repotrack.repository import InMemoryRepositoryCatalog, InMemoryWorkerTaskQueue
from repotrack.service import ReparseRequest, ReparseService, parse_min_date
from repotrack.workers import WorkerRegistry

_log = logging.getLogger(__name__)


class ReparseRequestBody(BaseModel):
    commits: list[str] = Field(default_factory=list)
    repository: str | None = Field(default=None, max_length=128)
    min_date: str | None = Field(default=None, max_length=64)
    operations: list[Literal['message', 'change', 'herald', 'owners']] = Field(default_factory=list)
    confirm_destructive: bool = Field(default=False)
    force: bool = Field(default=False)
    force_local: bool = Field(default=False)


class WorkItemResponse(BaseModel):
    commit: str
    commit_id: int
    operation: str
    worker_class: str
    status: str
    reason: str | None
    task_id: int | None


class ReparseReportResponse(BaseModel):
    mode: str
    commit_count: int
    queued: int
    succeeded: int
    failed: int
    items: list[WorkItemResponse]


class QueueTaskResponse(BaseModel):
    id: int
    task_class: str
    data: dict
    created_at: str


class ValidationErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


class AppState:
    def __init__(self, service: ReparseService):
        self.service = service


def create_app(
    *,
    service: ReparseService | None = None,
    registry: WorkerRegistry | None = None,
    post_max_size: str | None = None,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-repotrack-api-token',
) -> FastAPI:
    if service is None:
        service = ReparseService(
            catalog=InMemoryRepositoryCatalog(),
            queue=InMemoryWorkerTaskQueue(),
            registry=registry,
        )

    app = FastAPI(title='repotrack api', version='0.3.0')
    app.state.container = AppState(service=service)

    resolved_post_max_size = str(post_max_size or os.getenv('REPOTRACK_POST_MAX_SIZE', '8M') or '8M').strip()
    post_max_bytes = parse_byte_size(resolved_post_max_size)
    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('REPOTRACK_API_ALLOW_REMOTE', '')).strip().lower() in {'1', 'true', 'yes', 'on'}
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('REPOTRACK_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(
        os.getenv('REPOTRACK_API_TOKEN_HEADER', api_access_token_header) or api_access_token_header
    ).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue

            text = str(part)
            if field:
                field += f'.{text}'
            else:
                field = text

        return field or None

    def _validation_error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(message=message, field=field),
        )

    @app.exception_handler(ReparseError)
    async def handle_reparse_error(request: Request, exc: ReparseError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_validation_error_payload(
                message=str(exc),
                field=exc.field,
                code=exc.code,
            ),
        )

    def get_service() -> ReparseService:
        return app.state.container.service

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    async def _form_fields_present(request: Request) -> bool:
        # Oversized form bodies are never decoded, and never read when the declared length says so.
        if post_max_bytes and parse_content_length(request.headers.get('content-length')) > post_max_bytes:
            return False
        body = await request.body()
        if post_max_bytes and len(body) > post_max_bytes:
            return False
        try:
            form = await request.form()
        except (StarletteHTTPException, MultiPartException):
            # Undecodable bodies are the route's problem, not a size limit.
            return True
        try:
            return len(form) > 0
        finally:
            await form.close()

    @app.middleware('http')
    async def oversee_request(request: Request, call_next):
        form_fields_present = False
        if request.method.upper() == 'POST' and is_form_content_type(request.headers.get('content-type')):
            form_fields_present = await _form_fields_present(request)
        overseer = RequestOverseer(
            RequestContext(
                method=request.method,
                headers=dict(request.headers),
                form_fields_present=form_fields_present,
            ),
            post_max_size=resolved_post_max_size,
        )
        try:
            overseer.did_startup()
        except RequestIntegrityError as exc:
            _log.error(
                'request body dropped path=%s content_length=%d post_max_size=%s',
                request.url.path,
                exc.content_length,
                exc.configured_limit,
            )
            return PlainTextResponse(overseer.fatal_message(exc), status_code=500)
        return await call_next(request)

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_validation_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_validation_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/reparse', response_model=ReparseReportResponse)
    def reparse(
        payload: ReparseRequestBody,
        service: ReparseService = Depends(get_service),
    ) -> ReparseReportResponse:
        report = service.dispatch(
            ReparseRequest(
                commits=tuple(payload.commits),
                repository=payload.repository,
                min_epoch=parse_min_date(payload.min_date),
                operations=normalize_operations(payload.operations),
                force=payload.force,
                force_local=payload.force_local,
                confirm_destructive=payload.confirm_destructive,
            )
        )
        return ReparseReportResponse(**report.to_dict())

    @app.get('/api/queue', response_model=list[QueueTaskResponse])
    def list_queue(
        service: ReparseService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[QueueTaskResponse]:
        return [QueueTaskResponse(**row) for row in service.list_queue(limit=limit)]

    return app
