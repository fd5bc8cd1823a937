from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from awe_fleetsteer.controller.store import SignalRecord, TaskRecord
from awe_fleetsteer.domain.errors import IterationLimitReached
from awe_fleetsteer.service import ControllerService, InputValidationError, SignalRejectedError

_log = logging.getLogger(__name__)


class RepositoryRequest(BaseModel):
    url: str = Field(min_length=1)
    branch: str = Field(default='main', min_length=1, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    setup: list[str] = Field(default_factory=list)


class GroupRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    repositories: list[RepositoryRequest] = Field(min_length=1)


class VerifierRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    command: list[str] = Field(min_length=1)


class ExecutionRequest(BaseModel):
    kind: Literal['agentic', 'deterministic'] = 'agentic'
    instruction: str = Field(default='', max_length=100_000)
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    verifiers: list[VerifierRequest] = Field(default_factory=list)


class ForEachTargetRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    context: str = Field(default='', max_length=10_000)


class FailurePolicyRequest(BaseModel):
    threshold_percent: float = Field(ge=0, le=100)
    action: Literal['pause', 'abort'] = 'pause'


class PullRequestRequest(BaseModel):
    branch_prefix: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    body: str | None = None
    labels: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)


class CreateTaskRequest(BaseModel):
    task_id: str | None = Field(default=None, max_length=128)
    title: str = Field(min_length=1, max_length=255)
    mode: Literal['transform', 'report'] = 'transform'
    groups: list[GroupRequest] = Field(default_factory=list)
    targets: list[RepositoryRequest] = Field(default_factory=list)
    transformation: RepositoryRequest | None = None
    for_each: list[ForEachTargetRequest] = Field(default_factory=list)
    execution: ExecutionRequest
    timeout_seconds: int | None = Field(default=None, ge=1)
    require_approval: bool = False
    max_steering_iterations: int = Field(default=5, ge=0, le=100)
    max_parallel: int | None = Field(default=None, ge=1, le=1000)
    failure_policy: FailurePolicyRequest | None = None
    pull_request: PullRequestRequest | None = None
    report_schema: dict[str, Any] | None = None
    auto_start: bool = False


class SteerRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=100_000)


class ContinueRequest(BaseModel):
    skip_remaining: bool = False


class RetryRequest(BaseModel):
    auto_start: bool = True


class TaskResponse(BaseModel):
    task_id: str
    title: str
    mode: str
    status: str
    groups: list[str]
    paused: bool
    paused_reason: str | None
    cancel_requested: bool
    retry_of: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    completed_at: str | None


class ProgressResponse(BaseModel):
    task_id: str
    status: str
    total_groups: int
    completed_groups: int
    succeeded_groups: int
    failed_groups: int
    skipped_groups: int
    running_groups: int
    pending_groups: int
    failure_percent: float
    paused: bool
    paused_reason: str | None
    failed_group_names: list[str]


class SignalResponse(BaseModel):
    task_id: str
    seq: int
    group: str | None
    action: str
    created_at: str


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    group: str | None
    payload: dict
    created_at: str


@dataclass
class AppState:
    service: ControllerService


def _to_task_response(record: TaskRecord) -> TaskResponse:
    task = record.task
    return TaskResponse(
        task_id=task.task_id,
        title=task.title,
        mode=task.mode.value,
        status=record.status.value,
        groups=task.group_names,
        paused=record.paused,
        paused_reason=record.paused_reason,
        cancel_requested=record.cancel_requested,
        retry_of=task.retry_of,
        created_at=str(record.created_at),
        updated_at=str(record.updated_at),
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _to_signal_response(record: SignalRecord) -> SignalResponse:
    return SignalResponse(
        task_id=record.task_id,
        seq=record.seq,
        group=record.group,
        action=record.action,
        created_at=record.created_at,
    )


def create_app(*, service: ControllerService) -> FastAPI:
    app = FastAPI(title='awe-fleetsteer api', version='0.3.0')
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
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
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        status_code = 409 if isinstance(exc, SignalRejectedError) else 400
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(IterationLimitReached)
    async def handle_iteration_limit(request: Request, exc: IterationLimitReached):  # noqa: ARG001
        return JSONResponse(
            status_code=409,
            content=_error_payload(message=str(exc), field='prompt', code='iteration_limit'),
        )

    def get_service() -> ControllerService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def create_task(payload: CreateTaskRequest, service: ControllerService = Depends(get_service)) -> TaskResponse:
        data = payload.model_dump(exclude={'auto_start'})
        record = service.submit_task(data)
        if payload.auto_start:
            record = service.start_task(record.task_id)
        return _to_task_response(record)

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        limit: int = Query(default=100, ge=1, le=1000),
        service: ControllerService = Depends(get_service),
    ) -> list[TaskResponse]:
        return [_to_task_response(record) for record in service.list_tasks(limit=limit)]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: ControllerService = Depends(get_service)) -> TaskResponse:
        record = service.get_task(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(record)

    @app.post('/api/tasks/{task_id}/start', response_model=TaskResponse)
    def start_task(task_id: str, service: ControllerService = Depends(get_service)) -> TaskResponse:
        try:
            record = service.start_task(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(record)

    @app.get('/api/tasks/{task_id}/progress', response_model=ProgressResponse)
    def get_progress(task_id: str, service: ControllerService = Depends(get_service)) -> ProgressResponse:
        record = service.get_task(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail='task not found')
        progress = service.get_progress(task_id)
        return ProgressResponse(task_id=task_id, status=record.status.value, **progress.to_dict())

    @app.get('/api/tasks/{task_id}/groups/{group}/diff')
    def get_diff(task_id: str, group: str, service: ControllerService = Depends(get_service)) -> dict:
        try:
            return service.get_diff(task_id, group)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.get('/api/tasks/{task_id}/groups/{group}/steering')
    def get_steering(task_id: str, group: str, service: ControllerService = Depends(get_service)) -> dict:
        try:
            return service.get_steering(task_id, group)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.post('/api/tasks/{task_id}/groups/{group}/approve', response_model=SignalResponse, status_code=202)
    def approve(task_id: str, group: str, service: ControllerService = Depends(get_service)) -> SignalResponse:
        try:
            return _to_signal_response(service.approve(task_id, group))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.post('/api/tasks/{task_id}/groups/{group}/reject', response_model=SignalResponse, status_code=202)
    def reject(task_id: str, group: str, service: ControllerService = Depends(get_service)) -> SignalResponse:
        try:
            return _to_signal_response(service.reject(task_id, group))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.post('/api/tasks/{task_id}/groups/{group}/cancel', response_model=SignalResponse, status_code=202)
    def cancel_group(task_id: str, group: str, service: ControllerService = Depends(get_service)) -> SignalResponse:
        try:
            return _to_signal_response(service.cancel_group(task_id, group))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.post('/api/tasks/{task_id}/groups/{group}/steer', response_model=SignalResponse, status_code=202)
    def steer(
        task_id: str,
        group: str,
        payload: SteerRequest,
        service: ControllerService = Depends(get_service),
    ) -> SignalResponse:
        try:
            return _to_signal_response(service.steer(task_id, group, payload.prompt))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task or group not found') from exc

    @app.post('/api/tasks/{task_id}/continue', response_model=SignalResponse, status_code=202)
    def continue_task(
        task_id: str,
        payload: ContinueRequest,
        service: ControllerService = Depends(get_service),
    ) -> SignalResponse:
        try:
            return _to_signal_response(service.continue_task(task_id, skip_remaining=payload.skip_remaining))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/cancel', response_model=SignalResponse, status_code=202)
    def cancel_task(task_id: str, service: ControllerService = Depends(get_service)) -> SignalResponse:
        try:
            return _to_signal_response(service.cancel_task(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/retry', response_model=TaskResponse, status_code=201)
    def retry_failed_groups(
        task_id: str,
        payload: RetryRequest,
        service: ControllerService = Depends(get_service),
    ) -> TaskResponse:
        try:
            record = service.retry_failed_groups(task_id, start=payload.auto_start)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(record)

    @app.get('/api/tasks/{task_id}/result')
    def get_result(task_id: str, service: ControllerService = Depends(get_service)) -> dict:
        try:
            result = service.get_result(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        if result is None:
            raise HTTPException(status_code=404, detail='result not available yet')
        return result.to_dict()

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(task_id: str, service: ControllerService = Depends(get_service)) -> list[EventResponse]:
        try:
            rows = service.list_events(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                group=row.get('group'),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    return app
