from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from awe_fleetsteer.controller.store import GroupStage, InMemoryTaskStateStore
from awe_fleetsteer.domain.errors import IterationLimitReached
from awe_fleetsteer.domain.models import (
    GroupOutcome,
    GroupStatus,
    SteeringIteration,
    TaskResult,
    TaskStatus,
)
from awe_fleetsteer.protocol.messages import AgentResult, Phase, RepoResult
from awe_fleetsteer.service import ControllerService, InputValidationError, SignalRejectedError

from fleet_fakes import ThreadSandboxProvider, fast_settings, make_task


def _service(tmp_path: Path) -> ControllerService:
    return ControllerService(
        store=InMemoryTaskStateStore(),
        provider=ThreadSandboxProvider(tmp_path, start_agent=False),
        settings=fast_settings(default_max_parallel=4, default_timeout_seconds=900),
    )


def _payload(**overrides) -> dict:
    data = {
        'title': 'Bump the base image',
        'groups': [{'name': 'payments', 'repositories': [{'url': 'https://github.com/org/payments.git'}]}],
        'execution': {'kind': 'agentic', 'instruction': 'Use python:3.12-slim everywhere.'},
    }
    data.update(overrides)
    return data


def _mark_awaiting(service: ControllerService, task_id='task-1', group='g1', *, iteration=0, max_iterations=5):
    service.store.update_task(task_id, status=TaskStatus.RUNNING)
    state = service.store.get_group(task_id, group)
    steering = replace(state.steering, max_iterations=max_iterations)
    for number in range(1, iteration + 1):
        steering = steering.record(SteeringIteration(iteration=number, prompt=f'round {number}', issued_at='t'))
    return service.store.save_group(
        replace(state, status=GroupStatus.RUNNING, stage=GroupStage.STEERING, steering=steering)
    )


def _finish(service: ControllerService, task_id='task-1', *, failed=('g2',)):
    record = service.get_task(task_id)
    outcomes = tuple(
        GroupOutcome(
            group=name,
            status=(GroupStatus.FAILED if name in failed else GroupStatus.SUCCEEDED),
        )
        for name in record.task.group_names
    )
    status = TaskStatus.PARTIAL if failed else TaskStatus.COMPLETED
    result = TaskResult(task_id=task_id, status=status, mode=record.task.mode, groups=outcomes)
    service.store.update_task(task_id, status=status, result=result)
    return result


def test_submit_applies_defaults_and_records_event(tmp_path: Path):
    service = _service(tmp_path)
    record = service.submit_task(_payload())

    assert record.task_id.startswith('task-')
    assert record.status == TaskStatus.PENDING
    assert record.task.max_parallel == 4
    assert record.task.timeout_seconds == 900
    assert record.task.groups[0].repositories[0].name == 'payments'
    events = service.list_events(record.task_id)
    assert events[0]['type'] == 'task_submitted'
    assert events[0]['payload']['groups'] == ['payments']


def test_submit_rejects_invalid_definitions(tmp_path: Path):
    service = _service(tmp_path)
    with pytest.raises(InputValidationError) as excinfo:
        service.submit_task(_payload(groups=[]))
    assert excinfo.value.field == 'task'
    assert 'at least one group is required' in excinfo.value.message

    with pytest.raises(InputValidationError, match='agentic execution requires an instruction'):
        service.submit_task(_payload(execution={'kind': 'agentic'}))

    with pytest.raises(InputValidationError, match='invalid task definition'):
        service.submit_task(_payload(mode='audit'))


def test_submit_rejects_duplicate_task_id(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(_payload(task_id='nightly'))
    with pytest.raises(InputValidationError) as excinfo:
        service.submit_task(_payload(task_id='nightly'))
    assert excinfo.value.code == 'duplicate_task'
    assert not isinstance(excinfo.value, SignalRejectedError)


def test_approve_requires_group_awaiting_input(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(require_approval=True))
    with pytest.raises(SignalRejectedError) as excinfo:
        service.approve('task-1', 'g1')
    assert excinfo.value.code == 'not_awaiting_input'

    _mark_awaiting(service)
    signal = service.approve('task-1')
    assert (signal.seq, signal.group, signal.action) == (1, 'g1', 'approve')
    assert service.list_events('task-1')[-1]['type'] == 'signal_received'


def test_group_resolution(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(groups=2))
    with pytest.raises(InputValidationError) as excinfo:
        service.cancel_group('task-1')
    assert excinfo.value.field == 'group'
    with pytest.raises(KeyError):
        service.cancel_group('task-1', 'g9')
    with pytest.raises(KeyError):
        service.approve('missing', 'g1')
    assert service.cancel_group('task-1', 'g2').action == 'cancel'


def test_steer_validates_prompt_and_projects_iteration_limit(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(require_approval=True))
    _mark_awaiting(service, iteration=1, max_iterations=2)

    with pytest.raises(InputValidationError, match='prompt is required'):
        service.steer('task-1', 'g1', '   ')

    first = service.steer('task-1', 'g1', 'add a changelog entry')
    assert first.action == 'steer'
    # The queued steer already claims the last iteration.
    with pytest.raises(IterationLimitReached) as excinfo:
        service.steer('task-1', 'g1', 'and update the docs')
    assert (excinfo.value.iteration, excinfo.value.limit) == (2, 2)
    rejected = service.list_events('task-1')[-1]
    assert rejected['type'] == 'steering_rejected'
    assert rejected['payload']['reason'] == 'iteration_limit'


def test_steer_at_limit_is_rejected_immediately(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(require_approval=True))
    _mark_awaiting(service, iteration=2, max_iterations=2)
    with pytest.raises(IterationLimitReached):
        service.steer('task-1', 'g1', 'one more pass')
    assert service.store.signals_after('task-1', 0) == []


def test_continue_requires_paused_task(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task())
    with pytest.raises(SignalRejectedError) as excinfo:
        service.continue_task('task-1')
    assert excinfo.value.code == 'not_paused'

    service.store.update_task('task-1', status=TaskStatus.PAUSED, paused=True, paused_reason='too many failures')
    signal = service.continue_task('task-1', skip_remaining=True)
    assert signal.group is None
    assert signal.payload == {'skip_remaining': True}


def test_finished_task_rejects_signals(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(groups=2))
    _finish(service)
    for call in (
        lambda: service.cancel_task('task-1'),
        lambda: service.cancel_group('task-1', 'g1'),
        lambda: service.approve('task-1', 'g1'),
    ):
        with pytest.raises(SignalRejectedError) as excinfo:
            call()
        assert excinfo.value.code == 'task_not_active'


def test_cancel_group_rejects_finished_group(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(groups=2))
    state = service.store.get_group('task-1', 'g1')
    service.store.save_group(replace(state, status=GroupStatus.SUCCEEDED, stage=GroupStage.DONE))
    with pytest.raises(SignalRejectedError) as excinfo:
        service.cancel_group('task-1', 'g1')
    assert excinfo.value.code == 'group_finished'


def test_retry_creates_task_for_failed_groups(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(groups=3))
    with pytest.raises(SignalRejectedError) as excinfo:
        service.retry_failed_groups('task-1', start=False)
    assert excinfo.value.code == 'task_not_finished'

    _finish(service, failed=('g2', 'g3'))
    retry = service.retry_failed_groups('task-1', start=False)
    assert retry.task_id != 'task-1'
    assert retry.task.retry_of == 'task-1'
    assert retry.task.group_names == ['g2', 'g3']
    assert retry.status == TaskStatus.PENDING


def test_retry_without_failures_is_rejected(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task())
    _finish(service, failed=())
    with pytest.raises(InputValidationError) as excinfo:
        service.retry_failed_groups('task-1', start=False)
    assert excinfo.value.code == 'nothing_to_retry'


def test_diff_and_steering_views(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(require_approval=True))
    state = _mark_awaiting(service, iteration=1, max_iterations=1)
    result = AgentResult(
        status=Phase.AWAITING_INPUT,
        repositories=[RepoResult(name='service-1', files_modified=['src/app.py'])],
        agent_output='done',
        iteration=1,
    )
    service.store.save_group(replace(state, agent_result=result.model_dump(mode='json')))

    diff = service.get_diff('task-1')
    assert diff['awaiting_input'] is True
    assert diff['iteration'] == 1
    assert diff['verifiers_passed'] is True
    assert diff['repositories'][0]['files_modified'] == ['src/app.py']

    steering = service.get_steering('task-1', 'g1')
    assert steering['limit_reached'] is True
    assert steering['current_iteration'] == 1
    assert [entry['prompt'] for entry in steering['history']] == ['round 1']


def test_progress_for_pending_task(tmp_path: Path):
    service = _service(tmp_path)
    service.submit_task(make_task(groups=4))
    progress = service.get_progress('task-1')
    assert progress.total_groups == 4
    assert progress.pending_groups == 4
    assert progress.failure_percent == 0.0
    assert service.get_result('task-1') is None
    with pytest.raises(KeyError):
        service.get_progress('missing')
