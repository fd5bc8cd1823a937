from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from awe_fleetsteer.controller.db import Database, SqlTaskStateStore
from awe_fleetsteer.controller.store import GroupStage, InMemoryTaskStateStore
from awe_fleetsteer.domain.events import EventType
from awe_fleetsteer.domain.models import (
    GroupOutcome,
    GroupStatus,
    SteeringIteration,
    TaskResult,
    TaskStatus,
)

from fleet_fakes import make_task, pause_policy


@pytest.fixture(params=['memory', 'sqlite'])
def store(request, tmp_path: Path):
    if request.param == 'memory':
        return InMemoryTaskStateStore()
    db = Database(f'sqlite:///{tmp_path / "state" / "fleet.db"}')
    db.create_schema()
    return SqlTaskStateStore(db)


def test_database_creates_parent_directory(tmp_path: Path):
    target = tmp_path / 'nested' / 'dir' / 'fleet.db'
    db = Database(f'sqlite:///{target}')
    db.create_schema()
    assert target.parent.is_dir()


def test_create_task_initializes_groups(store):
    task = make_task('task-a', groups=3, max_steering_iterations=2, failure_policy=pause_policy(25))
    record = store.create_task(task)
    assert record.status == TaskStatus.PENDING
    assert record.task == task
    assert store.get_task('task-a').task.failure_policy.threshold_percent == 25

    groups = store.list_groups('task-a')
    assert [state.group for state in groups] == ['g1', 'g2', 'g3']
    assert all(state.status == GroupStatus.PENDING for state in groups)
    assert all(state.stage == GroupStage.PENDING for state in groups)
    assert groups[0].steering.max_iterations == 2


def test_create_task_rejects_duplicates(store):
    store.create_task(make_task('task-a'))
    with pytest.raises(ValueError, match='already exists'):
        store.create_task(make_task('task-a'))


def test_missing_rows_raise_key_error(store):
    assert store.get_task('nope') is None
    with pytest.raises(KeyError):
        store.update_task('nope', status=TaskStatus.RUNNING)
    with pytest.raises(KeyError):
        store.list_groups('nope')
    store.create_task(make_task('task-a'))
    with pytest.raises(KeyError):
        store.get_group('task-a', 'missing')
    with pytest.raises(KeyError):
        store.append_signal('nope', group=None, action='cancel')


def test_update_task_round_trips_result(store):
    store.create_task(make_task('task-a', groups=2))
    result = TaskResult(
        task_id='task-a',
        status=TaskStatus.PARTIAL,
        mode=make_task().mode,
        groups=(
            GroupOutcome(group='g1', status=GroupStatus.SUCCEEDED, repositories=({'name': 'service-1'},)),
            GroupOutcome(group='g2', status=GroupStatus.FAILED, failure_kind='staleness', diagnostic='quiet'),
        ),
    )
    store.update_task(
        'task-a',
        status=TaskStatus.PARTIAL,
        result=result,
        started_at='2026-01-02T03:04:05+00:00',
        completed_at='2026-01-02T04:00:00+00:00',
        paused=False,
        signal_cursor=4,
        acknowledged_failures=1,
    )
    record = store.get_task('task-a')
    assert record.status == TaskStatus.PARTIAL
    assert record.is_terminal is True
    assert record.result == result
    assert record.signal_cursor == 4
    assert record.acknowledged_failures == 1
    assert record.started_at.startswith('2026-01-02T03:04:05')


def test_save_group_round_trips_resume_state(store):
    store.create_task(make_task('task-a', require_approval=True))
    state = store.get_group('task-a', 'g1')
    steering = state.steering.record(
        SteeringIteration(iteration=1, prompt='tighten the regex', issued_at='t1', files_modified=('a.py',))
    )
    saved = store.save_group(
        replace(
            state,
            status=GroupStatus.RUNNING,
            stage=GroupStage.STEERING,
            sandbox_id='sbx-1',
            signal_cursor=7,
            awaiting_since=1234.5,
            last_status_at=1200.0,
            last_status_key='awaiting_input:1:2026-01-01T00:00:00+00:00',
            pending_instruction={'action': 'approve', 'prompt': '', 'iteration': 1},
            steering=steering,
            agent_result={'status': 'awaiting_input', 'iteration': 1},
        )
    )
    loaded = store.get_group('task-a', 'g1')
    assert loaded.stage == GroupStage.STEERING
    assert loaded.status == GroupStatus.RUNNING
    assert loaded.sandbox_id == 'sbx-1'
    assert loaded.signal_cursor == 7
    assert loaded.awaiting_since == 1234.5
    assert loaded.last_status_key == saved.last_status_key
    assert loaded.pending_instruction == {'action': 'approve', 'prompt': '', 'iteration': 1}
    assert loaded.steering == steering
    assert loaded.agent_result == {'status': 'awaiting_input', 'iteration': 1}

    outcome = GroupOutcome(group='g1', status=GroupStatus.SUCCEEDED, sandbox_id='sbx-1')
    store.save_group(replace(loaded, status=GroupStatus.SUCCEEDED, stage=GroupStage.DONE, outcome=outcome))
    assert store.get_group('task-a', 'g1').outcome == outcome


def test_signals_are_sequenced_per_task(store):
    store.create_task(make_task('task-a'))
    store.create_task(make_task('task-b'))
    first = store.append_signal('task-a', group='g1', action='steer', payload={'prompt': 'more tests'})
    store.append_signal('task-b', group=None, action='cancel')
    second = store.append_signal('task-a', group=None, action='continue', payload={'skip_remaining': True})
    assert (first.seq, second.seq) == (1, 2)

    records = store.signals_after('task-a', 0)
    assert [(record.seq, record.group, record.action) for record in records] == [
        (1, 'g1', 'steer'),
        (2, None, 'continue'),
    ]
    assert records[0].payload == {'prompt': 'more tests'}
    assert [record.seq for record in store.signals_after('task-a', 1)] == [2]
    assert store.signals_after('task-b', 0)[0].seq == 1


def test_events_are_ordered_and_normalized(store):
    store.create_task(make_task('task-a'))
    store.append_event('task-a', EventType.TASK_STARTED, payload={'groups': 1})
    store.append_event('task-a', ' Group_Started ', group='g1')
    events = store.list_events('task-a')
    assert [(event['seq'], event['type'], event['group']) for event in events] == [
        (1, 'task_started', None),
        (2, 'group_started', 'g1'),
    ]
    assert events[0]['payload'] == {'groups': 1}
    assert store.list_events('unknown') == []


def test_list_incomplete_and_limit(store):
    for name in ('task-a', 'task-b', 'task-c'):
        store.create_task(make_task(name))
    store.update_task('task-a', status=TaskStatus.RUNNING)
    store.update_task('task-b', status=TaskStatus.PAUSED, paused=True, paused_reason='failure rate')
    store.update_task('task-c', status=TaskStatus.COMPLETED)
    incomplete = sorted(record.task_id for record in store.list_incomplete_tasks())
    assert incomplete == ['task-a', 'task-b']
    assert len(store.list_tasks(limit=2)) == 2
    assert store.get_task('task-b').paused_reason == 'failure rate'
