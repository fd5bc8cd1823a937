from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from awe_fleetsteer.api import create_app
from awe_fleetsteer.controller.store import InMemoryTaskStateStore
from awe_fleetsteer.service import ControllerService

from fleet_fakes import ThreadSandboxProvider, fast_settings, wait_until


def _client(tmp_path: Path, **provider_kwargs) -> tuple[TestClient, ControllerService]:
    provider = ThreadSandboxProvider(tmp_path, **provider_kwargs)
    service = ControllerService(store=InMemoryTaskStateStore(), provider=provider, settings=fast_settings())
    return TestClient(create_app(service=service)), service


def _task_body(**overrides) -> dict:
    body = {
        'task_id': 'task-api',
        'title': 'Replace print with logging',
        'groups': [{'name': 'g1', 'repositories': [{'url': 'https://github.com/org/api.git'}]}],
        'execution': {
            'kind': 'agentic',
            'instruction': 'Replace print calls with the module logger.',
            'verifiers': [{'name': 'tests', 'command': ['pytest', '-q']}],
        },
        'pull_request': {'labels': ['automated']},
    }
    body.update(overrides)
    return body


def _awaiting(client: TestClient, iteration: int = 0):
    def check() -> bool:
        resp = client.get('/api/tasks/task-api/groups/g1/diff')
        data = resp.json()
        return resp.status_code == 200 and data['awaiting_input'] and data['iteration'] == iteration

    return check


def _status(client: TestClient) -> str:
    return client.get('/api/tasks/task-api').json()['status']


def test_api_health():
    client = TestClient(create_app(service=ControllerService(store=InMemoryTaskStateStore(), provider=None)))
    assert client.get('/healthz').json() == {'status': 'ok'}


def test_api_create_get_list_and_progress(tmp_path: Path):
    client, _ = _client(tmp_path, start_agent=False)
    resp = client.post('/api/tasks', json=_task_body())
    assert resp.status_code == 201
    body = resp.json()
    assert body['task_id'] == 'task-api'
    assert body['status'] == 'pending'
    assert body['groups'] == ['g1']

    assert client.get('/api/tasks/task-api').json()['title'] == 'Replace print with logging'
    assert [item['task_id'] for item in client.get('/api/tasks', params={'limit': 5}).json()] == ['task-api']

    progress = client.get('/api/tasks/task-api/progress').json()
    assert progress['total_groups'] == 1
    assert progress['pending_groups'] == 1
    assert progress['failure_percent'] == 0.0

    assert client.get('/api/tasks/task-api/result').status_code == 404
    events = client.get('/api/tasks/task-api/events').json()
    assert events[0]['type'] == 'task_submitted'


def test_api_missing_task_returns_404(tmp_path: Path):
    client, _ = _client(tmp_path, start_agent=False)
    assert client.get('/api/tasks/nope').json() == {'detail': 'task not found'}
    assert client.get('/api/tasks/nope/progress').status_code == 404
    assert client.post('/api/tasks/nope/start').status_code == 404
    assert client.post('/api/tasks/nope/cancel').status_code == 404
    assert client.post('/api/tasks/nope/groups/g1/approve').status_code == 404
    client.post('/api/tasks', json=_task_body())
    assert client.get('/api/tasks/task-api/groups/g9/diff').status_code == 404


def test_api_body_validation_returns_stable_400_schema(tmp_path: Path):
    client, _ = _client(tmp_path, start_agent=False)
    resp = client.post('/api/tasks', json={'groups': []})
    assert resp.status_code == 400
    body = resp.json()
    assert body['code'] == 'validation_error'
    assert body['field'] == 'title'

    resp = client.post('/api/tasks', json=_task_body(execution={'kind': 'agentic'}))
    assert resp.status_code == 400
    assert resp.json() == {
        'code': 'validation_error',
        'message': 'agentic execution requires an instruction',
        'field': 'task',
    }


def test_api_accepts_flat_targets_with_transformation(tmp_path: Path):
    client, service = _client(tmp_path, start_agent=False)
    body = _task_body(
        mode='report',
        groups=[],
        targets=[{'url': 'https://github.com/org/billing.git'}, {'url': 'https://github.com/org/ledger.git'}],
        transformation={'url': 'https://github.com/org/audit-kit.git'},
        for_each=[{'name': 'api', 'context': 'HTTP handlers'}],
    )
    resp = client.post('/api/tasks', json=body)
    assert resp.status_code == 201
    assert resp.json()['groups'] == ['default']
    task = service.store.get_task('task-api').task
    assert [repo.name for repo in task.groups[0].repositories] == ['billing', 'ledger']
    assert task.transformation.name == 'audit-kit'
    assert task.for_each[0].context == 'HTTP handlers'

    resp = client.post('/api/tasks', json=_task_body(task_id='task-bad', for_each=[{'name': 'api'}]))
    assert resp.status_code == 400
    assert resp.json()['message'] == 'for_each targets require report mode'


def test_api_duplicate_task_returns_400(tmp_path: Path):
    client, _ = _client(tmp_path, start_agent=False)
    assert client.post('/api/tasks', json=_task_body()).status_code == 201
    resp = client.post('/api/tasks', json=_task_body())
    assert resp.status_code == 400
    assert resp.json()['code'] == 'duplicate_task'


def test_api_signal_conflicts_return_409(tmp_path: Path):
    client, _ = _client(tmp_path, start_agent=False)
    client.post('/api/tasks', json=_task_body(require_approval=True))

    resp = client.post('/api/tasks/task-api/groups/g1/approve')
    assert resp.status_code == 409
    assert resp.json()['code'] == 'not_awaiting_input'

    resp = client.post('/api/tasks/task-api/continue', json={})
    assert resp.status_code == 409
    assert resp.json()['code'] == 'not_paused'

    resp = client.post('/api/tasks/task-api/retry', json={'auto_start': False})
    assert resp.status_code == 409
    assert resp.json()['code'] == 'task_not_finished'

    resp = client.post('/api/tasks/task-api/groups/g1/steer', json={'prompt': ''})
    assert resp.status_code == 400
    assert resp.json()['field'] == 'prompt'


def test_api_steer_and_approve_flow(tmp_path: Path):
    client, service = _client(tmp_path)
    resp = client.post('/api/tasks', json=_task_body(require_approval=True, auto_start=True))
    assert resp.status_code == 201

    wait_until(_awaiting(client))
    diff = client.get('/api/tasks/task-api/groups/g1/diff').json()
    assert diff['verifiers_passed'] is True
    assert diff['repositories'][0]['files_modified'] == ['src/app.py']

    resp = client.post('/api/tasks/task-api/groups/g1/steer', json={'prompt': 'also log at debug level'})
    assert resp.status_code == 202
    assert resp.json()['action'] == 'steer'

    wait_until(_awaiting(client, iteration=1))
    steering = client.get('/api/tasks/task-api/groups/g1/steering').json()
    assert [entry['prompt'] for entry in steering['history']] == ['also log at debug level']

    assert client.post('/api/tasks/task-api/groups/g1/approve').status_code == 202
    wait_until(lambda: _status(client) == 'completed')
    assert service.wait_for_task('task-api', timeout=10)

    result = client.get('/api/tasks/task-api/result').json()
    assert result['status'] == 'completed'
    group = result['groups'][0]
    assert group['status'] == 'succeeded'
    assert group['repositories'][0]['pull_request']['url'] == 'https://github.com/org/api/pull/42'
    types = [event['type'] for event in client.get('/api/tasks/task-api/events').json()]
    assert 'steering_completed' in types
    assert types[-1] == 'task_completed'


def test_api_iteration_limit_then_reject(tmp_path: Path):
    client, service = _client(tmp_path)
    client.post(
        '/api/tasks',
        json=_task_body(require_approval=True, max_steering_iterations=0, auto_start=True),
    )
    wait_until(_awaiting(client))

    resp = client.post('/api/tasks/task-api/groups/g1/steer', json={'prompt': 'one more thing'})
    assert resp.status_code == 409
    assert resp.json()['code'] == 'iteration_limit'
    assert resp.json()['field'] == 'prompt'

    assert client.post('/api/tasks/task-api/groups/g1/reject').status_code == 202
    wait_until(lambda: _status(client) == 'failed')
    assert service.wait_for_task('task-api', timeout=10)
    group = client.get('/api/tasks/task-api/result').json()['groups'][0]
    assert group['failure_kind'] == 'human_cancelled'
    assert group['diagnostic'] == 'rejected by reviewer'

    # Retry picks up exactly the failed group.
    resp = client.post('/api/tasks/task-api/retry', json={'auto_start': False})
    assert resp.status_code == 201
    assert resp.json()['retry_of'] == 'task-api'
    assert resp.json()['groups'] == ['g1']
