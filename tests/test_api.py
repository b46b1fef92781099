import pytest
from fastapi.testclient import TestClient

from stackport.api.app import create_app
from stackport.resources.monitor import ResourceMonitor


class QuietMonitor(ResourceMonitor):
  """Fixed readings so health checks do not depend on the host."""

  def snapshot(self, minimal: bool = False):
    return {
      'cpu': {'percent': 12.0},
      'memory': {'percent': 40.0},
      'flags': {'cpu_high': False, 'memory_high': False}
    }


def plan_payload(project_id='project-1', tasks=None):
  return {
    'project_id': project_id,
    'tasks': tasks if tasks is not None else [
      {'id': 'analyze', 'type': 'analysis', 'agent_type': 'analysis', 'description': 'Analyze sources'},
      {'id': 'generate', 'type': 'code_generation', 'agent_type': 'code_generation', 'dependencies': ['analyze']}
    ]
  }


@pytest.fixture
def client(orchestrator):
  app = create_app(orchestrator=orchestrator, resource_monitor=QuietMonitor())
  with TestClient(app) as test_client:
    yield test_client


def start_job(client, project_id='project-1'):
  response = client.post('/conversion/start', json={'plan': plan_payload(project_id), 'user_id': 'user-1'})
  assert response.status_code == 200
  return response.json()['job']


class TestSystemRoutes:
  def test_health(self, client):
    response = client.get('/health')
    assert response.status_code == 200
    data = response.json()
    assert data['status'] == 'ok'
    assert data['worker'] is False
    assert data['queue']['waiting'] == 0
    assert data['resources']['flags']['cpu_high'] is False

  def test_system_info(self, client):
    response = client.get('/system/info')
    assert response.status_code == 200
    assert 'python_version' in response.json()


class TestConversionRoutes:
  """Job lifecycle over HTTP, including the structured error responses."""

  def test_start_returns_running_job(self, client):
    job = start_job(client)
    assert job['status'] == 'running'
    assert job['progress'] == 0
    assert job['total_tasks'] == 2
    assert job['completed_tasks'] == 0

  def test_status_of_started_job(self, client):
    job = start_job(client)
    response = client.get(f"/conversion/status/{job['id']}", params={'include_plan': True})
    assert response.status_code == 200
    data = response.json()
    assert data['status'] == 'running'
    assert [task['id'] for task in data['job']['plan']['tasks']] == ['analyze', 'generate']

  def test_pause_twice_is_a_conflict(self, client):
    job = start_job(client)
    first = client.post('/conversion/pause', json={'job_id': job['id']})
    assert first.status_code == 200
    assert first.json()['job']['status'] == 'paused'

    second = client.post('/conversion/pause', json={'job_id': job['id']})
    assert second.status_code == 409
    error = second.json()
    assert error['code'] == 'INVALID_STATE_TRANSITION'
    assert error['userMessage']
    assert error['suggestions'] == ['Refresh the conversion status before trying again']
    assert error['actions'][-1]['action'] == 'help'

  def test_resume_after_pause(self, client):
    job = start_job(client)
    client.post('/conversion/pause', json={'job_id': job['id']})
    response = client.post('/conversion/resume', json={'job_id': job['id'], 'user_id': 'user-1'})
    assert response.status_code == 200
    assert response.json()['job']['status'] == 'running'

  def test_unknown_job_is_404(self, client):
    response = client.get('/conversion/status/missing')
    assert response.status_code == 404
    assert response.json()['code'] == 'JOB_NOT_FOUND'

  def test_cyclic_plan_is_400(self, client):
    tasks = [
      {'id': 'a', 'type': 'analysis', 'agent_type': 'analysis', 'dependencies': ['b']},
      {'id': 'b', 'type': 'analysis', 'agent_type': 'analysis', 'dependencies': ['a']}
    ]
    response = client.post('/conversion/start', json={'plan': plan_payload(tasks=tasks)})
    assert response.status_code == 400
    assert response.json()['code'] == 'PLAN_DEPENDENCY_CYCLE'
    assert client.get('/conversion/jobs').json()['jobs'] == []

  def test_unknown_task_type_is_rejected_by_schema(self, client):
    tasks = [{'id': 'a', 'type': 'teleport', 'agent_type': 'analysis'}]
    response = client.post('/conversion/start', json={'plan': plan_payload(tasks=tasks)})
    assert response.status_code == 422

  def test_delete(self, client):
    job = start_job(client)
    response = client.delete(f"/conversion/{job['id']}")
    assert response.status_code == 200
    assert response.json() == {'deleted': True, 'job_id': job['id']}
    assert client.get(f"/conversion/status/{job['id']}").status_code == 404
    assert client.delete(f"/conversion/{job['id']}").status_code == 404

  def test_jobs_filtered_by_project(self, client):
    alpha = start_job(client, 'alpha')
    start_job(client, 'beta')
    response = client.get('/conversion/jobs', params={'project_id': 'alpha'})
    assert [job['id'] for job in response.json()['jobs']] == [alpha['id']]

  def test_queue_stats(self, client):
    start_job(client)
    response = client.get('/conversion/queue/stats')
    assert response.status_code == 200
    assert response.json()['waiting'] == 1

  def test_events_for_job(self, client):
    job = start_job(client)
    response = client.get('/conversion/events', params={'job_id': job['id']})
    messages = [event['message'] for event in response.json()['events']]
    assert messages == ['Conversion job created', 'Conversion job started']
