import sqlite3

import pytest

from conftest import make_plan, make_task
from stackport.config import Settings
from stackport.conversion.errors import CATEGORY_PROFILES, AppError, ErrorCategory
from stackport.conversion.models import ConversionStatus, QueueItemState
from stackport.conversion.orchestrator import ConversionOrchestrator


class TestConversionFacade:
  @pytest.mark.asyncio
  async def test_start_conversion_runs_the_job(self, orchestrator, plan):
    job = await orchestrator.start_conversion(plan, 'user-1')
    assert job.status is ConversionStatus.RUNNING
    assert await orchestrator.get_conversion_status(job.id) is ConversionStatus.RUNNING
    assert (await orchestrator.get_queue_stats()).waiting == 1

  @pytest.mark.asyncio
  async def test_cyclic_plan_creates_nothing(self, orchestrator, event_logger):
    plan = make_plan(make_task('a', 'b'), make_task('b', 'a'))
    with pytest.raises(AppError) as excinfo:
      await orchestrator.start_conversion(plan)
    assert excinfo.value.category is ErrorCategory.VALIDATION
    assert await orchestrator.list_conversions() == []
    assert (await orchestrator.get_queue_stats()).to_dict() == {
      'waiting': 0, 'active': 0, 'completed': 0, 'failed': 0, 'delayed': 0, 'paused': 0
    }
    assert [entry for entry in event_logger.recent() if entry['category'] == 'error'] == []

  @pytest.mark.asyncio
  async def test_pause_resume_and_delete(self, orchestrator, plan):
    job = await orchestrator.start_conversion(plan)
    assert (await orchestrator.pause_conversion(job.id)).status is ConversionStatus.PAUSED
    assert (await orchestrator.resume_conversion(job.id)).status is ConversionStatus.RUNNING

    await orchestrator.delete_conversion(job.id)

    with pytest.raises(AppError) as excinfo:
      await orchestrator.get_conversion_status(job.id)
    assert excinfo.value.category is ErrorCategory.NOT_FOUND
    assert await orchestrator.list_conversions() == []

  @pytest.mark.asyncio
  @pytest.mark.parametrize('method', ['pause_conversion', 'resume_conversion', 'delete_conversion', 'get_conversion'])
  async def test_unknown_job(self, orchestrator, method):
    with pytest.raises(AppError) as excinfo:
      await getattr(orchestrator, method)('missing-job')
    assert excinfo.value.category is ErrorCategory.NOT_FOUND

  @pytest.mark.asyncio
  async def test_list_filters_by_project(self, orchestrator):
    alpha = await orchestrator.start_conversion(make_plan(project_id='alpha'))
    await orchestrator.start_conversion(make_plan(project_id='beta'))
    assert [job.id for job in await orchestrator.list_conversions('alpha')] == [alpha.id]

  @pytest.mark.asyncio
  async def test_progress_subscription(self, orchestrator, plan):
    job = await orchestrator.start_conversion(plan)
    seen = []
    orchestrator.on_job_progress(job.id, seen.append)
    await orchestrator.pause_conversion(job.id)
    orchestrator.off_job_progress(job.id)
    await orchestrator.resume_conversion(job.id)
    assert [update.status for update in seen] == [ConversionStatus.PAUSED]


class TestEscalation:
  """Failures that survive recovery mark the job failed and land in the event log."""

  @pytest.mark.asyncio
  async def test_transient_failure_is_absorbed(self, orchestrator, job_manager, plan, monkeypatch):
    job = await orchestrator.start_conversion(plan)
    real_pause = job_manager.pause_conversion_job
    calls = []

    async def flaky_pause(job_id):
      calls.append(job_id)
      if len(calls) == 1:
        raise ConnectionResetError('connection reset by peer')
      return await real_pause(job_id)

    monkeypatch.setattr(job_manager, 'pause_conversion_job', flaky_pause)
    paused = await orchestrator.pause_conversion(job.id)

    assert paused.status is ConversionStatus.PAUSED
    assert len(calls) == 2

  @pytest.mark.asyncio
  async def test_persistent_database_failure_fails_the_job(self, orchestrator, job_manager, event_logger, sleeper, plan, monkeypatch):
    job = await orchestrator.start_conversion(plan)

    async def locked(job_id):
      raise sqlite3.OperationalError('database is locked')

    monkeypatch.setattr(job_manager, 'pause_conversion_job', locked)
    with pytest.raises(AppError) as excinfo:
      await orchestrator.pause_conversion(job.id)

    assert excinfo.value.category is ErrorCategory.DATABASE_CONNECTION
    assert sleeper.delays == [0.01]
    failed = job_manager.get_conversion_job(job.id)
    assert failed.status is ConversionStatus.FAILED
    assert failed.error_message == CATEGORY_PROFILES[ErrorCategory.DATABASE_CONNECTION].user_message
    errors = [entry for entry in orchestrator.recent_events(job_id=job.id) if entry['category'] == 'error']
    assert errors[0]['payload']['code'] == 'DATABASE_CONNECTION_FAILED'
    assert errors[0]['payload']['context']['operation'] == 'conversion.pause'

  @pytest.mark.asyncio
  async def test_client_errors_are_not_escalated(self, orchestrator, job_manager, plan):
    job = await orchestrator.start_conversion(plan)
    with pytest.raises(AppError):
      await orchestrator.resume_conversion(job.id)
    assert job_manager.get_conversion_job(job.id).status is ConversionStatus.RUNNING
    assert [entry for entry in orchestrator.recent_events(job_id=job.id) if entry['category'] == 'error'] == []


class TestReconcile:
  @pytest.mark.asyncio
  async def test_running_job_without_item_is_requeued(self, orchestrator, queue_adapter, plan):
    job = await orchestrator.start_conversion(plan)
    queue_adapter.cancel(job.id)

    summary = await orchestrator.reconcile()

    assert summary['enqueued'] == 1
    assert queue_adapter.in_flight(job.id).state is QueueItemState.WAITING

  @pytest.mark.asyncio
  async def test_item_without_job_is_dropped(self, orchestrator, queue_adapter, plan):
    queue_adapter.start_conversion_job('ghost', plan.project_id, plan)

    summary = await orchestrator.reconcile()

    assert summary['dropped'] == 1
    assert queue_adapter.in_flight('ghost') is None

  @pytest.mark.asyncio
  async def test_paused_job_parks_its_waiting_item(self, orchestrator, queue_adapter, plan):
    job = await orchestrator.start_conversion(plan)
    await orchestrator.pause_conversion(job.id)
    queue_adapter.resume_job(job.id)

    await orchestrator.reconcile()

    assert queue_adapter.in_flight(job.id).state is QueueItemState.PAUSED

  @pytest.mark.asyncio
  async def test_consistent_state_is_left_alone(self, orchestrator, plan):
    await orchestrator.start_conversion(plan)
    summary = await orchestrator.reconcile()
    assert summary == {'requeued': 0, 'dropped': 0, 'enqueued': 0, 'pruned': 0}


class TestFromSettings:
  @pytest.mark.asyncio
  async def test_builds_a_working_stack(self, tmp_path, plan):
    config = Settings(
      data_dir=tmp_path,
      db_path=tmp_path / 'jobs.db',
      queue_db_path=tmp_path / 'queue.db',
      worker_enabled=False
    )
    orchestrator = ConversionOrchestrator.from_settings(config)
    try:
      job = await orchestrator.start_conversion(plan)
      assert orchestrator.worker is None
      assert (await orchestrator.get_conversion(job.id)).status is ConversionStatus.RUNNING
    finally:
      await orchestrator.shutdown()
