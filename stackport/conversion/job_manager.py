from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from stackport.conversion.errors import ErrorContext, invalid_transition, job_not_found, validation_error
from stackport.conversion.job_store import JobStore
from stackport.conversion.models import (
  ConversionJob,
  ConversionPlan,
  ConversionStatus,
  JobProgressUpdate,
  TaskStatus
)
from stackport.conversion.queue import QueueAdapter
from stackport.conversion.task_graph import validate_plan

logger = logging.getLogger(__name__)

RUNNING = ConversionStatus.RUNNING
PAUSED = ConversionStatus.PAUSED
PENDING = ConversionStatus.PENDING
COMPLETED = ConversionStatus.COMPLETED
FAILED = ConversionStatus.FAILED


class JobManager:
  """State machine for conversion jobs.

  pending -> running -> (paused <-> running) -> completed | failed. Every transition runs under a
  per-job asyncio lock and lands through a compare-and-set on the stored status, so a concurrent
  caller in another process that wins the race leaves the loser with an invalid transition error.
  """

  def __init__(
    self,
    store: JobStore,
    queue: QueueAdapter,
    event_logger=None,
    clock: Callable[[], float] = time.time
  ) -> None:
    self.store = store
    self.queue = queue
    self.event_logger = event_logger
    self._clock = clock
    self._locks: Dict[str, asyncio.Lock] = {}

  def _lock(self, job_id: str) -> asyncio.Lock:
    lock = self._locks.get(job_id)
    if lock is None:
      lock = asyncio.Lock()
      self._locks[job_id] = lock
    return lock

  def _require(self, job_id: str, action: str) -> ConversionJob:
    job = self.store.load(job_id)
    if job is None:
      raise job_not_found(job_id, ErrorContext(operation=action, job_id=job_id))
    return job

  def _reject(self, action: str, job_id: str) -> None:
    """Raise the error describing why a compare-and-set lost."""
    current = self._require(job_id, action)
    raise invalid_transition(action, job_id, current.status, ErrorContext(operation=action, job_id=job_id, project_id=current.project_id))

  def _log(self, message: str, job: ConversionJob, **extra: Any) -> None:
    if self.event_logger:
      payload = {'job_id': job.id, 'project_id': job.project_id}
      payload.update(extra)
      self.event_logger.log_event('job', message, payload)

  async def create_conversion_job(
    self,
    plan: ConversionPlan,
    initial_status: ConversionStatus = PENDING
  ) -> ConversionJob:
    if initial_status is not PENDING:
      raise validation_error(
        f'Jobs are created pending, not {initial_status.value}',
        ErrorContext(operation='create', project_id=plan.project_id),
        code='INVALID_INITIAL_STATUS'
      )
    validate_plan(plan)
    now = self._clock()
    job = ConversionJob(
      id=uuid.uuid4().hex,
      project_id=plan.project_id,
      plan=plan,
      status=PENDING,
      progress=0,
      created_at=now,
      updated_at=now
    )
    self.store.insert(job)
    logger.info('Created conversion job %s for project %s (%s tasks)', job.id, job.project_id, len(plan.tasks))
    self._log('Conversion job created', job, plan_id=plan.id)
    return job

  async def start_conversion_job(self, job_id: str, user_id: Optional[str] = None) -> ConversionJob:
    async with self._lock(job_id):
      job = self._require(job_id, 'start')
      if job.status is not PENDING:
        raise invalid_transition('start', job_id, job.status)
      if not self.store.compare_and_set_status(job_id, [PENDING], RUNNING, started_at=self._clock()):
        self._reject('start', job_id)
      try:
        self.queue.start_conversion_job(job.id, job.project_id, job.plan, user_id)
      except Exception:
        self.store.compare_and_set_status(job_id, [RUNNING], PENDING, started_at=None)
        raise
      logger.info('Started conversion job %s', job_id)
      started = self._require(job_id, 'start')
      self._log('Conversion job started', started, user_id=user_id)
    await self._publish(started, 'Conversion started')
    return started

  async def pause_conversion_job(self, job_id: str) -> ConversionJob:
    async with self._lock(job_id):
      job = self._require(job_id, 'pause')
      if job.status is not RUNNING:
        raise invalid_transition('pause', job_id, job.status)
      if not self.store.compare_and_set_status(job_id, [RUNNING], PAUSED):
        self._reject('pause', job_id)
      try:
        self.queue.pause_job(job_id)
      except Exception as exc:  # queue state is reconciled from the job record
        logger.warning('Could not mirror pause of job %s to the queue: %s', job_id, exc)
      logger.info('Paused conversion job %s', job_id)
      paused = self._require(job_id, 'pause')
      self._log('Conversion job paused', paused)
    await self._publish(paused, 'Conversion paused')
    return paused

  async def resume_conversion_job(self, job_id: str, user_id: Optional[str] = None) -> ConversionJob:
    async with self._lock(job_id):
      job = self._require(job_id, 'resume')
      if job.status is not PAUSED:
        raise invalid_transition('resume', job_id, job.status)
      if not self.store.compare_and_set_status(job_id, [PAUSED], RUNNING):
        self._reject('resume', job_id)
      try:
        self.queue.resume_job(job_id)
        # no-op when an item is still in flight; re-dispatches one lost while paused
        self.queue.start_conversion_job(job.id, job.project_id, job.plan, user_id)
      except Exception:
        self.store.compare_and_set_status(job_id, [RUNNING], PAUSED)
        raise
      logger.info('Resumed conversion job %s', job_id)
      resumed = self._require(job_id, 'resume')
      self._log('Conversion job resumed', resumed)
    await self._publish(resumed, 'Conversion resumed')
    return resumed

  async def update_progress(self, job_id: str, progress: int, current_task: Optional[str] = None) -> ConversionJob:
    clamped = max(0, min(100, int(progress)))
    async with self._lock(job_id):
      job = self._require(job_id, 'update progress')
      if job.status is not RUNNING:
        raise invalid_transition('update progress', job_id, job.status)
      if not self.store.update_progress(job_id, clamped, current_task):
        self._reject('update progress', job_id)
      updated = self._require(job_id, 'update progress')
    await self._publish(updated, current_task or '')
    return updated

  def record_task_status(self, job_id: str, task_id: str, status: TaskStatus) -> bool:
    return self.store.set_task_status(job_id, task_id, status, allowed=[RUNNING, PAUSED])

  async def mark_as_completed(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> ConversionJob:
    async with self._lock(job_id):
      job = self._require(job_id, 'complete')
      if job.status is COMPLETED:
        return job
      if job.status is not RUNNING:
        raise invalid_transition('complete', job_id, job.status)
      if not self.store.compare_and_set_status(
        job_id, [RUNNING], COMPLETED, progress=100, completed_at=self._clock(), result=result
      ):
        self._reject('complete', job_id)
      logger.info('Conversion job %s completed', job_id)
      completed = self._require(job_id, 'complete')
      self._log('Conversion job completed', completed)
    await self._publish(completed, 'Conversion completed')
    self.queue.off_job_progress(job_id)
    return completed

  async def mark_as_failed(self, job_id: str, error_message: str) -> ConversionJob:
    async with self._lock(job_id):
      job = self._require(job_id, 'fail')
      if job.status.terminal:
        raise invalid_transition('fail', job_id, job.status)
      if not self.store.compare_and_set_status(
        job_id, [PENDING, RUNNING, PAUSED], FAILED, error_message=error_message, completed_at=self._clock()
      ):
        self._reject('fail', job_id)
      try:
        self.queue.cancel(job_id)
      except Exception as exc:  # reconciliation removes items of terminal jobs
        logger.warning('Could not cancel queue items of failed job %s: %s', job_id, exc)
      logger.warning('Conversion job %s failed: %s', job_id, error_message)
      failed = self._require(job_id, 'fail')
      self._log('Conversion job failed', failed, error_message=error_message)
    await self._publish(failed, error_message)
    self.queue.off_job_progress(job_id)
    return failed

  async def delete_conversion_job(self, job_id: str) -> None:
    async with self._lock(job_id):
      job = self._require(job_id, 'delete')
      try:
        self.queue.cancel(job_id)
      except Exception as exc:  # orphaned items are dropped by reconciliation
        logger.warning('Could not cancel queue items of deleted job %s: %s', job_id, exc)
      self.queue.off_job_progress(job_id)
      if not self.store.delete(job_id):
        raise job_not_found(job_id, ErrorContext(operation='delete', job_id=job_id))
      logger.info('Deleted conversion job %s', job_id)
      self._log('Conversion job deleted', job)
    self._locks.pop(job_id, None)

  def get_conversion_job(self, job_id: str) -> ConversionJob:
    return self._require(job_id, 'get')

  def find(self, job_id: str) -> Optional[ConversionJob]:
    return self.store.load(job_id)

  def list_conversion_jobs(self, project_id: Optional[str] = None) -> List[ConversionJob]:
    return self.store.list(project_id)

  async def _publish(self, job: ConversionJob, message: str) -> None:
    update = JobProgressUpdate(
      job_id=job.id,
      status=job.status,
      progress=job.progress,
      message=message,
      timestamp=self._clock()
    )
    await self.queue.publish_progress(update)
