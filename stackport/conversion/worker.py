from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

from stackport.conversion.error_recovery import ErrorRecoveryEngine, RecoveryContext
from stackport.conversion.errors import AppError, ErrorCategory, ErrorContext
from stackport.conversion.executors import ExecutorRegistry, TaskContext
from stackport.conversion.job_manager import JobManager
from stackport.conversion.models import (
  TASK_DONE_STATUSES,
  ConversionJob,
  ConversionStatus,
  ConversionTask,
  QueueItem,
  TaskStatus
)
from stackport.conversion.queue import QueueAdapter
from stackport.conversion.retry import SleepFn
from stackport.conversion.task_graph import execution_order
from stackport.resources.monitor import ResourceMonitor

logger = logging.getLogger(__name__)


class ConversionWorker:
  """Consumer side of the queue: runs a job's tasks in dependency order.

  Delivery is at least once, so per-task status lives on the job record and a redelivered item
  skips every task already completed. Pause is cooperative: the job record is re-read before each
  task, an in-flight task always finishes.
  """

  def __init__(
    self,
    jobs: JobManager,
    queue: QueueAdapter,
    executors: ExecutorRegistry,
    recovery: ErrorRecoveryEngine,
    event_logger=None,
    resource_monitor: Optional[ResourceMonitor] = None,
    worker_id: Optional[str] = None,
    concurrency: int = 2,
    poll_interval: float = 1.0,
    task_timeout: float = 300.0,
    throttle_sleep: float = 5.0,
    sleep: SleepFn = asyncio.sleep
  ) -> None:
    self.jobs = jobs
    self.queue = queue
    self.executors = executors
    self.recovery = recovery
    self.event_logger = event_logger
    self.resource_monitor = resource_monitor
    self.worker_id = worker_id or f'worker-{uuid.uuid4().hex[:8]}'
    self.concurrency = max(1, concurrency)
    self.poll_interval = poll_interval
    self.task_timeout = task_timeout
    self.throttle_sleep = throttle_sleep
    self._sleep = sleep
    self._stopping = asyncio.Event()
    self._loop_task: Optional[asyncio.Task] = None
    self._inflight: Set[asyncio.Task] = set()

  def start(self) -> asyncio.Task:
    if self._loop_task is None or self._loop_task.done():
      self._stopping.clear()
      self._loop_task = asyncio.create_task(self.run_forever())
      logger.info('Conversion worker %s started', self.worker_id)
    return self._loop_task

  async def stop(self) -> None:
    self._stopping.set()
    if self._loop_task is not None:
      await self._loop_task
      self._loop_task = None
    if self._inflight:
      await asyncio.gather(*self._inflight, return_exceptions=True)
    logger.info('Conversion worker %s stopped', self.worker_id)

  @property
  def running(self) -> bool:
    return self._loop_task is not None and not self._loop_task.done()

  async def run_forever(self) -> None:
    while not self._stopping.is_set():
      if len(self._inflight) >= self.concurrency:
        await asyncio.wait(self._inflight, return_when=asyncio.FIRST_COMPLETED)
        continue
      try:
        item = self.queue.claim_next(self.worker_id)
      except Exception as exc:  # queue outage: keep polling
        logger.warning('Worker %s could not claim from queue: %s', self.worker_id, exc)
        item = None
      if item is None:
        try:
          await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
          pass
        continue
      task = asyncio.create_task(self.process(item))
      self._inflight.add(task)
      task.add_done_callback(self._inflight.discard)

  async def run_once(self) -> bool:
    """Claim and fully process one item; False when the queue had nothing ready."""
    item = self.queue.claim_next(self.worker_id)
    if item is None:
      return False
    await self.process(item)
    return True

  async def drain(self, limit: int = 100) -> int:
    processed = 0
    while processed < limit and await self.run_once():
      processed += 1
    return processed

  async def process(self, item: QueueItem) -> None:
    try:
      await self._process(item)
    except asyncio.CancelledError:
      raise
    except Exception as exc:
      # Anything escaping here is a bug or an outage; the item goes back for redelivery.
      logger.exception('Worker %s failed processing item %s: %s', self.worker_id, item.id, exc)
      self.queue.release(item.id, delay=self.poll_interval, error=str(exc))

  async def _process(self, item: QueueItem) -> None:
    job = self.jobs.find(item.job_id)
    if not self._should_continue(job, item):
      return
    user_id = item.payload.get('user_id')
    ordered = execution_order(job.plan)
    total = len(ordered)
    summaries: Dict[str, Any] = {}

    for task in ordered:
      current = self.jobs.find(job.id)
      if not self._should_continue(current, item):
        return
      if current.task_status(task.id) in TASK_DONE_STATUSES:
        continue
      await self._respect_system_load()
      self.queue.touch(item.id)
      outcome = await self._run_task(current, task, item, user_id)
      if outcome is None:
        return
      summaries[task.id] = outcome
      await self._report_progress(job.id, total)

    try:
      await self.jobs.mark_as_completed(
        job.id,
        {'completed_tasks': total, 'total_tasks': total, 'tasks': summaries}
      )
    except AppError as error:
      if error.category is not ErrorCategory.INVALID_TRANSITION and error.category is not ErrorCategory.NOT_FOUND:
        raise
      logger.info('Job %s changed state before completion: %s', job.id, error.message)
      refreshed = self.jobs.find(job.id)
      if refreshed is not None and refreshed.status is ConversionStatus.PAUSED:
        self._park(item, refreshed)
        return
    self.queue.ack_completed(item.id)

  def _should_continue(self, job: Optional[ConversionJob], item: QueueItem) -> bool:
    if job is None:
      logger.info('Job %s no longer exists; dropping item %s', item.job_id, item.id)
      self.queue.ack_failed(item.id, 'job deleted')
      return False
    if job.status.terminal:
      self.queue.ack_completed(item.id)
      return False
    if job.status is ConversionStatus.PAUSED:
      self._park(item, job)
      return False
    if job.status is ConversionStatus.PENDING:
      self.queue.ack_failed(item.id, 'job not started')
      return False
    return True

  def _park(self, item: QueueItem, job: ConversionJob) -> None:
    logger.info('Job %s is paused; parking item %s', job.id, item.id)
    self.queue.park(item.id)
    refreshed = self.jobs.find(job.id)
    if refreshed is not None and refreshed.status is ConversionStatus.RUNNING:
      self.queue.resume_job(job.id)

  async def _respect_system_load(self) -> None:
    if self.resource_monitor is None:
      return
    if self.resource_monitor.overloaded():
      logger.warning('Throttling conversion worker due to high system load')
      await self._sleep(self.throttle_sleep)

  async def _report_progress(self, job_id: str, total: int, current_task: Optional[str] = None) -> None:
    job = self.jobs.find(job_id)
    if job is None or total <= 0:
      return
    progress = min(99, int(job.completed_task_count * 100 / total))
    try:
      await self.jobs.update_progress(job_id, progress, current_task)
    except AppError as error:
      if not error.is_client_error:
        raise
      logger.debug('Skipped progress update for job %s: %s', job_id, error.message)

  async def _run_task(
    self,
    job: ConversionJob,
    task: ConversionTask,
    item: QueueItem,
    user_id: Optional[str]
  ) -> Optional[Dict[str, Any]]:
    self.jobs.record_task_status(job.id, task.id, TaskStatus.RUNNING)
    total = len(job.plan.tasks)
    await self._report_progress(job.id, total, current_task=task.description)

    context = ErrorContext(
      operation='ai.execute_task',
      job_id=job.id,
      project_id=job.project_id,
      user_id=user_id,
      task_id=task.id,
      metadata={'agent_type': task.agent_type.value, 'queue_item': item.id}
    )
    try:
      executor = self.executors.get(task.agent_type)
      context = context.with_metadata(origin=executor.origin)
      task_context = TaskContext(job_id=job.id, project_id=job.project_id, user_id=user_id)

      async def split_invoke(chunks: List[str]):
        return await executor.execute_chunks(task, job.plan, task_context, chunks)

      async def regenerate(attempt: int):
        strict = TaskContext(job_id=job.id, project_id=job.project_id, user_id=user_id, strict=True, attempt=attempt)
        return await asyncio.wait_for(executor.execute(task, job.plan, strict), self.task_timeout)

      recovery = RecoveryContext(
        source_text=task.context.get('source_text'),
        split_invoke=split_invoke,
        regenerate=regenerate
      )
      result = await self.recovery.run(
        lambda: executor.execute(task, job.plan, task_context),
        context,
        recovery,
        timeout=self.task_timeout
      )
    except AppError as error:
      await self._fail_task(job, task, item, error)
      return None

    self.jobs.record_task_status(job.id, task.id, TaskStatus.COMPLETED)
    logger.info('Task %s of job %s completed', task.id, job.id)
    return result.to_dict() if hasattr(result, 'to_dict') else result

  async def _fail_task(self, job: ConversionJob, task: ConversionTask, item: QueueItem, error: AppError) -> None:
    self.jobs.record_task_status(job.id, task.id, TaskStatus.FAILED)
    logger.error('Task %s of job %s failed: %s (%s)', task.id, job.id, error.message, error.code)
    if self.event_logger:
      self.event_logger.log_error(f'Task {task.id} failed', error.to_log_dict())
    try:
      await self.jobs.mark_as_failed(job.id, error.user_message)
    except AppError as transition_error:
      logger.warning('Could not mark job %s failed: %s', job.id, transition_error.message)
    self.queue.ack_failed(item.id, error.code)
