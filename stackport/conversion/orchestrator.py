from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from stackport.config import Settings
from stackport.conversion.error_recovery import (
  CascadeGuard,
  ErrorRecoveryEngine,
  RecoveryContext,
  RecoveryStrategyRegistry
)
from stackport.conversion.errors import AppError, ErrorClassifier, ErrorContext
from stackport.conversion.executors import ExecutorRegistry, build_http_registry
from stackport.conversion.job_manager import JobManager
from stackport.conversion.job_store import JobStore
from stackport.conversion.models import (
  ConversionJob,
  ConversionPlan,
  ConversionStatus,
  QueueItemState,
  QueueStats
)
from stackport.conversion.progress import ProgressCallback, ProgressChannel
from stackport.conversion.queue import QueueAdapter, SQLiteQueueBackend
from stackport.conversion.retry import RetryExecutor, RetryOptions
from stackport.conversion.worker import ConversionWorker
from stackport.logging.event_logger import EventLogger
from stackport.resources.monitor import ResourceMonitor, Thresholds

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ConversionOrchestrator:
  """Entry point for callers: every mutating call runs through the recovery pipeline.

  attempt, classify, category recovery, bounded retry; whatever still fails is escalated (job
  marked failed, full context written to the event log) and the AppError surfaces to the caller.
  """

  def __init__(
    self,
    jobs: JobManager,
    queue: QueueAdapter,
    recovery: ErrorRecoveryEngine,
    event_logger: Optional[EventLogger] = None,
    worker: Optional[ConversionWorker] = None,
    retry_options: Optional[RetryOptions] = None,
    operation_timeout: Optional[float] = 30.0,
    stalled_item_seconds: float = 600.0,
    keep_completed_items: int = 10,
    keep_failed_items: int = 50
  ) -> None:
    self.jobs = jobs
    self.queue = queue
    self.recovery = recovery
    self.event_logger = event_logger
    self.worker = worker
    self.retry_options = retry_options
    self.operation_timeout = operation_timeout
    self.stalled_item_seconds = stalled_item_seconds
    self.keep_completed_items = keep_completed_items
    self.keep_failed_items = keep_failed_items

  @classmethod
  def from_settings(
    cls,
    config: Settings,
    executors: Optional[ExecutorRegistry] = None,
    with_worker: Optional[bool] = None
  ) -> 'ConversionOrchestrator':
    config.ensure_directories()
    event_logger = EventLogger(config.log_dir)
    store = JobStore(config.db_path)
    queue = QueueAdapter(SQLiteQueueBackend(config.queue_db_path), ProgressChannel())
    jobs = JobManager(store, queue, event_logger=event_logger)
    classifier = ErrorClassifier()
    registry = RecoveryStrategyRegistry.default(
      max_rate_limit_wait=config.max_rate_limit_wait_seconds,
      cascade_guard=CascadeGuard(config.cascade_window_seconds, config.cascade_threshold)
    )
    recovery = ErrorRecoveryEngine(
      classifier=classifier,
      registry=registry,
      retry=RetryExecutor(classifier),
      max_delay=config.retry_max_delay_seconds,
      jitter=config.retry_jitter,
      event_logger=event_logger
    )
    worker = None
    enable_worker = config.worker_enabled if with_worker is None else with_worker
    if enable_worker:
      worker = ConversionWorker(
        jobs,
        queue,
        executors or build_http_registry(config.agent_base_url, config.agent_api_key, config.task_timeout_seconds),
        recovery,
        event_logger=event_logger,
        resource_monitor=ResourceMonitor(Thresholds(cpu_percent=config.max_cpu_percent, memory_percent=config.max_memory_percent)),
        concurrency=config.worker_concurrency,
        poll_interval=config.queue_poll_interval_seconds,
        task_timeout=config.task_timeout_seconds,
        throttle_sleep=config.throttle_sleep_seconds
      )
    return cls(
      jobs,
      queue,
      recovery,
      event_logger=event_logger,
      worker=worker,
      retry_options=RetryOptions(
        max_retries=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
        jitter=config.retry_jitter
      ),
      operation_timeout=config.operation_timeout_seconds,
      stalled_item_seconds=config.stalled_item_seconds,
      keep_completed_items=config.keep_completed_items,
      keep_failed_items=config.keep_failed_items
    )

  async def start_conversion(self, plan: ConversionPlan, user_id: Optional[str] = None) -> ConversionJob:
    context = ErrorContext(operation='conversion.create', project_id=plan.project_id, user_id=user_id)
    job = await self._guarded(lambda: self.jobs.create_conversion_job(plan), context)
    return await self._guarded(
      lambda: self.jobs.start_conversion_job(job.id, user_id),
      ErrorContext(operation='conversion.start', job_id=job.id, project_id=plan.project_id, user_id=user_id)
    )

  async def pause_conversion(self, job_id: str) -> ConversionJob:
    return await self._guarded(
      lambda: self.jobs.pause_conversion_job(job_id),
      ErrorContext(operation='conversion.pause', job_id=job_id)
    )

  async def resume_conversion(self, job_id: str, user_id: Optional[str] = None) -> ConversionJob:
    return await self._guarded(
      lambda: self.jobs.resume_conversion_job(job_id, user_id),
      ErrorContext(operation='conversion.resume', job_id=job_id, user_id=user_id)
    )

  async def delete_conversion(self, job_id: str) -> None:
    await self._guarded(
      lambda: self.jobs.delete_conversion_job(job_id),
      ErrorContext(operation='conversion.delete', job_id=job_id)
    )

  async def get_conversion(self, job_id: str) -> ConversionJob:
    return await self._guarded(
      lambda: self._read(lambda: self.jobs.get_conversion_job(job_id)),
      ErrorContext(operation='database.get_job', job_id=job_id),
      escalate=False
    )

  async def get_conversion_status(self, job_id: str) -> ConversionStatus:
    job = await self.get_conversion(job_id)
    return job.status

  async def list_conversions(self, project_id: Optional[str] = None) -> List[ConversionJob]:
    return await self._guarded(
      lambda: self._read(lambda: self.jobs.list_conversion_jobs(project_id)),
      ErrorContext(operation='database.list_jobs', project_id=project_id),
      escalate=False
    )

  async def get_queue_stats(self) -> QueueStats:
    return await self._guarded(
      lambda: self._read(self.queue.get_queue_stats),
      ErrorContext(operation='database.queue_stats'),
      escalate=False
    )

  def on_job_progress(self, job_id: str, callback: ProgressCallback) -> None:
    self.queue.on_job_progress(job_id, callback)

  def off_job_progress(self, job_id: str) -> None:
    self.queue.off_job_progress(job_id)

  def recent_events(self, limit: int = 100, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if self.event_logger is None:
      return []
    return self.event_logger.recent(limit, job_id=job_id)

  async def reconcile(self) -> Dict[str, int]:
    """Bring queue dispatch state back in line with the job records after a crash."""
    requeued = self.queue.requeue_stalled(self.stalled_item_seconds)
    dropped = 0
    for item in self.queue.backend.list_in_flight():
      job = self.jobs.find(item.job_id)
      if job is not None and not job.status.terminal:
        continue
      if item.state is QueueItemState.ACTIVE:
        self.queue.ack_failed(item.id, 'job missing or finished')
      else:
        self.queue.cancel(item.job_id)
      dropped += 1

    enqueued = 0
    for job in self.jobs.store.list_by_status([ConversionStatus.RUNNING, ConversionStatus.PAUSED]):
      item = self.queue.in_flight(job.id)
      if job.status is ConversionStatus.RUNNING:
        if item is None:
          self.queue.start_conversion_job(job.id, job.project_id, job.plan)
          enqueued += 1
        elif item.state is QueueItemState.PAUSED:
          self.queue.resume_job(job.id)
      elif item is not None and item.state in (QueueItemState.WAITING, QueueItemState.DELAYED):
        self.queue.pause_job(job.id)

    pruned = self.queue.prune(self.keep_completed_items, self.keep_failed_items)
    summary = {'requeued': len(requeued), 'dropped': dropped, 'enqueued': enqueued, 'pruned': pruned}
    logger.info('Queue reconciliation finished: %s', summary)
    if self.event_logger:
      self.event_logger.log_event('reconcile', 'Queue reconciled from job records', summary)
    return summary

  def start_worker(self) -> None:
    if self.worker is not None:
      self.worker.start()

  async def shutdown(self) -> None:
    if self.worker is not None:
      await self.worker.stop()
      await self.worker.executors.aclose()
    self.queue.close()
    logger.info('Conversion orchestrator shut down')

  async def _read(self, reader: Callable[[], T]) -> T:
    return reader()

  async def _guarded(
    self,
    operation: Callable[[], Awaitable[T]],
    context: ErrorContext,
    recovery: Optional[RecoveryContext] = None,
    escalate: bool = True
  ) -> T:
    try:
      return await self.recovery.run(
        operation,
        context,
        recovery or RecoveryContext(reconnect=self._reconnect),
        options=self.retry_options,
        timeout=self.operation_timeout
      )
    except AppError as error:
      if escalate:
        await self._escalate(error)
      elif not error.is_client_error:
        logger.error('Read %s failed: %s (%s)', context.operation, error.message, error.code)
      raise

  async def _reconnect(self) -> None:
    await asyncio.to_thread(self.jobs.store.ping)

  async def _escalate(self, error: AppError) -> None:
    if error.is_client_error:
      logger.info('%s rejected: %s', error.context.operation, error.message)
      return
    logger.error('%s failed: %s (%s)', error.context.operation, error.message, error.code)
    if self.event_logger:
      self.event_logger.log_error(error.message, error.to_log_dict())
    job_id = error.context.job_id
    if not job_id:
      return
    try:
      job = self.jobs.find(job_id)
      if job is not None and not job.status.terminal:
        await self.jobs.mark_as_failed(job_id, error.user_message)
    except Exception as exc:  # the original error is what the caller needs to see
      logger.warning('Could not mark job %s failed after %s: %s', job_id, error.code, exc)
