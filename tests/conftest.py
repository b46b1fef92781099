"""Shared fixtures: sqlite stores under tmp_path, fake executors and a recording sleep."""

from typing import Any, Callable, Dict, List, Optional

import pytest

from stackport.conversion.error_recovery import ErrorRecoveryEngine, RecoveryStrategyRegistry
from stackport.conversion.errors import ErrorClassifier
from stackport.conversion.executors import ExecutorRegistry, TaskContext, TaskExecutor
from stackport.conversion.job_manager import JobManager
from stackport.conversion.job_store import JobStore
from stackport.conversion.models import (
  AgentType,
  ConversionPlan,
  ConversionTask,
  TaskResult,
  TaskType
)
from stackport.conversion.orchestrator import ConversionOrchestrator
from stackport.conversion.progress import ProgressChannel
from stackport.conversion.queue import QueueAdapter, SQLiteQueueBackend
from stackport.conversion.retry import RetryExecutor, RetryOptions
from stackport.conversion.worker import ConversionWorker
from stackport.logging.event_logger import EventLogger


class RecordingSleep:
  """Stands in for asyncio.sleep; remembers every requested delay."""

  def __init__(self) -> None:
    self.delays: List[float] = []

  async def __call__(self, delay: float) -> None:
    self.delays.append(delay)


class FakeExecutor(TaskExecutor):
  """Succeeds unless a failure is queued for the task id; hooks run before each call."""

  def __init__(self) -> None:
    self.calls: List[str] = []
    self.contexts: List[TaskContext] = []
    self.failures: Dict[str, List[BaseException]] = {}
    self.hooks: Dict[str, Callable[[], Any]] = {}

  def fail(self, task_id: str, *errors: BaseException) -> None:
    self.failures.setdefault(task_id, []).extend(errors)

  async def execute(self, task: ConversionTask, plan: ConversionPlan, context: TaskContext) -> TaskResult:
    self.calls.append(task.id)
    self.contexts.append(context)
    hook = self.hooks.get(task.id)
    if hook is not None:
      await hook()
    pending = self.failures.get(task.id)
    if pending:
      raise pending.pop(0)
    return TaskResult(task_id=task.id, output=f'converted {task.id}', summary=f'{task.id} done')


def make_task(task_id: str, *deps: str, priority: int = 0, agent: AgentType = AgentType.CODE_GENERATION) -> ConversionTask:
  return ConversionTask(
    id=task_id,
    type=TaskType.CODE_GENERATION,
    description=f'Convert {task_id}',
    agent_type=agent,
    dependencies=frozenset(deps),
    priority=priority
  )


def make_plan(*tasks: ConversionTask, project_id: str = 'project-1', feasible: bool = True) -> ConversionPlan:
  if not tasks:
    tasks = (make_task('analyze'), make_task('generate', 'analyze'), make_task('validate', 'generate'))
  return ConversionPlan(
    id=f'plan-{project_id}',
    project_id=project_id,
    tasks=tuple(tasks),
    feasible=feasible,
    warnings=() if feasible else ('source stack not supported',)
  )


@pytest.fixture
def sleeper() -> RecordingSleep:
  return RecordingSleep()


@pytest.fixture
def event_logger(tmp_path) -> EventLogger:
  return EventLogger(tmp_path / 'logs')


@pytest.fixture
def job_store(tmp_path) -> JobStore:
  return JobStore(tmp_path / 'jobs.db')


@pytest.fixture
def queue_backend(tmp_path) -> SQLiteQueueBackend:
  return SQLiteQueueBackend(tmp_path / 'queue.db')


@pytest.fixture
def queue_adapter(queue_backend) -> QueueAdapter:
  return QueueAdapter(queue_backend, ProgressChannel())


@pytest.fixture
def job_manager(job_store, queue_adapter, event_logger) -> JobManager:
  return JobManager(job_store, queue_adapter, event_logger=event_logger)


@pytest.fixture
def recovery_engine(sleeper, event_logger) -> ErrorRecoveryEngine:
  classifier = ErrorClassifier()
  return ErrorRecoveryEngine(
    classifier=classifier,
    registry=RecoveryStrategyRegistry.default(sleep=sleeper),
    retry=RetryExecutor(classifier, sleep=sleeper),
    jitter=False,
    event_logger=event_logger
  )


@pytest.fixture
def fake_executor() -> FakeExecutor:
  return FakeExecutor()


@pytest.fixture
def worker(job_manager, queue_adapter, fake_executor, recovery_engine, event_logger, sleeper) -> ConversionWorker:
  return ConversionWorker(
    job_manager,
    queue_adapter,
    ExecutorRegistry({agent_type: fake_executor for agent_type in AgentType}),
    recovery_engine,
    event_logger=event_logger,
    worker_id='worker-test',
    task_timeout=5.0,
    sleep=sleeper
  )


@pytest.fixture
def orchestrator(job_manager, queue_adapter, recovery_engine, event_logger) -> ConversionOrchestrator:
  return ConversionOrchestrator(
    job_manager,
    queue_adapter,
    recovery_engine,
    event_logger=event_logger,
    retry_options=RetryOptions(max_retries=2, base_delay=0.01, max_delay=0.05, jitter=False),
    operation_timeout=5.0
  )


@pytest.fixture
def plan() -> ConversionPlan:
  return make_plan()


@pytest.fixture
def plan_factory() -> Callable[..., ConversionPlan]:
  return make_plan


@pytest.fixture
def task_factory() -> Callable[..., ConversionTask]:
  return make_task
