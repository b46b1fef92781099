from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import httpx

from stackport.conversion.errors import ErrorContext, ProviderError, parse_retry_after, parse_seconds, validation_error
from stackport.conversion.models import AgentType, ConversionPlan, ConversionTask, TaskResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskContext:
  job_id: str
  project_id: str
  user_id: Optional[str] = None
  strict: bool = False
  attempt: int = 0
  chunk: Optional[str] = None
  chunk_index: Optional[int] = None


class TaskExecutor:
  """Performs a single task. Failures are raised, preferably as ProviderError."""

  origin = 'ai'

  async def execute(self, task: ConversionTask, plan: ConversionPlan, context: TaskContext) -> TaskResult:
    raise NotImplementedError

  async def execute_chunks(
    self,
    task: ConversionTask,
    plan: ConversionPlan,
    context: TaskContext,
    chunks: List[str]
  ) -> TaskResult:
    """Run `task` once per chunk of its oversized input and merge the results."""
    merged = TaskResult(task_id=task.id, metadata={'chunks': len(chunks)})
    outputs: List[str] = []
    for index, chunk in enumerate(chunks):
      partial = await self.execute(task, plan, replace(context, chunk=chunk, chunk_index=index))
      merged.files.extend(partial.files)
      if partial.output:
        outputs.append(partial.output)
    merged.output = '\n'.join(outputs) if outputs else None
    merged.summary = f'Processed in {len(chunks)} chunks'
    return merged

  async def aclose(self) -> None:
    return None


class ExecutorRegistry:
  def __init__(self, executors: Optional[Dict[AgentType, TaskExecutor]] = None) -> None:
    self._executors: Dict[AgentType, TaskExecutor] = dict(executors or {})

  def register(self, agent_type: AgentType, executor: TaskExecutor) -> None:
    self._executors[agent_type] = executor

  def get(self, agent_type: AgentType) -> TaskExecutor:
    executor = self._executors.get(agent_type)
    if executor is None:
      raise validation_error(
        f'No executor registered for agent type {agent_type.value}',
        ErrorContext(operation='executor.resolve', metadata={'agent_type': agent_type.value}),
        code='EXECUTOR_NOT_FOUND'
      )
    return executor

  async def aclose(self) -> None:
    closed = set()
    for executor in self._executors.values():
      if id(executor) in closed:
        continue
      closed.add(id(executor))
      await executor.aclose()


class HttpAgentExecutor(TaskExecutor):
  """Posts tasks to a remote agent service and maps its failures to ProviderError."""

  def __init__(
    self,
    base_url: str,
    api_key: Optional[str] = None,
    timeout: float = 300.0,
    client: Optional[httpx.AsyncClient] = None
  ) -> None:
    self.base_url = base_url.rstrip('/')
    self.headers = {'content-type': 'application/json'}
    if api_key:
      self.headers['authorization'] = f'Bearer {api_key}'
    self._client = client or httpx.AsyncClient(timeout=timeout)

  async def execute(self, task: ConversionTask, plan: ConversionPlan, context: TaskContext) -> TaskResult:
    endpoint = f'{self.base_url}/agents/{task.agent_type.value}/tasks'
    payload: Dict[str, Any] = {
      'task': task.to_dict(),
      'plan_id': plan.id,
      'project_id': context.project_id,
      'job_id': context.job_id,
      'user_id': context.user_id,
      'strict': context.strict,
      'attempt': context.attempt
    }
    if context.chunk is not None:
      payload['chunk'] = context.chunk
      payload['chunk_index'] = context.chunk_index
    try:
      response = await self._client.post(endpoint, headers=self.headers, json=payload)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      raise self._provider_error(exc.response) from exc
    data = response.json()
    return TaskResult(
      task_id=task.id,
      success=bool(data.get('success', True)),
      output=data.get('output'),
      files=list(data.get('files') or []),
      summary=data.get('summary'),
      metadata=dict(data.get('metadata') or {})
    )

  def _provider_error(self, response: httpx.Response) -> ProviderError:
    code = None
    message = response.text
    try:
      body = response.json()
    except ValueError:
      body = None
    if isinstance(body, dict):
      error = body.get('error')
      if isinstance(error, dict):
        code = error.get('code') or error.get('type')
        message = error.get('message') or message
      elif isinstance(error, str):
        message = error
    retry_after = response.headers.get('retry-after')
    reset = response.headers.get('x-ratelimit-reset')
    return ProviderError(
      f'Agent service error {response.status_code}: {message}',
      status_code=response.status_code,
      code=code,
      origin='ai',
      retry_after=parse_retry_after(retry_after),
      rate_limit_reset=parse_seconds(reset)
    )

  async def aclose(self) -> None:
    await self._client.aclose()


def build_http_registry(base_url: str, api_key: Optional[str] = None, timeout: float = 300.0) -> ExecutorRegistry:
  executor = HttpAgentExecutor(base_url, api_key=api_key, timeout=timeout)
  return ExecutorRegistry({agent_type: executor for agent_type in AgentType})
