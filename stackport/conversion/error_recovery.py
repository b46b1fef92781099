from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, TypeVar

from stackport.conversion.error_messages import wait_seconds
from stackport.conversion.errors import CLIENT_CATEGORIES, AppError, ErrorCategory, ErrorClassifier, ErrorContext
from stackport.conversion.retry import RetryExecutor, RetryOptions, SleepFn

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RecoveryOutcome(Enum):
  RETRIED_SUCCESSFULLY = 'retried_successfully'
  FALL_BACK_TO_RETRY = 'fall_back_to_retry'
  GIVE_UP = 'give_up'


@dataclass
class RecoveryResult:
  outcome: RecoveryOutcome
  action: str
  message: str = ''
  value: Any = None
  retry_options: Optional[RetryOptions] = None

  @property
  def resolved(self) -> bool:
    return self.outcome is RecoveryOutcome.RETRIED_SUCCESSFULLY


@dataclass
class RecoveryContext:
  """Hooks a caller can offer to category strategies; every hook is optional."""

  source_text: Optional[str] = None
  split_invoke: Optional[Callable[[List[str]], Awaitable[Any]]] = None
  regenerate: Optional[Callable[[int], Awaitable[Any]]] = None
  reconnect: Optional[Callable[[], Awaitable[Any]]] = None


def split_into_chunks(text: str, max_chunk_size: int = 4000) -> List[str]:
  chunks: List[str] = []
  current = ''
  for line in text.split('\n'):
    if current and len(current) + len(line) > max_chunk_size:
      chunks.append(current)
      current = line
    else:
      current = f'{current}\n{line}' if current else line
  if current:
    chunks.append(current)
  return chunks


class RecoveryStrategy:
  categories: FrozenSet[ErrorCategory] = frozenset()

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    raise NotImplementedError

  def retry_options(self, error: AppError) -> RetryOptions:
    return RetryOptions.for_error(error)


class RateLimitStrategy(RecoveryStrategy):
  """Waits for the provider's reset signal, then hands over to plain retry."""

  categories = frozenset({ErrorCategory.GITHUB_RATE_LIMIT, ErrorCategory.AI_API_RATE_LIMIT})

  def __init__(
    self,
    sleep: SleepFn = asyncio.sleep,
    max_wait: float = 300.0,
    horizon: float = 7200.0,
    clock: Callable[[], float] = time.time
  ) -> None:
    self._sleep = sleep
    self.max_wait = max_wait
    self.horizon = horizon
    self._clock = clock

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    wait = wait_seconds(error, self._clock())
    if wait is None:
      wait = error.retry_delay
    if wait >= self.horizon:
      return RecoveryResult(
        RecoveryOutcome.GIVE_UP,
        'rate_limit_reset_too_far',
        f'Rate limit resets in {int(wait)}s which is beyond the recovery horizon'
      )
    wait = min(wait, self.max_wait)
    if wait > 0:
      logger.info('Waiting %.1fs for %s rate limit reset', wait, error.category.value)
      await self._sleep(wait)
    return RecoveryResult(
      RecoveryOutcome.FALL_BACK_TO_RETRY,
      'wait_rate_limit_reset',
      f'Waited {wait:.1f}s for rate limit reset',
      retry_options=self.retry_options(error)
    )

  def retry_options(self, error: AppError) -> RetryOptions:
    if error.category is ErrorCategory.AI_API_RATE_LIMIT:
      return RetryOptions(max_retries=5, base_delay=30.0, exponential_backoff=True, max_delay=self.max_wait)
    return RetryOptions(max_retries=error.max_retries, base_delay=error.retry_delay, exponential_backoff=True, max_delay=self.max_wait)


class ContextLengthStrategy(RecoveryStrategy):
  categories = frozenset({ErrorCategory.AI_CONTEXT_LENGTH})

  def __init__(self, max_chunk_size: int = 4000) -> None:
    self.max_chunk_size = max_chunk_size

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    if not context.source_text or context.split_invoke is None:
      return RecoveryResult(RecoveryOutcome.GIVE_UP, 'cannot_split', 'No splittable input available')
    chunks = split_into_chunks(context.source_text, self.max_chunk_size)
    if len(chunks) < 2:
      return RecoveryResult(RecoveryOutcome.GIVE_UP, 'cannot_split', 'Input cannot be split any further')
    value = await context.split_invoke(chunks)
    return RecoveryResult(
      RecoveryOutcome.RETRIED_SUCCESSFULLY,
      'split_content',
      f'Split content into {len(chunks)} smaller chunks',
      value=value
    )

  def retry_options(self, error: AppError) -> RetryOptions:
    return RetryOptions(max_retries=2, base_delay=1.0, exponential_backoff=False)


class DatabaseReconnectStrategy(RecoveryStrategy):
  categories = frozenset({ErrorCategory.DATABASE_CONNECTION})

  def __init__(self, sleep: SleepFn = asyncio.sleep, attempts: int = 3, base_delay: float = 0.5) -> None:
    self._sleep = sleep
    self.attempts = attempts
    self.base_delay = base_delay

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    if context.reconnect is None:
      return RecoveryResult(
        RecoveryOutcome.FALL_BACK_TO_RETRY,
        'retry_database',
        retry_options=self.retry_options(error)
      )
    for attempt in range(self.attempts):
      try:
        await context.reconnect()
      except Exception as exc:  # bounded; reported below if every attempt fails
        logger.warning('Database reconnect attempt %s/%s failed: %s', attempt + 1, self.attempts, exc)
        if attempt + 1 < self.attempts:
          await self._sleep(self.base_delay * (2 ** attempt))
        continue
      return RecoveryResult(
        RecoveryOutcome.FALL_BACK_TO_RETRY,
        'reconnect_database',
        f'Reconnected after {attempt + 1} attempt(s)',
        retry_options=self.retry_options(error)
      )
    return RecoveryResult(RecoveryOutcome.GIVE_UP, 'reconnect_failed', 'Failed to reconnect to the database')

  def retry_options(self, error: AppError) -> RetryOptions:
    return RetryOptions(max_retries=5, base_delay=5.0, exponential_backoff=True, max_delay=30.0)


class TransientStrategy(RecoveryStrategy):
  """No local remedy; backoff is the retry executor's concern."""

  categories = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.UPSTREAM_SERVICE,
    ErrorCategory.AI_TIMEOUT,
    ErrorCategory.AI_MODEL_FAILURE,
    ErrorCategory.GITHUB_API,
    ErrorCategory.FILE_SYSTEM
  })

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    return RecoveryResult(
      RecoveryOutcome.FALL_BACK_TO_RETRY,
      'retry_transient',
      f'{error.category.value} failure, retrying with backoff',
      retry_options=self.retry_options(error)
    )


class PreviewContainerStrategy(RecoveryStrategy):
  categories = frozenset({ErrorCategory.PREVIEW_CONTAINER_STARTUP})

  def __init__(self, sleep: SleepFn = asyncio.sleep, restart_delay: float = 5.0) -> None:
    self._sleep = sleep
    self.restart_delay = restart_delay

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    await self._sleep(self.restart_delay)
    return RecoveryResult(
      RecoveryOutcome.FALL_BACK_TO_RETRY,
      'restart_container',
      retry_options=self.retry_options(error)
    )

  def retry_options(self, error: AppError) -> RetryOptions:
    return RetryOptions(max_retries=2, base_delay=5.0, exponential_backoff=False, max_delay=10.0)


class SyntaxRegenerationStrategy(RecoveryStrategy):
  categories = frozenset({ErrorCategory.CONVERSION_SYNTAX})

  def __init__(self, max_attempts: int = 2) -> None:
    self.max_attempts = max_attempts

  async def attempt(self, error: AppError, context: RecoveryContext) -> RecoveryResult:
    if context.regenerate is None:
      return RecoveryResult(
        RecoveryOutcome.FALL_BACK_TO_RETRY,
        'retry_generation',
        retry_options=self.retry_options(error)
      )
    for attempt in range(1, self.max_attempts + 1):
      try:
        value = await context.regenerate(attempt)
      except Exception as exc:  # every strict attempt failing means give up
        logger.warning('Strict regeneration attempt %s/%s failed: %s', attempt, self.max_attempts, exc)
        continue
      return RecoveryResult(
        RecoveryOutcome.RETRIED_SUCCESSFULLY,
        'regenerate_with_syntax_focus',
        f'Regenerated in strict mode on attempt {attempt}',
        value=value
      )
    return RecoveryResult(RecoveryOutcome.GIVE_UP, 'regeneration_failed', 'Strict regeneration did not produce valid code')

  def retry_options(self, error: AppError) -> RetryOptions:
    return RetryOptions(max_retries=2, base_delay=1.0, exponential_backoff=False)


class CascadeGuard:
  """Sliding window of failures per category across all jobs."""

  def __init__(self, window: float = 60.0, threshold: int = 10, clock: Callable[[], float] = time.monotonic) -> None:
    self.window = window
    self.threshold = threshold
    self._clock = clock
    self._failures: Dict[ErrorCategory, Deque[float]] = {}

  def _drain(self, category: ErrorCategory) -> Deque[float]:
    entries = self._failures.setdefault(category, deque())
    cutoff = self._clock() - self.window
    while entries and entries[0] < cutoff:
      entries.popleft()
    return entries

  def record(self, category: ErrorCategory) -> None:
    if category in CLIENT_CATEGORIES:
      return
    self._drain(category).append(self._clock())

  def tripped(self, category: ErrorCategory) -> bool:
    if self.threshold <= 0:
      return False
    return len(self._drain(category)) >= self.threshold

  def snapshot(self) -> Dict[str, int]:
    return {category.value: len(self._drain(category)) for category in list(self._failures)}


class RecoveryStrategyRegistry:
  def __init__(
    self,
    strategies: Optional[Iterable[RecoveryStrategy]] = None,
    cascade_guard: Optional[CascadeGuard] = None
  ) -> None:
    self._strategies: Dict[ErrorCategory, RecoveryStrategy] = {}
    self.cascade_guard = cascade_guard
    for strategy in strategies or []:
      self.register(strategy)

  @classmethod
  def default(
    cls,
    sleep: SleepFn = asyncio.sleep,
    max_rate_limit_wait: float = 300.0,
    cascade_guard: Optional[CascadeGuard] = None
  ) -> 'RecoveryStrategyRegistry':
    return cls(
      [
        RateLimitStrategy(sleep=sleep, max_wait=max_rate_limit_wait),
        ContextLengthStrategy(),
        DatabaseReconnectStrategy(sleep=sleep),
        TransientStrategy(),
        PreviewContainerStrategy(sleep=sleep),
        SyntaxRegenerationStrategy()
      ],
      cascade_guard=cascade_guard
    )

  def register(self, strategy: RecoveryStrategy) -> None:
    for category in strategy.categories:
      self._strategies[category] = strategy

  def strategy_for(self, category: ErrorCategory) -> Optional[RecoveryStrategy]:
    return self._strategies.get(category)

  def retry_options(self, error: AppError) -> RetryOptions:
    strategy = self.strategy_for(error.category)
    if strategy is None:
      return RetryOptions.for_error(error)
    return strategy.retry_options(error)

  async def attempt(self, error: AppError, context: Optional[RecoveryContext] = None) -> RecoveryResult:
    context = context or RecoveryContext()
    if self.cascade_guard is not None:
      self.cascade_guard.record(error.category)
      if self.cascade_guard.tripped(error.category):
        logger.warning('Cascade guard open for %s, giving up without retry', error.category.value)
        return RecoveryResult(RecoveryOutcome.GIVE_UP, 'cascade_guard', 'Too many recent failures in this category')
    strategy = self.strategy_for(error.category)
    if strategy is None:
      return RecoveryResult(RecoveryOutcome.GIVE_UP, 'no_recovery', 'No recovery strategy for this error')
    try:
      result = await strategy.attempt(error, context)
    except asyncio.CancelledError:
      raise
    except Exception:
      logger.exception('Recovery strategy %s failed for %s', type(strategy).__name__, error.code)
      return RecoveryResult(RecoveryOutcome.GIVE_UP, 'recovery_failed', 'Error recovery process failed')
    logger.info('Recovery for %s: %s (%s)', error.code, result.outcome.value, result.action)
    return result


class ErrorRecoveryEngine:
  """Attempt, classify, local recovery, bounded retry; raises the classified AppError when all fail."""

  def __init__(
    self,
    classifier: Optional[ErrorClassifier] = None,
    registry: Optional[RecoveryStrategyRegistry] = None,
    retry: Optional[RetryExecutor] = None,
    max_delay: Optional[float] = None,
    jitter: bool = True,
    event_logger=None
  ) -> None:
    self.classifier = classifier or ErrorClassifier()
    self.registry = registry or RecoveryStrategyRegistry.default()
    self.retry = retry or RetryExecutor(self.classifier)
    self.max_delay = max_delay
    self.jitter = jitter
    self._event_logger = event_logger

  async def run(
    self,
    operation: Callable[[], Awaitable[T]],
    context: ErrorContext,
    recovery: Optional[RecoveryContext] = None,
    options: Optional[RetryOptions] = None,
    timeout: Optional[float] = None
  ) -> T:
    guarded = self._with_timeout(operation, timeout)
    try:
      return await guarded()
    except asyncio.CancelledError:
      raise
    except Exception as exc:  # classified and routed below
      error = self.classifier.classify(exc, context)

    if not error.retryable:
      raise error

    result = await self.registry.attempt(error, recovery)
    if result.outcome is RecoveryOutcome.RETRIED_SUCCESSFULLY:
      return result.value
    if result.outcome is RecoveryOutcome.GIVE_UP:
      if self._event_logger:
        self._event_logger.log_event(
          'recovery',
          f'Recovery gave up for {context.operation}',
          {'code': error.code, 'action': result.action, 'job_id': context.job_id}
        )
      raise error

    policy = options or result.retry_options or self.registry.retry_options(error)
    if self.max_delay is not None:
      policy = replace(policy, max_delay=min(policy.max_delay, self.max_delay))
    if not self.jitter:
      policy = replace(policy, jitter=False)
    # The failed first attempt counts against max_retries.
    if policy.max_retries < 1:
      raise error
    policy = replace(policy, max_retries=policy.max_retries - 1)
    return await self.retry.execute(guarded, policy, context)

  @staticmethod
  def _with_timeout(operation: Callable[[], Awaitable[T]], timeout: Optional[float]) -> Callable[[], Awaitable[T]]:
    if not timeout:
      return operation

    async def _bounded() -> T:
      return await asyncio.wait_for(operation(), timeout)

    return _bounded
