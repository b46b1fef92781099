from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from stackport.conversion.errors import AppError, ErrorClassifier, ErrorContext

logger = logging.getLogger(__name__)

T = TypeVar('T')

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryOptions:
  max_retries: int = 3
  base_delay: float = 1.0
  exponential_backoff: bool = True
  max_delay: float = 30.0
  jitter: bool = True

  @classmethod
  def for_error(cls, error: AppError, max_delay: float = 30.0, jitter: bool = True) -> 'RetryOptions':
    return cls(
      max_retries=error.max_retries,
      base_delay=error.retry_delay,
      exponential_backoff=error.exponential_backoff,
      max_delay=max_delay,
      jitter=jitter
    )


@dataclass
class RetryResult(Generic[T]):
  value: Optional[T] = None
  error: Optional[AppError] = None
  attempts: int = 0
  elapsed: float = 0.0
  delays: List[float] = field(default_factory=list)

  @property
  def success(self) -> bool:
    return self.error is None


class RetryExecutor:
  """Bounded retry with exponential backoff; the sleep only blocks the operation being retried."""

  def __init__(
    self,
    classifier: Optional[ErrorClassifier] = None,
    sleep: Optional[SleepFn] = None,
    rng: Optional[random.Random] = None,
    clock: Callable[[], float] = time.monotonic
  ) -> None:
    self.classifier = classifier or ErrorClassifier()
    self._sleep = sleep or asyncio.sleep
    self._rng = rng or random.Random()
    self._clock = clock

  def compute_delay(self, attempt: int, options: RetryOptions) -> float:
    """Delay before retry number `attempt + 1` (attempt counts from zero)."""
    multiplier = 2 ** attempt if options.exponential_backoff else 1
    delay = min(options.max_delay, options.base_delay * multiplier)
    if options.jitter:
      delay *= self._rng.uniform(0.5, 1.5)
    return max(0.0, delay)

  async def execute(
    self,
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    context: Optional[ErrorContext] = None
  ) -> T:
    result = await self.execute_with_stats(operation, options, context)
    if result.error is not None:
      raise result.error
    return result.value  # type: ignore[return-value]

  async def execute_with_stats(
    self,
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    context: Optional[ErrorContext] = None
  ) -> RetryResult[T]:
    options = options or RetryOptions()
    context = context or ErrorContext()
    started = self._clock()
    result: RetryResult[T] = RetryResult()
    attempt = 0

    while True:
      result.attempts += 1
      try:
        result.value = await operation()
        result.error = None
        break
      except asyncio.CancelledError:
        raise
      except Exception as exc:  # classified below, re-raised by execute()
        error = self.classifier.classify(exc, context)
        result.error = error
        if not error.retryable or attempt >= options.max_retries:
          if error.retryable:
            logger.warning(
              'Operation %s failed after %s attempts: %s',
              context.operation,
              result.attempts,
              error.code
            )
          break
        delay = self.compute_delay(attempt, options)
        result.delays.append(delay)
        logger.info(
          'Retrying %s in %.2fs (attempt %s/%s, %s)',
          context.operation,
          delay,
          attempt + 1,
          options.max_retries,
          error.code
        )
        await self._sleep(delay)
        attempt += 1

    result.elapsed = self._clock() - started
    return result
