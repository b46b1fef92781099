import random

import httpx
import pytest

from stackport.conversion.errors import AppError, ErrorCategory, ProviderError
from stackport.conversion.retry import RetryExecutor, RetryOptions


def flaky(failures, value='ok'):
  """Operation that raises each of `failures` in turn, then returns `value`."""
  pending = list(failures)
  calls = []

  async def operation():
    calls.append(len(calls) + 1)
    if pending:
      raise pending.pop(0)
    return value

  return operation, calls


class TestRetryExecutor:
  """Bounded retry: 1 + max_retries attempts, backoff capped at max_delay."""

  @pytest.mark.asyncio
  async def test_exhausts_retries_with_exponential_delays(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, calls = flaky([ProviderError('upstream down', status_code=503)] * 10)
    options = RetryOptions(max_retries=3, base_delay=1.0, exponential_backoff=True, jitter=False)

    with pytest.raises(AppError) as excinfo:
      await executor.execute(operation, options)

    assert excinfo.value.category is ErrorCategory.UPSTREAM_SERVICE
    assert len(calls) == 4
    assert sleeper.delays == [1.0, 2.0, 4.0]

  @pytest.mark.asyncio
  async def test_returns_value_after_transient_failures(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, calls = flaky([ConnectionResetError(), ConnectionResetError()], value=42)

    result = await executor.execute_with_stats(operation, RetryOptions(jitter=False))

    assert result.success
    assert result.value == 42
    assert result.attempts == 3
    assert result.delays == [1.0, 2.0]

  @pytest.mark.asyncio
  async def test_non_retryable_error_fails_once(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, calls = flaky([ValueError('the flux capacitor broke')])

    result = await executor.execute_with_stats(operation, RetryOptions(max_retries=5))

    assert not result.success
    assert result.error.category is ErrorCategory.UNKNOWN
    assert len(calls) == 1
    assert sleeper.delays == []

  @pytest.mark.asyncio
  async def test_delay_is_capped(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, _ = flaky([ConnectionResetError()] * 10)
    options = RetryOptions(max_retries=3, base_delay=10.0, max_delay=15.0, jitter=False)

    with pytest.raises(AppError):
      await executor.execute(operation, options)

    assert sleeper.delays == [10.0, 15.0, 15.0]

  @pytest.mark.asyncio
  async def test_constant_delay_without_backoff(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, _ = flaky([ConnectionResetError()] * 10)
    options = RetryOptions(max_retries=2, base_delay=3.0, exponential_backoff=False, jitter=False)

    with pytest.raises(AppError):
      await executor.execute(operation, options)

    assert sleeper.delays == [3.0, 3.0]

  @pytest.mark.asyncio
  async def test_zero_retries_means_single_attempt(self, sleeper):
    executor = RetryExecutor(sleep=sleeper)
    operation, calls = flaky([ConnectionResetError()])

    with pytest.raises(AppError):
      await executor.execute(operation, RetryOptions(max_retries=0))

    assert len(calls) == 1

  @pytest.mark.asyncio
  async def test_rate_limit_with_http_date_is_classified(self, sleeper):
    request = httpx.Request('GET', 'https://api.github.com/repos/acme/app')
    response = httpx.Response(429, request=request, headers={'retry-after': 'Wed, 21 Oct 2015 07:28:00 GMT'})
    executor = RetryExecutor(sleep=sleeper)
    operation, calls = flaky([httpx.HTTPStatusError('too many requests', request=request, response=response)] * 3)

    with pytest.raises(AppError) as excinfo:
      await executor.execute(operation, RetryOptions(max_retries=1, jitter=False))

    assert excinfo.value.category is ErrorCategory.GITHUB_RATE_LIMIT
    assert len(calls) == 2

  @pytest.mark.asyncio
  async def test_elapsed_uses_clock(self, sleeper):
    ticks = iter([100.0, 107.5])
    executor = RetryExecutor(sleep=sleeper, clock=lambda: next(ticks))
    operation, _ = flaky([])

    result = await executor.execute_with_stats(operation)

    assert result.elapsed == 7.5

  def test_jitter_stays_within_half_and_one_and_a_half(self):
    executor = RetryExecutor(rng=random.Random(7))
    options = RetryOptions(base_delay=2.0, max_delay=100.0, jitter=True)
    for attempt in range(5):
      base = 2.0 * 2 ** attempt
      delay = executor.compute_delay(attempt, options)
      assert base * 0.5 <= delay <= base * 1.5

  def test_options_from_error_profile(self):
    error = AppError(ErrorCategory.DATABASE_CONNECTION)
    options = RetryOptions.for_error(error, max_delay=10.0, jitter=False)
    assert options.max_retries == 5
    assert options.base_delay == 5.0
    assert options.max_delay == 10.0
