import asyncio
import sqlite3

import httpx
import pytest

from stackport.conversion.error_messages import build_suggestions, build_user_message, format_wait
from stackport.conversion.errors import (
  CATEGORY_PROFILES,
  AppError,
  ErrorCategory,
  ErrorClassifier,
  ErrorContext,
  ProviderError,
  invalid_transition,
  job_not_found,
  parse_retry_after,
  summarize_categories
)


@pytest.fixture
def classifier():
  return ErrorClassifier()


class TestErrorClassifier:
  """Raw failures become AppErrors with category, retry policy and user copy."""

  def test_connection_refused_message_is_retryable_network(self, classifier):
    error = classifier.classify(Exception('connect ECONNREFUSED 127.0.0.1:5432'))
    assert error.category is ErrorCategory.NETWORK
    assert error.retryable is True
    assert error.code == 'NETWORK_ERROR'

  def test_connection_refused_exception_type(self, classifier):
    error = classifier.classify(ConnectionRefusedError())
    assert error.category is ErrorCategory.NETWORK

  def test_github_429_is_github_rate_limit(self, classifier):
    exc = ProviderError('API rate limit exceeded', status_code=429, origin='github')
    error = classifier.classify(exc)
    assert error.category is ErrorCategory.GITHUB_RATE_LIMIT
    assert error.retryable is True

  def test_origin_falls_back_to_operation_prefix(self, classifier):
    error = classifier.classify(ProviderError('slow down', status_code=429), ErrorContext(operation='github.fetch_repo'))
    assert error.category is ErrorCategory.GITHUB_RATE_LIMIT

  def test_429_without_origin_is_ai_rate_limit(self, classifier):
    error = classifier.classify(ProviderError('slow down', status_code=429))
    assert error.category is ErrorCategory.AI_API_RATE_LIMIT

  def test_rate_limit_signals_land_in_metadata(self, classifier):
    exc = ProviderError('slow down', status_code=429, origin='github', retry_after=120)
    error = classifier.classify(exc)
    assert error.context.metadata['retry_after'] == 120.0

  def test_retry_after_http_date(self, classifier):
    request = httpx.Request('GET', 'https://api.github.com/repos/acme/app')
    response = httpx.Response(429, request=request, headers={'retry-after': 'Wed, 21 Oct 2015 07:28:00 GMT'})
    exc = httpx.HTTPStatusError('too many requests', request=request, response=response)
    error = classifier.classify(exc)
    assert error.category is ErrorCategory.GITHUB_RATE_LIMIT
    assert error.context.metadata['retry_after'] == 0.0

  def test_unparseable_rate_limit_headers_are_ignored(self, classifier):
    request = httpx.Request('POST', 'https://agents.example.com/tasks')
    response = httpx.Response(429, request=request, headers={'retry-after': 'soon', 'x-ratelimit-reset': 'later'})
    exc = httpx.HTTPStatusError('too many requests', request=request, response=response)
    error = classifier.classify(exc)
    assert error.category is ErrorCategory.AI_API_RATE_LIMIT
    assert 'retry_after' not in error.context.metadata
    assert 'rate_limit_reset' not in error.context.metadata

  def test_parse_retry_after(self):
    assert parse_retry_after('120') == 120.0
    assert parse_retry_after(2.5) == 2.5
    assert parse_retry_after('Wed, 21 Oct 2015 07:28:30 GMT', now=1445412480.0) == 30.0
    assert parse_retry_after('not a date') is None
    assert parse_retry_after(None) is None

  def test_connection_closed_is_network(self, classifier):
    error = classifier.classify(Exception('Connection closed by peer'))
    assert error.category is ErrorCategory.NETWORK

  def test_database_connection_message(self, classifier):
    error = classifier.classify(Exception('database connection lost'))
    assert error.category is ErrorCategory.DATABASE_CONNECTION

  def test_5xx_is_upstream_service(self, classifier):
    error = classifier.classify(ProviderError('bad gateway', status_code=503))
    assert error.category is ErrorCategory.UPSTREAM_SERVICE
    assert error.code == 'HTTP_503'

  def test_httpx_status_error(self, classifier):
    request = httpx.Request('POST', 'https://agents.example.com/tasks')
    response = httpx.Response(502, request=request)
    exc = httpx.HTTPStatusError('bad gateway', request=request, response=response)
    assert classifier.classify(exc).category is ErrorCategory.UPSTREAM_SERVICE

  def test_github_host_sets_origin(self, classifier):
    request = httpx.Request('GET', 'https://api.github.com/repos/acme/app')
    response = httpx.Response(401, request=request)
    exc = httpx.HTTPStatusError('unauthorized', request=request, response=response)
    error = classifier.classify(exc)
    assert error.category is ErrorCategory.GITHUB_AUTH
    assert error.retryable is False

  def test_timeout_from_ai_operation(self, classifier):
    error = classifier.classify(asyncio.TimeoutError(), ErrorContext(operation='ai.execute_task'))
    assert error.category is ErrorCategory.AI_TIMEOUT

  def test_timeout_elsewhere_is_network(self, classifier):
    error = classifier.classify(asyncio.TimeoutError(), ErrorContext(operation='conversion.pause'))
    assert error.category is ErrorCategory.NETWORK

  def test_locked_database(self, classifier):
    error = classifier.classify(sqlite3.OperationalError('database is locked'))
    assert error.category is ErrorCategory.DATABASE_CONNECTION
    assert error.retryable is True

  def test_missing_file_is_not_retried(self, classifier):
    error = classifier.classify(FileNotFoundError(2, 'No such file or directory'))
    assert error.category is ErrorCategory.FILE_SYSTEM
    assert error.code == 'FILE_NOT_FOUND'
    assert error.retryable is False

  def test_machine_code_context_length(self, classifier):
    error = classifier.classify(ProviderError('too long', code='context_length_exceeded', status_code=400))
    assert error.category is ErrorCategory.AI_CONTEXT_LENGTH

  def test_unclassified_failure_is_never_retried(self, classifier):
    error = classifier.classify(ValueError('the flux capacitor broke'))
    assert error.category is ErrorCategory.UNKNOWN
    assert error.retryable is False
    assert error.code == 'UNKNOWN_ERROR'

  def test_app_error_passes_through(self, classifier):
    original = job_not_found('abc')
    assert classifier.classify(original) is original

  def test_context_is_preserved(self, classifier):
    context = ErrorContext(operation='conversion.start', job_id='job-1', project_id='p-1')
    error = classifier.classify(ConnectionResetError(), context)
    assert error.context.job_id == 'job-1'
    assert error.context.project_id == 'p-1'

  def test_cause_is_kept(self, classifier):
    exc = sqlite3.OperationalError('unable to open database file')
    assert classifier.classify(exc).__cause__ is exc


class TestAppError:
  def test_every_category_has_a_profile(self):
    for category in ErrorCategory:
      assert CATEGORY_PROFILES[category].user_message

  def test_public_payload_hides_internals(self):
    error = ErrorClassifier().classify(Exception('ECONNREFUSED at /srv/app/db.py line 42'))
    payload = error.public_payload()
    assert set(payload) == {'code', 'message', 'userMessage', 'category', 'severity', 'retryable', 'suggestedActions'}
    assert '/srv/app/db.py' not in str(payload)
    assert '/srv/app/db.py' in error.to_log_dict()['technical_details']

  def test_invalid_transition_message(self):
    error = invalid_transition('start', 'abc', 'running')
    assert error.message == 'Cannot start job abc with status running'
    assert error.is_client_error
    assert error.code == 'INVALID_STATE_TRANSITION'

  def test_summarize_categories(self):
    errors = [job_not_found('a'), job_not_found('b'), AppError(ErrorCategory.NETWORK)]
    assert summarize_categories(errors) == {'not_found': 2, 'network': 1}


class TestUserMessages:
  def test_rate_limit_suggests_waiting(self):
    error = ErrorClassifier().classify(ProviderError('slow down', status_code=429, origin='github', retry_after=120))
    assert build_suggestions(error)[0] == 'Wait 2 minutes before trying again'

  def test_rate_limit_reset_timestamp(self):
    error = ErrorClassifier().classify(ProviderError('slow down', status_code=429, origin='github', rate_limit_reset=1030.0))
    assert build_suggestions(error, now=1000.0)[0] == 'Wait 30 seconds before trying again'

  def test_format_wait(self):
    assert format_wait(0.2) == '1 second'
    assert format_wait(45) == '45 seconds'
    assert format_wait(60) == '1 minute'
    assert format_wait(61) == '2 minutes'

  def test_critical_errors_mention_support(self):
    error = AppError(ErrorCategory.DATABASE_CONNECTION)
    message = build_user_message(error)
    assert message.title == 'Database connection failed'
    assert 'Contact support if the problem persists' in message.suggestions
    assert message.to_dict()['actions'][-1]['action'] == 'help'
