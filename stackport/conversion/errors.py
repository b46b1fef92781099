from __future__ import annotations

import asyncio
import errno
import sqlite3
import time
from dataclasses import dataclass, field, replace
from datetime import timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx


class ErrorCategory(Enum):
  GITHUB_AUTH = 'github_auth'
  GITHUB_API = 'github_api'
  GITHUB_RATE_LIMIT = 'github_rate_limit'
  REPOSITORY_ACCESS = 'repository_access'
  AI_API_RATE_LIMIT = 'ai_api_rate_limit'
  AI_CONTEXT_LENGTH = 'ai_context_length'
  AI_MODEL_FAILURE = 'ai_model_failure'
  AI_TIMEOUT = 'ai_timeout'
  UPSTREAM_SERVICE = 'upstream_service'
  CONVERSION_SYNTAX = 'conversion_syntax'
  CONVERSION_DEPENDENCY = 'conversion_dependency'
  PREVIEW_CONTAINER_STARTUP = 'preview_container_startup'
  PREVIEW_RESOURCE_EXHAUSTION = 'preview_resource_exhaustion'
  DATABASE_CONNECTION = 'database_connection'
  NETWORK = 'network'
  FILE_SYSTEM = 'file_system'
  VALIDATION = 'validation'
  NOT_FOUND = 'not_found'
  INVALID_TRANSITION = 'invalid_transition'
  UNKNOWN = 'unknown'


class ErrorSeverity(Enum):
  INFO = 'info'
  WARNING = 'warning'
  ERROR = 'error'
  CRITICAL = 'critical'


# Raised by the caller's own input or by a lost state race; never counted against upstream health.
CLIENT_CATEGORIES = frozenset({
  ErrorCategory.VALIDATION,
  ErrorCategory.NOT_FOUND,
  ErrorCategory.INVALID_TRANSITION
})


@dataclass(frozen=True)
class RecoveryAction:
  type: str  # retry, fallback, manual, skip, abort
  description: str
  automated: bool = False
  estimated_seconds: Optional[float] = None

  def to_dict(self) -> Dict[str, Any]:
    return {
      'type': self.type,
      'description': self.description,
      'automated': self.automated,
      'estimated_seconds': self.estimated_seconds
    }


@dataclass(frozen=True)
class CategoryProfile:
  title: str
  code: str
  severity: ErrorSeverity
  retryable: bool
  max_retries: int
  retry_delay: float
  exponential_backoff: bool
  user_message: str
  actions: Tuple[RecoveryAction, ...] = ()


_RETRY = RecoveryAction('retry', 'Retry the operation', automated=True)
_CONTACT = RecoveryAction('manual', 'Contact support for assistance')

CATEGORY_PROFILES: Dict[ErrorCategory, CategoryProfile] = {
  ErrorCategory.GITHUB_AUTH: CategoryProfile(
    'GitHub authentication failed', 'GITHUB_AUTH_FAILED', ErrorSeverity.ERROR, False, 0, 0.0, False,
    'Please reconnect your GitHub account to continue.',
    (RecoveryAction('manual', 'Reconnect GitHub account'),)
  ),
  ErrorCategory.GITHUB_API: CategoryProfile(
    'GitHub API error', 'GITHUB_API_ERROR', ErrorSeverity.WARNING, True, 3, 2.0, True,
    'There was an issue connecting to GitHub. Please try again.',
    (RecoveryAction('retry', 'Retry GitHub API call', automated=True),)
  ),
  ErrorCategory.GITHUB_RATE_LIMIT: CategoryProfile(
    'GitHub API rate limit exceeded', 'GITHUB_RATE_LIMIT_EXCEEDED', ErrorSeverity.WARNING, True, 3, 60.0, True,
    'GitHub API rate limit reached. Please wait a moment and try again.',
    (RecoveryAction('retry', 'Wait for rate limit reset', automated=True, estimated_seconds=3600.0),)
  ),
  ErrorCategory.REPOSITORY_ACCESS: CategoryProfile(
    'Repository access denied', 'REPOSITORY_ACCESS_DENIED', ErrorSeverity.ERROR, False, 0, 0.0, False,
    'Unable to access this repository. It may be private or you may not have permission.',
    (RecoveryAction('manual', 'Check repository permissions or make repository public'),)
  ),
  ErrorCategory.AI_API_RATE_LIMIT: CategoryProfile(
    'AI API rate limit exceeded', 'AI_RATE_LIMIT_EXCEEDED', ErrorSeverity.WARNING, True, 5, 30.0, True,
    'AI service is temporarily busy. Your request will be retried automatically.',
    (RecoveryAction('retry', 'Wait and retry AI request', automated=True, estimated_seconds=60.0),)
  ),
  ErrorCategory.AI_CONTEXT_LENGTH: CategoryProfile(
    'Input too large for AI processing', 'AI_CONTEXT_TOO_LONG', ErrorSeverity.ERROR, True, 2, 1.0, False,
    'The file is too large to process. Try breaking it into smaller files.',
    (RecoveryAction('fallback', 'Split file into smaller chunks', automated=True),)
  ),
  ErrorCategory.AI_MODEL_FAILURE: CategoryProfile(
    'AI model error', 'AI_MODEL_ERROR', ErrorSeverity.ERROR, True, 3, 2.0, True,
    'The AI service encountered an error. Please try again.',
    (RecoveryAction('retry', 'Retry AI request', automated=True),)
  ),
  ErrorCategory.AI_TIMEOUT: CategoryProfile(
    'AI request timed out', 'AI_REQUEST_TIMEOUT', ErrorSeverity.WARNING, True, 3, 5.0, True,
    'The AI service is taking longer than expected. Retrying...',
    (RecoveryAction('retry', 'Retry with longer timeout', automated=True),)
  ),
  ErrorCategory.UPSTREAM_SERVICE: CategoryProfile(
    'Upstream service error', 'UPSTREAM_SERVICE_ERROR', ErrorSeverity.ERROR, True, 3, 2.0, True,
    'An external service is having trouble. Please try again shortly.',
    (_RETRY,)
  ),
  ErrorCategory.CONVERSION_SYNTAX: CategoryProfile(
    'Generated code has syntax errors', 'CONVERSION_SYNTAX_ERROR', ErrorSeverity.ERROR, True, 2, 1.0, False,
    'The generated code had syntax problems. It will be regenerated automatically.',
    (RecoveryAction('retry', 'Regenerate code with a stricter prompt', automated=True),)
  ),
  ErrorCategory.CONVERSION_DEPENDENCY: CategoryProfile(
    'Dependency resolution failed', 'CONVERSION_DEPENDENCY_ERROR', ErrorSeverity.ERROR, False, 0, 0.0, False,
    'Some dependencies could not be mapped to the target stack.',
    (RecoveryAction('manual', 'Review the dependency list and adjust the plan'),)
  ),
  ErrorCategory.PREVIEW_CONTAINER_STARTUP: CategoryProfile(
    'Preview container failed to start', 'PREVIEW_CONTAINER_FAILED', ErrorSeverity.ERROR, True, 2, 5.0, False,
    'The preview environment failed to start. Retrying...',
    (RecoveryAction('retry', 'Restart the preview container', automated=True),)
  ),
  ErrorCategory.PREVIEW_RESOURCE_EXHAUSTION: CategoryProfile(
    'Preview resources exhausted', 'PREVIEW_RESOURCES_EXHAUSTED', ErrorSeverity.CRITICAL, False, 0, 0.0, False,
    'The preview environment ran out of resources.',
    (_CONTACT,)
  ),
  ErrorCategory.DATABASE_CONNECTION: CategoryProfile(
    'Database connection failed', 'DATABASE_CONNECTION_FAILED', ErrorSeverity.CRITICAL, True, 5, 5.0, True,
    'Unable to connect to the database. Please try again in a moment.',
    (RecoveryAction('retry', 'Retry database connection', automated=True),)
  ),
  ErrorCategory.NETWORK: CategoryProfile(
    'Network error', 'NETWORK_ERROR', ErrorSeverity.WARNING, True, 3, 2.0, True,
    'Network connection issue. Please check your connection and try again.',
    (RecoveryAction('retry', 'Retry network request', automated=True),)
  ),
  ErrorCategory.FILE_SYSTEM: CategoryProfile(
    'File system error', 'FILE_SYSTEM_ERROR', ErrorSeverity.WARNING, True, 3, 1.0, False,
    'A file system error occurred. Please try again.',
    (RecoveryAction('retry', 'Retry file operation', automated=True),)
  ),
  ErrorCategory.VALIDATION: CategoryProfile(
    'Validation error', 'VALIDATION_ERROR', ErrorSeverity.INFO, False, 0, 0.0, False,
    'Please check your input and try again.',
    (RecoveryAction('manual', 'Correct the input and retry'),)
  ),
  ErrorCategory.NOT_FOUND: CategoryProfile(
    'Conversion job not found', 'JOB_NOT_FOUND', ErrorSeverity.INFO, False, 0, 0.0, False,
    'The requested conversion could not be found.'
  ),
  ErrorCategory.INVALID_TRANSITION: CategoryProfile(
    'Invalid state transition', 'INVALID_STATE_TRANSITION', ErrorSeverity.WARNING, False, 0, 0.0, False,
    'This action is not available for the conversion in its current state.'
  ),
  ErrorCategory.UNKNOWN: CategoryProfile(
    'Unknown error', 'UNKNOWN_ERROR', ErrorSeverity.ERROR, False, 0, 0.0, False,
    'An unexpected error occurred. Please contact support if this persists.',
    (_CONTACT,)
  )
}

_missing = set(ErrorCategory) - set(CATEGORY_PROFILES)
if _missing:
  raise RuntimeError(f'Error categories without a profile: {sorted(c.name for c in _missing)}')


@dataclass(frozen=True)
class ErrorContext:
  operation: str = 'unknown'
  job_id: Optional[str] = None
  project_id: Optional[str] = None
  user_id: Optional[str] = None
  task_id: Optional[str] = None
  metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)
  timestamp: float = field(default_factory=time.time, compare=False)

  @property
  def origin(self) -> Optional[str]:
    """Upstream that produced the failure, from metadata or an `origin.operation` name."""
    explicit = self.metadata.get('origin')
    if explicit:
      return str(explicit).lower()
    if '.' in self.operation:
      return self.operation.split('.', 1)[0].lower()
    return None

  def with_metadata(self, **extra: Any) -> 'ErrorContext':
    merged = dict(self.metadata)
    merged.update(extra)
    return replace(self, metadata=merged)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'operation': self.operation,
      'job_id': self.job_id,
      'project_id': self.project_id,
      'user_id': self.user_id,
      'task_id': self.task_id,
      'metadata': dict(self.metadata),
      'timestamp': self.timestamp
    }


class AppError(Exception):
  """Classified failure; created where the failure happens and never mutated afterwards."""

  def __init__(
    self,
    category: ErrorCategory,
    message: Optional[str] = None,
    *,
    context: Optional[ErrorContext] = None,
    code: Optional[str] = None,
    user_message: Optional[str] = None,
    severity: Optional[ErrorSeverity] = None,
    retryable: Optional[bool] = None,
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    exponential_backoff: Optional[bool] = None,
    recovery_actions: Optional[Sequence[RecoveryAction]] = None,
    technical_details: Optional[str] = None,
    cause: Optional[BaseException] = None
  ) -> None:
    profile = CATEGORY_PROFILES[category]
    self.category = category
    self.message = message or profile.title
    self.context = context or ErrorContext()
    self.code = code or profile.code
    self.user_message = user_message or profile.user_message
    self.severity = severity or profile.severity
    self.retryable = profile.retryable if retryable is None else retryable
    self.max_retries = profile.max_retries if max_retries is None else max_retries
    self.retry_delay = profile.retry_delay if retry_delay is None else retry_delay
    self.exponential_backoff = profile.exponential_backoff if exponential_backoff is None else exponential_backoff
    self.recovery_actions: Tuple[RecoveryAction, ...] = tuple(
      profile.actions if recovery_actions is None else recovery_actions
    )
    self.technical_details = technical_details
    self.timestamp = time.time()
    super().__init__(self.message)
    if cause is not None:
      self.__cause__ = cause

  @property
  def is_client_error(self) -> bool:
    return self.category in CLIENT_CATEGORIES

  def public_payload(self) -> Dict[str, Any]:
    return {
      'code': self.code,
      'message': self.message,
      'userMessage': self.user_message,
      'category': self.category.value,
      'severity': self.severity.value,
      'retryable': self.retryable,
      'suggestedActions': [action.to_dict() for action in self.recovery_actions]
    }

  def to_log_dict(self) -> Dict[str, Any]:
    return {
      'category': self.category.value,
      'severity': self.severity.value,
      'code': self.code,
      'message': self.message,
      'user_message': self.user_message,
      'technical_details': self.technical_details,
      'retryable': self.retryable,
      'max_retries': self.max_retries,
      'retry_delay': self.retry_delay,
      'exponential_backoff': self.exponential_backoff,
      'recovery_actions': [action.to_dict() for action in self.recovery_actions],
      'context': self.context.to_dict(),
      'timestamp': self.timestamp
    }

  def __repr__(self) -> str:
    return f'AppError(category={self.category.name}, code={self.code!r}, message={self.message!r})'


class ProviderError(RuntimeError):
  """Typed failure raised by task executors and upstream API clients."""

  def __init__(
    self,
    message: str,
    *,
    status_code: Optional[int] = None,
    code: Optional[str] = None,
    origin: Optional[str] = None,
    retry_after: Optional[float] = None,
    rate_limit_reset: Optional[float] = None,
    rate_limit_remaining: Optional[int] = None
  ) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.code = code
    self.origin = origin
    self.retry_after = retry_after
    self.rate_limit_reset = rate_limit_reset
    self.rate_limit_remaining = rate_limit_remaining


def job_not_found(job_id: str, context: Optional[ErrorContext] = None) -> AppError:
  return AppError(
    ErrorCategory.NOT_FOUND,
    f'Conversion job {job_id} not found',
    context=context or ErrorContext(job_id=job_id)
  )


def invalid_transition(action: str, job_id: str, status: Any, context: Optional[ErrorContext] = None) -> AppError:
  label = getattr(status, 'value', status)
  return AppError(
    ErrorCategory.INVALID_TRANSITION,
    f'Cannot {action} job {job_id} with status {label}',
    context=context or ErrorContext(operation=action, job_id=job_id),
    user_message=f'This conversion cannot be {_past_tense(action)} while it is {label}.'
  )


def validation_error(message: str, context: Optional[ErrorContext] = None, code: str = 'PLAN_VALIDATION_FAILED') -> AppError:
  return AppError(
    ErrorCategory.VALIDATION,
    message,
    context=context,
    code=code,
    user_message=f'The conversion plan is not valid: {message}'
  )


def _past_tense(action: str) -> str:
  irregular = {'stop': 'stopped'}
  if action in irregular:
    return irregular[action]
  return f'{action}d' if action.endswith('e') else f'{action}ed'


_TIMEOUT_CODES = frozenset({'ETIMEDOUT', 'ESOCKETTIMEDOUT', 'REQUEST_TIMEOUT'})


class ErrorClassifier:
  """Maps a raw failure plus its operation context to an AppError.

  Order: already-classified passthrough, machine-readable codes and exception types, HTTP status
  signals, message substrings, then a non-retryable UNKNOWN. Unclassified failures are never
  retried.
  """

  CODE_CATEGORIES: Dict[str, ErrorCategory] = {
    'ECONNREFUSED': ErrorCategory.NETWORK,
    'ECONNRESET': ErrorCategory.NETWORK,
    'ECONNABORTED': ErrorCategory.NETWORK,
    'ENOTFOUND': ErrorCategory.NETWORK,
    'EHOSTUNREACH': ErrorCategory.NETWORK,
    'ENETUNREACH': ErrorCategory.NETWORK,
    'EPIPE': ErrorCategory.NETWORK,
    'EAI_AGAIN': ErrorCategory.NETWORK,
    'ENOENT': ErrorCategory.FILE_SYSTEM,
    'EACCES': ErrorCategory.FILE_SYSTEM,
    'EPERM': ErrorCategory.FILE_SYSTEM,
    'ENOSPC': ErrorCategory.FILE_SYSTEM,
    'EMFILE': ErrorCategory.FILE_SYSTEM,
    'context_length_exceeded': ErrorCategory.AI_CONTEXT_LENGTH,
    'model_not_found': ErrorCategory.AI_MODEL_FAILURE,
    'invalid_response': ErrorCategory.AI_MODEL_FAILURE,
    'server_error': ErrorCategory.UPSTREAM_SERVICE,
    'service_unavailable': ErrorCategory.UPSTREAM_SERVICE,
    'bad_credentials': ErrorCategory.GITHUB_AUTH,
    'repository_not_found': ErrorCategory.REPOSITORY_ACCESS,
    'syntax_error': ErrorCategory.CONVERSION_SYNTAX,
    'dependency_unresolved': ErrorCategory.CONVERSION_DEPENDENCY,
    'container_start_failed': ErrorCategory.PREVIEW_CONTAINER_STARTUP,
    'resource_exhausted': ErrorCategory.PREVIEW_RESOURCE_EXHAUSTION
  }
  RATE_LIMIT_CODES = frozenset({'rate_limit_exceeded', 'insufficient_quota', 'secondary_rate_limit', 'too_many_requests'})
  NON_RETRYABLE_FS_CODES = frozenset({'ENOENT', 'EACCES', 'EPERM'})

  MESSAGE_PATTERNS: Tuple[Tuple[Tuple[str, ...], Optional[ErrorCategory]], ...] = (
    (('econnrefused', 'econnreset', 'enotfound', 'connection refused', 'connection reset', 'network is unreachable'), ErrorCategory.NETWORK),
    (('rate limit', 'too many requests', 'quota exceeded'), None),
    (('context length', 'token limit', 'maximum context'), ErrorCategory.AI_CONTEXT_LENGTH),
    (('timeout', 'timed out'), None),
    (('syntax error', 'syntaxerror', 'unexpected token'), ErrorCategory.CONVERSION_SYNTAX),
    (('could not resolve dependency', 'dependency conflict', 'unresolved dependency'), ErrorCategory.CONVERSION_DEPENDENCY),
    (('container failed to start', 'container startup', 'container exited'), ErrorCategory.PREVIEW_CONTAINER_STARTUP),
    (('out of memory', 'resource exhausted', 'oomkilled'), ErrorCategory.PREVIEW_RESOURCE_EXHAUSTION),
    (('database', 'sqlite', 'postgres', 'connection pool'), ErrorCategory.DATABASE_CONNECTION),
    (('enoent', 'no such file', 'eacces', 'permission denied'), ErrorCategory.FILE_SYSTEM),
    (('validation', 'invalid'), ErrorCategory.VALIDATION),
    (('network', 'connection'), ErrorCategory.NETWORK)
  )

  def classify(self, exc: BaseException, context: Optional[ErrorContext] = None) -> AppError:
    if isinstance(exc, AppError):
      return exc
    context = context or ErrorContext()
    details = f'{type(exc).__name__}: {exc}'

    classified = self._from_machine_code(exc, context, details)
    if classified is None:
      classified = self._from_status(exc, context, details)
    if classified is None:
      classified = self._from_message(exc, context, details)
    if classified is None:
      classified = AppError(ErrorCategory.UNKNOWN, context=context, technical_details=details, cause=exc)
    return classified

  def _from_machine_code(self, exc: BaseException, context: ErrorContext, details: str) -> Optional[AppError]:
    code = self._machine_code(exc)
    if code:
      if code in _TIMEOUT_CODES:
        return self._build(self._timeout_category(context), exc, context, details, code=code)
      if code.lower() in self.RATE_LIMIT_CODES:
        return self._rate_limited(exc, context, details, code=code.upper())
      category = self.CODE_CATEGORIES.get(code) or self.CODE_CATEGORIES.get(code.lower())
      if category is ErrorCategory.FILE_SYSTEM and code in self.NON_RETRYABLE_FS_CODES:
        return self._build(category, exc, context, details, code='FILE_NOT_FOUND' if code == 'ENOENT' else 'FILE_ACCESS_DENIED', retryable=False, max_retries=0)
      if category is not None:
        return self._build(category, exc, context, details, code=code.upper())

    if isinstance(exc, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
      return self._build(self._timeout_category(context), exc, context, details)
    if isinstance(exc, (httpx.NetworkError, ConnectionError)):
      return self._build(ErrorCategory.NETWORK, exc, context, details)
    if isinstance(exc, (sqlite3.OperationalError, sqlite3.InterfaceError)):
      return self._build(ErrorCategory.DATABASE_CONNECTION, exc, context, details)
    if isinstance(exc, sqlite3.DatabaseError):
      return self._build(ErrorCategory.DATABASE_CONNECTION, exc, context, details, code='DATABASE_ERROR', max_retries=3, retry_delay=1.0)
    if isinstance(exc, FileNotFoundError):
      return self._build(ErrorCategory.FILE_SYSTEM, exc, context, details, code='FILE_NOT_FOUND', retryable=False, max_retries=0)
    if isinstance(exc, PermissionError):
      return self._build(ErrorCategory.FILE_SYSTEM, exc, context, details, code='FILE_ACCESS_DENIED', retryable=False, max_retries=0)
    if isinstance(exc, SyntaxError):
      return self._build(ErrorCategory.CONVERSION_SYNTAX, exc, context, details)
    if isinstance(exc, OSError) and exc.errno is not None:
      return self._build(ErrorCategory.FILE_SYSTEM, exc, context, details)
    return None

  def _from_status(self, exc: BaseException, context: ErrorContext, details: str) -> Optional[AppError]:
    status = self._status_code(exc)
    if status is None:
      return None
    origin = self._origin(exc, context)
    if status == 429:
      return self._rate_limited(exc, context, details)
    if origin == 'github':
      if status == 401:
        return self._build(ErrorCategory.GITHUB_AUTH, exc, context, details)
      if status == 403:
        if self._rate_limit_remaining(exc) == 0:
          return self._rate_limited(exc, context, details)
        return self._build(ErrorCategory.REPOSITORY_ACCESS, exc, context, details)
      if status == 404:
        return self._build(
          ErrorCategory.REPOSITORY_ACCESS, exc, context, details,
          code='REPOSITORY_NOT_FOUND',
          user_message='The specified repository could not be found. Please check the URL and try again.'
        )
    if status in (408, 504):
      return self._build(self._timeout_category(context, origin), exc, context, details, code=f'HTTP_{status}')
    if status == 413 and origin == 'ai':
      return self._build(ErrorCategory.AI_CONTEXT_LENGTH, exc, context, details)
    if status >= 500:
      return self._build(ErrorCategory.UPSTREAM_SERVICE, exc, context, details, code=f'HTTP_{status}')
    if status in (401, 403) and origin == 'ai':
      return self._build(ErrorCategory.AI_MODEL_FAILURE, exc, context, details, code='AI_AUTH_FAILED', retryable=False, max_retries=0)
    return None

  def _from_message(self, exc: BaseException, context: ErrorContext, details: str) -> Optional[AppError]:
    message = str(exc).lower()
    if not message:
      return None
    for needles, category in self.MESSAGE_PATTERNS:
      if not any(needle in message for needle in needles):
        continue
      if 'rate limit' in needles:
        return self._rate_limited(exc, context, details)
      if 'timeout' in needles:
        return self._build(self._timeout_category(context), exc, context, details)
      return self._build(category, exc, context, details)
    return None

  def _rate_limited(self, exc: BaseException, context: ErrorContext, details: str, code: Optional[str] = None) -> AppError:
    category = ErrorCategory.GITHUB_RATE_LIMIT if self._origin(exc, context) == 'github' else ErrorCategory.AI_API_RATE_LIMIT
    signals: Dict[str, Any] = {}
    retry_after = parse_retry_after(getattr(exc, 'retry_after', None) or self._header(exc, 'retry-after'))
    reset = parse_seconds(getattr(exc, 'rate_limit_reset', None) or self._header(exc, 'x-ratelimit-reset'))
    if retry_after is not None:
      signals['retry_after'] = retry_after
    if reset is not None:
      signals['rate_limit_reset'] = reset
    if signals:
      context = context.with_metadata(**signals)
    return self._build(category, exc, context, details, code=code)

  def _build(self, category: ErrorCategory, exc: BaseException, context: ErrorContext, details: str, **overrides: Any) -> AppError:
    return AppError(category, context=context, technical_details=details, cause=exc, **overrides)

  def _timeout_category(self, context: ErrorContext, origin: Optional[str] = None) -> ErrorCategory:
    return ErrorCategory.AI_TIMEOUT if (origin or context.origin) == 'ai' else ErrorCategory.NETWORK

  def _origin(self, exc: BaseException, context: ErrorContext) -> Optional[str]:
    origin = getattr(exc, 'origin', None)
    if origin:
      return str(origin).lower()
    if isinstance(exc, httpx.HTTPStatusError) and 'github' in exc.request.url.host:
      return 'github'
    return context.origin

  @staticmethod
  def _machine_code(exc: BaseException) -> Optional[str]:
    code = getattr(exc, 'code', None)
    if isinstance(code, str) and code:
      return code
    if isinstance(exc, OSError) and exc.errno is not None:
      return errno.errorcode.get(exc.errno)
    return None

  @staticmethod
  def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
      return exc.response.status_code
    for attribute in ('status_code', 'status'):
      value = getattr(exc, attribute, None)
      if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None

  @staticmethod
  def _header(exc: BaseException, name: str) -> Optional[str]:
    if isinstance(exc, httpx.HTTPStatusError):
      return exc.response.headers.get(name)
    return None

  def _rate_limit_remaining(self, exc: BaseException) -> Optional[int]:
    remaining = getattr(exc, 'rate_limit_remaining', None)
    if remaining is None:
      remaining = self._header(exc, 'x-ratelimit-remaining')
    try:
      return int(remaining) if remaining is not None else None
    except (TypeError, ValueError):
      return None


def parse_seconds(value: Any) -> Optional[float]:
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, (int, float)):
    return float(value)
  text = str(value).strip()
  if text.replace('.', '', 1).isdigit():
    return float(text)
  return None


def parse_retry_after(value: Any, now: Optional[float] = None) -> Optional[float]:
  """Retry-After is either delta seconds or an HTTP-date; anything else is ignored."""
  seconds = parse_seconds(value)
  if seconds is not None or value is None:
    return seconds
  try:
    moment = parsedate_to_datetime(str(value).strip())
  except (TypeError, ValueError, IndexError):
    return None
  if moment is None:
    return None
  if moment.tzinfo is None:
    moment = moment.replace(tzinfo=timezone.utc)
  current = time.time() if now is None else now
  return max(0.0, moment.timestamp() - current)


def summarize_categories(errors: List[AppError]) -> Dict[str, int]:
  counts: Dict[str, int] = {}
  for error in errors:
    counts[error.category.value] = counts.get(error.category.value, 0) + 1
  return counts
