from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stackport.conversion.errors import CATEGORY_PROFILES, AppError, ErrorCategory, RecoveryAction


SUGGESTIONS: Dict[ErrorCategory, List[str]] = {
  ErrorCategory.GITHUB_AUTH: [
    'Make sure you have a valid GitHub account',
    'Check that your GitHub token has the necessary permissions',
    'Try disconnecting and reconnecting your GitHub account'
  ],
  ErrorCategory.GITHUB_RATE_LIMIT: [
    'GitHub rate limits typically reset every hour'
  ],
  ErrorCategory.REPOSITORY_ACCESS: [
    'Verify the repository URL is correct',
    'Check whether the repository is public or that you have access'
  ],
  ErrorCategory.AI_API_RATE_LIMIT: [
    'Your request will be retried automatically',
    'Consider breaking large files into smaller pieces'
  ],
  ErrorCategory.AI_CONTEXT_LENGTH: [
    'Try splitting large files into smaller components',
    'Remove unnecessary comments or code before conversion'
  ],
  ErrorCategory.CONVERSION_SYNTAX: [
    'This is usually resolved by regenerating the code',
    'Check whether the source code has any unusual patterns'
  ],
  ErrorCategory.CONVERSION_DEPENDENCY: [
    'Review the dependencies listed in the conversion plan'
  ],
  ErrorCategory.PREVIEW_CONTAINER_STARTUP: [
    'This might be due to missing dependencies',
    'Try restarting the preview'
  ],
  ErrorCategory.DATABASE_CONNECTION: [
    'The system will retry the connection automatically'
  ],
  ErrorCategory.NETWORK: [
    'Check your internet connection',
    'The issue might be temporary, retry now'
  ],
  ErrorCategory.VALIDATION: [
    'Correct the highlighted input and submit again'
  ],
  ErrorCategory.NOT_FOUND: [
    'The conversion may have been deleted; refresh the job list'
  ],
  ErrorCategory.INVALID_TRANSITION: [
    'Refresh the conversion status before trying again'
  ]
}

DEFAULT_SUGGESTIONS = [
  'Retry the operation',
  'Contact support if the problem persists'
]


@dataclass
class UserAction:
  label: str
  type: str  # button, link, retry
  action: str
  primary: bool = False
  disabled: bool = False
  estimated_time: Optional[str] = None

  def to_dict(self) -> Dict[str, Any]:
    return {
      'label': self.label,
      'type': self.type,
      'action': self.action,
      'primary': self.primary,
      'disabled': self.disabled,
      'estimatedTime': self.estimated_time
    }


@dataclass
class UserErrorMessage:
  title: str
  description: str
  severity: str
  suggestions: List[str] = field(default_factory=list)
  actions: List[UserAction] = field(default_factory=list)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'title': self.title,
      'description': self.description,
      'severity': self.severity,
      'suggestions': list(self.suggestions),
      'actions': [action.to_dict() for action in self.actions]
    }


def format_wait(seconds: float) -> str:
  if seconds < 60:
    whole = max(1, int(math.ceil(seconds)))
    return '1 second' if whole == 1 else f'{whole} seconds'
  minutes = int(math.ceil(seconds / 60))
  return '1 minute' if minutes == 1 else f'{minutes} minutes'


def wait_seconds(error: AppError, now: Optional[float] = None) -> Optional[float]:
  """Seconds until a rate-limited upstream is expected to accept requests again."""
  metadata = error.context.metadata
  retry_after = metadata.get('retry_after')
  if retry_after is not None:
    return max(0.0, float(retry_after))
  reset = metadata.get('rate_limit_reset')
  if reset is not None:
    return max(0.0, float(reset) - (now if now is not None else time.time()))
  return None


def build_suggestions(error: AppError, now: Optional[float] = None) -> List[str]:
  suggestions: List[str] = []
  if error.category in (ErrorCategory.GITHUB_RATE_LIMIT, ErrorCategory.AI_API_RATE_LIMIT):
    wait = wait_seconds(error, now)
    if wait is None:
      wait = error.retry_delay
    suggestions.append(f'Wait {format_wait(wait)} before trying again')
  suggestions.extend(SUGGESTIONS.get(error.category, DEFAULT_SUGGESTIONS))
  if error.severity.value == 'critical' and 'Contact support if the problem persists' not in suggestions:
    suggestions.append('Contact support if the problem persists')
  return suggestions


def build_actions(recovery_actions: List[RecoveryAction]) -> List[UserAction]:
  actions: List[UserAction] = []
  for recovery in recovery_actions:
    if recovery.type == 'retry':
      actions.append(UserAction(
        label='Retrying...' if recovery.automated else 'Retry now',
        type='retry',
        action='retry',
        primary=True,
        disabled=recovery.automated,
        estimated_time=format_wait(recovery.estimated_seconds) if recovery.estimated_seconds else None
      ))
    elif recovery.type == 'manual':
      actions.append(UserAction(label=recovery.description, type='button', action='manual_action'))
    elif recovery.type == 'fallback':
      actions.append(UserAction(label='Try alternative approach', type='button', action='fallback'))
    elif recovery.type == 'skip':
      actions.append(UserAction(label='Skip this step', type='button', action='skip'))
  actions.append(UserAction(label='Get help', type='link', action='help'))
  return actions


def build_user_message(error: AppError, now: Optional[float] = None) -> UserErrorMessage:
  title = CATEGORY_PROFILES[error.category].title
  return UserErrorMessage(
    title=title,
    description=error.user_message,
    severity=error.severity.value,
    suggestions=build_suggestions(error, now),
    actions=build_actions(list(error.recovery_actions))
  )
