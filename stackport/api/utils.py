from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from stackport.conversion.error_messages import build_user_message
from stackport.conversion.errors import AppError, ErrorCategory
from stackport.conversion.models import ConversionJob
from stackport.conversion.orchestrator import ConversionOrchestrator

STATUS_BY_CATEGORY = {
  ErrorCategory.NOT_FOUND: 404,
  ErrorCategory.INVALID_TRANSITION: 409,
  ErrorCategory.VALIDATION: 400,
  ErrorCategory.GITHUB_RATE_LIMIT: 429,
  ErrorCategory.AI_API_RATE_LIMIT: 429
}


def get_orchestrator(request: Request) -> ConversionOrchestrator:
  return request.app.state.orchestrator


def status_for(error: AppError) -> int:
  status = STATUS_BY_CATEGORY.get(error.category)
  if status is not None:
    return status
  return 503 if error.retryable else 500


def error_payload(error: AppError) -> Dict[str, Any]:
  payload = error.public_payload()
  message = build_user_message(error)
  payload['suggestions'] = message.suggestions
  payload['actions'] = [action.to_dict() for action in message.actions]
  return payload


def error_response(error: AppError) -> JSONResponse:
  return JSONResponse(status_code=status_for(error), content=error_payload(error))


def serialize_job(job: ConversionJob, include_plan: bool = False) -> Dict[str, Any]:
  payload = job.to_dict(include_plan=include_plan)
  payload['completed_tasks'] = job.completed_task_count
  payload['total_tasks'] = len(job.plan.tasks)
  return payload
