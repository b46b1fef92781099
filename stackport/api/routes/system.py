import logging
import platform
import sys
from typing import Any, Dict

from fastapi import APIRouter, Request

from stackport.conversion.errors import AppError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get('/health')
async def health(request: Request) -> Dict[str, Any]:
  orchestrator = request.app.state.orchestrator
  payload: Dict[str, Any] = {
    'status': 'ok',
    'worker': bool(orchestrator.worker and orchestrator.worker.running),
    'resources': request.app.state.resources.snapshot(minimal=True)
  }
  try:
    payload['queue'] = (await orchestrator.get_queue_stats()).to_dict()
  except AppError as error:
    logger.warning('Queue stats unavailable for health check: %s', error.code)
    payload['status'] = 'degraded'
    payload['queue'] = None
  return payload


@router.get('/resources')
async def resource_snapshot(request: Request) -> Dict[str, Any]:
  return request.app.state.resources.snapshot()


@router.get('/system/info')
async def system_info() -> Dict[str, Any]:
  return {
    'os': platform.system(),
    'os_release': platform.release(),
    'machine': platform.machine(),
    'python_version': sys.version,
    'platform': platform.platform()
  }
