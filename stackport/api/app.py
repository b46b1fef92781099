import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stackport.api.routes import conversion, system
from stackport.api.utils import error_response
from stackport.config import Settings, settings
from stackport.conversion.errors import AppError
from stackport.conversion.orchestrator import ConversionOrchestrator
from stackport.resources.monitor import ResourceMonitor, Thresholds

logger = logging.getLogger(__name__)


def create_app(
  orchestrator: Optional[ConversionOrchestrator] = None,
  config: Optional[Settings] = None,
  resource_monitor: Optional[ResourceMonitor] = None
) -> FastAPI:
  config = config or settings
  logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

  app = FastAPI(
    title='Stackport Conversion Orchestrator',
    version='0.1.0',
    description='Tracks conversion jobs, dispatches their tasks and recovers from upstream failures.'
  )
  app.state.orchestrator = orchestrator or ConversionOrchestrator.from_settings(config)
  app.state.resources = resource_monitor or ResourceMonitor(
    Thresholds(cpu_percent=config.max_cpu_percent, memory_percent=config.max_memory_percent)
  )
  app.state.config = config

  app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
  )

  @app.exception_handler(AppError)
  async def app_error_handler(request: Request, exc: AppError):
    return error_response(exc)

  @app.exception_handler(Exception)
  async def global_exception_handler(request: Request, exc: Exception):
    logger.error('Unhandled exception on %s: %s', request.url.path, exc, exc_info=True)
    return JSONResponse(
      status_code=500,
      content={
        'code': 'INTERNAL_ERROR',
        'message': 'Internal Server Error',
        'userMessage': 'An unexpected error occurred. Please contact support if this persists.'
      }
    )

  app.include_router(system.router, tags=['System'])
  app.include_router(conversion.router, tags=['Conversion'])

  @app.on_event('startup')
  async def startup_event() -> None:
    orchestrator_ = app.state.orchestrator
    await orchestrator_.reconcile()
    orchestrator_.start_worker()
    logger.info('Orchestrator started on %s:%s', config.backend_host, config.backend_port)

  @app.on_event('shutdown')
  async def shutdown_event() -> None:
    await app.state.orchestrator.shutdown()

  return app
