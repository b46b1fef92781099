import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from stackport.api.utils import get_orchestrator, serialize_job
from stackport.conversion.models import (
  AgentType,
  Complexity,
  ConversionPlan,
  ConversionTask,
  TaskType
)
from stackport.conversion.orchestrator import ConversionOrchestrator

router = APIRouter(prefix='/conversion')


class TaskPayload(BaseModel):
  id: str = Field(..., min_length=1)
  type: TaskType
  description: str = Field(default='')
  agent_type: AgentType
  input_files: List[str] = Field(default_factory=list)
  output_files: List[str] = Field(default_factory=list)
  dependencies: List[str] = Field(default_factory=list)
  priority: int = Field(default=0)
  estimated_duration: float = Field(default=0.0, ge=0.0)
  context: Dict[str, Any] = Field(default_factory=dict)

  def to_task(self) -> ConversionTask:
    return ConversionTask(
      id=self.id,
      type=self.type,
      description=self.description,
      agent_type=self.agent_type,
      input_files=tuple(self.input_files),
      output_files=tuple(self.output_files),
      dependencies=frozenset(self.dependencies),
      priority=self.priority,
      estimated_duration=self.estimated_duration,
      context=dict(self.context)
    )


class PlanPayload(BaseModel):
  id: Optional[str] = Field(default=None, description='Plan identifier; generated when omitted.')
  project_id: str = Field(..., min_length=1)
  tasks: List[TaskPayload] = Field(default_factory=list)
  estimated_duration: float = Field(default=0.0, ge=0.0)
  complexity: Complexity = Field(default=Complexity.MEDIUM)
  warnings: List[str] = Field(default_factory=list)
  feasible: bool = Field(default=True)

  def to_plan(self) -> ConversionPlan:
    return ConversionPlan(
      id=self.id or uuid.uuid4().hex,
      project_id=self.project_id,
      tasks=tuple(task.to_task() for task in self.tasks),
      estimated_duration=self.estimated_duration,
      complexity=self.complexity,
      warnings=tuple(self.warnings),
      feasible=self.feasible
    )


class ConversionStartPayload(BaseModel):
  plan: PlanPayload
  user_id: Optional[str] = None


class ConversionControlPayload(BaseModel):
  job_id: str
  user_id: Optional[str] = None


@router.post('/start')
async def start_conversion(
  payload: ConversionStartPayload,
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  job = await orchestrator.start_conversion(payload.plan.to_plan(), payload.user_id)
  return {'job': serialize_job(job)}


@router.post('/pause')
async def pause_conversion(
  payload: ConversionControlPayload,
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  job = await orchestrator.pause_conversion(payload.job_id)
  return {'job': serialize_job(job)}


@router.post('/resume')
async def resume_conversion(
  payload: ConversionControlPayload,
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  job = await orchestrator.resume_conversion(payload.job_id, payload.user_id)
  return {'job': serialize_job(job)}


@router.get('/status/{job_id}')
async def conversion_status(
  job_id: str,
  include_plan: bool = Query(default=False),
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  job = await orchestrator.get_conversion(job_id)
  return {'status': job.status.value, 'job': serialize_job(job, include_plan=include_plan)}


@router.get('/jobs')
async def list_conversions(
  project_id: Optional[str] = Query(default=None),
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  jobs = await orchestrator.list_conversions(project_id)
  return {'jobs': [serialize_job(job) for job in jobs]}


@router.get('/queue/stats')
async def queue_stats(orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> Dict[str, int]:
  stats = await orchestrator.get_queue_stats()
  return stats.to_dict()


@router.get('/events')
async def recent_events(
  job_id: Optional[str] = Query(default=None),
  limit: int = Query(default=100, ge=1, le=1000),
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  return {'events': orchestrator.recent_events(limit, job_id=job_id)}


@router.delete('/{job_id}')
async def delete_conversion(
  job_id: str,
  orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
  await orchestrator.delete_conversion(job_id)
  return {'deleted': True, 'job_id': job_id}
