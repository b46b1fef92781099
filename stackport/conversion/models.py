from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class TaskType(Enum):
  ANALYSIS = 'analysis'
  PLANNING = 'planning'
  CODE_GENERATION = 'code_generation'
  DEPENDENCY_UPDATE = 'dependency_update'
  CONFIG_UPDATE = 'config_update'
  VALIDATION = 'validation'
  INTEGRATION = 'integration'


class AgentType(Enum):
  ANALYSIS = 'analysis'
  PLANNING = 'planning'
  CODE_GENERATION = 'code_generation'
  VALIDATION = 'validation'
  INTEGRATION = 'integration'


class TaskStatus(Enum):
  PENDING = 'pending'
  RUNNING = 'running'
  COMPLETED = 'completed'
  FAILED = 'failed'
  SKIPPED = 'skipped'


class ConversionStatus(Enum):
  PENDING = 'pending'
  RUNNING = 'running'
  PAUSED = 'paused'
  COMPLETED = 'completed'
  FAILED = 'failed'

  @property
  def terminal(self) -> bool:
    return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ConversionStatus.COMPLETED, ConversionStatus.FAILED})

# Tasks in these states satisfy a dependency edge.
TASK_DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


class Complexity(Enum):
  LOW = 'low'
  MEDIUM = 'medium'
  HIGH = 'high'


@dataclass(frozen=True)
class ConversionTask:
  id: str
  type: TaskType
  description: str
  agent_type: AgentType
  input_files: Tuple[str, ...] = ()
  output_files: Tuple[str, ...] = ()
  dependencies: FrozenSet[str] = frozenset()
  priority: int = 0
  status: TaskStatus = TaskStatus.PENDING
  estimated_duration: float = 0.0
  context: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'type': self.type.value,
      'description': self.description,
      'agent_type': self.agent_type.value,
      'input_files': list(self.input_files),
      'output_files': list(self.output_files),
      'dependencies': sorted(self.dependencies),
      'priority': self.priority,
      'status': self.status.value,
      'estimated_duration': self.estimated_duration,
      'context': self.context
    }

  @classmethod
  def from_dict(cls, payload: Dict[str, Any]) -> 'ConversionTask':
    return cls(
      id=payload['id'],
      type=TaskType(payload['type']),
      description=payload.get('description', ''),
      agent_type=AgentType(payload['agent_type']),
      input_files=tuple(payload.get('input_files') or ()),
      output_files=tuple(payload.get('output_files') or ()),
      dependencies=frozenset(payload.get('dependencies') or ()),
      priority=int(payload.get('priority', 0)),
      status=TaskStatus(payload.get('status', TaskStatus.PENDING.value)),
      estimated_duration=float(payload.get('estimated_duration', 0.0)),
      context=dict(payload.get('context') or {})
    )


@dataclass(frozen=True)
class ConversionPlan:
  """Tasks in insertion order; execution order comes from the dependency graph."""

  id: str
  project_id: str
  tasks: Tuple[ConversionTask, ...]
  estimated_duration: float = 0.0
  complexity: Complexity = Complexity.MEDIUM
  warnings: Tuple[str, ...] = ()
  feasible: bool = True
  created_at: float = field(default_factory=time.time)
  updated_at: float = field(default_factory=time.time)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'project_id': self.project_id,
      'tasks': [task.to_dict() for task in self.tasks],
      'estimated_duration': self.estimated_duration,
      'complexity': self.complexity.value,
      'warnings': list(self.warnings),
      'feasible': self.feasible,
      'created_at': self.created_at,
      'updated_at': self.updated_at
    }

  @classmethod
  def from_dict(cls, payload: Dict[str, Any]) -> 'ConversionPlan':
    now = time.time()
    return cls(
      id=payload['id'],
      project_id=payload['project_id'],
      tasks=tuple(ConversionTask.from_dict(entry) for entry in payload.get('tasks') or []),
      estimated_duration=float(payload.get('estimated_duration', 0.0)),
      complexity=Complexity(payload.get('complexity', Complexity.MEDIUM.value)),
      warnings=tuple(payload.get('warnings') or ()),
      feasible=bool(payload.get('feasible', True)),
      created_at=payload.get('created_at') or now,
      updated_at=payload.get('updated_at') or now
    )


@dataclass
class ConversionJob:
  id: str
  project_id: str
  plan: ConversionPlan
  status: ConversionStatus = ConversionStatus.PENDING
  progress: int = 0
  current_task: Optional[str] = None
  task_statuses: Dict[str, TaskStatus] = field(default_factory=dict)
  result: Optional[Dict[str, Any]] = None
  error_message: Optional[str] = None
  created_at: float = field(default_factory=time.time)
  started_at: Optional[float] = None
  completed_at: Optional[float] = None
  updated_at: float = field(default_factory=time.time)

  def task_status(self, task_id: str) -> TaskStatus:
    return self.task_statuses.get(task_id, TaskStatus.PENDING)

  @property
  def completed_task_count(self) -> int:
    return sum(1 for task in self.plan.tasks if self.task_status(task.id) in TASK_DONE_STATUSES)

  def to_dict(self, include_plan: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
      'id': self.id,
      'project_id': self.project_id,
      'plan_id': self.plan.id,
      'status': self.status.value,
      'progress': self.progress,
      'current_task': self.current_task,
      'task_statuses': {task_id: status.value for task_id, status in self.task_statuses.items()},
      'result': self.result,
      'error_message': self.error_message,
      'created_at': self.created_at,
      'started_at': self.started_at,
      'completed_at': self.completed_at,
      'updated_at': self.updated_at
    }
    if include_plan:
      payload['plan'] = self.plan.to_dict()
    return payload


@dataclass(frozen=True)
class JobProgressUpdate:
  job_id: str
  status: ConversionStatus
  progress: int
  message: str = ''
  task_id: Optional[str] = None
  timestamp: float = field(default_factory=time.time)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'job_id': self.job_id,
      'status': self.status.value,
      'progress': self.progress,
      'message': self.message,
      'task_id': self.task_id,
      'timestamp': self.timestamp
    }


class QueueItemState(Enum):
  WAITING = 'waiting'
  ACTIVE = 'active'
  COMPLETED = 'completed'
  FAILED = 'failed'
  DELAYED = 'delayed'
  PAUSED = 'paused'


IN_FLIGHT_STATES = (
  QueueItemState.WAITING,
  QueueItemState.ACTIVE,
  QueueItemState.DELAYED,
  QueueItemState.PAUSED
)


@dataclass
class QueueItem:
  """Transient dispatch record; carries enough to re-derive the task graph."""

  id: str
  job_id: str
  payload: Dict[str, Any]
  state: QueueItemState = QueueItemState.WAITING
  priority: int = 1
  attempts: int = 0
  worker_id: Optional[str] = None
  last_error: Optional[str] = None
  available_at: float = field(default_factory=time.time)
  created_at: float = field(default_factory=time.time)
  updated_at: float = field(default_factory=time.time)


@dataclass
class QueueStats:
  waiting: int = 0
  active: int = 0
  completed: int = 0
  failed: int = 0
  delayed: int = 0
  paused: int = 0

  def to_dict(self) -> Dict[str, int]:
    return {
      'waiting': self.waiting,
      'active': self.active,
      'completed': self.completed,
      'failed': self.failed,
      'delayed': self.delayed,
      'paused': self.paused
    }


@dataclass
class TaskResult:
  task_id: str
  success: bool = True
  output: Optional[str] = None
  files: List[Dict[str, Any]] = field(default_factory=list)
  summary: Optional[str] = None
  metadata: Dict[str, Any] = field(default_factory=dict)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'task_id': self.task_id,
      'success': self.success,
      'output': self.output,
      'files': self.files,
      'summary': self.summary,
      'metadata': self.metadata
    }
