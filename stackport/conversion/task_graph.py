from __future__ import annotations

import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from stackport.conversion.errors import ErrorContext, validation_error
from stackport.conversion.models import ConversionPlan, ConversionTask


def validate_plan(plan: ConversionPlan) -> None:
  """Reject plans that cannot become a job: infeasible, duplicate ids, dangling edges, cycles."""
  context = ErrorContext(operation='plan.validate', project_id=plan.project_id, metadata={'plan_id': plan.id})
  if not plan.feasible:
    reason = '; '.join(plan.warnings) if plan.warnings else 'plan marked as not feasible'
    raise validation_error(f'Plan {plan.id} is not feasible: {reason}', context, code='PLAN_NOT_FEASIBLE')
  if not plan.tasks:
    raise validation_error(f'Plan {plan.id} has no tasks', context)

  seen: Set[str] = set()
  for task in plan.tasks:
    if task.id in seen:
      raise validation_error(f'Duplicate task id {task.id}', context)
    seen.add(task.id)

  for task in plan.tasks:
    unknown = sorted(dep for dep in task.dependencies if dep not in seen)
    if unknown:
      raise validation_error(f'Task {task.id} depends on unknown tasks: {", ".join(unknown)}', context)
    if task.id in task.dependencies:
      raise validation_error(f'Task {task.id} depends on itself', context)

  cycle = find_cycle(plan.tasks)
  if cycle:
    raise validation_error(f'Dependency cycle detected: {" -> ".join(cycle)}', context, code='PLAN_DEPENDENCY_CYCLE')


def find_cycle(tasks: Iterable[ConversionTask]) -> Optional[List[str]]:
  """Iterative DFS; returns the first cycle found as a closed path of task ids."""
  graph: Dict[str, List[str]] = {task.id: sorted(task.dependencies) for task in tasks}
  visiting: Set[str] = set()
  visited: Set[str] = set()

  for root in graph:
    if root in visited:
      continue
    path: List[str] = [root]
    stack: List[Iterator[str]] = [iter(graph[root])]
    visiting.add(root)
    while stack:
      dep = next(stack[-1], None)
      if dep is None:
        stack.pop()
        node = path.pop()
        visiting.discard(node)
        visited.add(node)
      elif dep in visiting:
        return path[path.index(dep):] + [dep]
      elif dep not in visited:
        visiting.add(dep)
        path.append(dep)
        stack.append(iter(graph.get(dep, [])))
  return None


def execution_order(plan: ConversionPlan) -> List[ConversionTask]:
  """Kahn's algorithm; among ready tasks higher priority runs first, then insertion order."""
  index = {task.id: position for position, task in enumerate(plan.tasks)}
  by_id = {task.id: task for task in plan.tasks}
  remaining = {task.id: len(task.dependencies) for task in plan.tasks}
  dependents: Dict[str, List[str]] = {task.id: [] for task in plan.tasks}
  for task in plan.tasks:
    for dep in task.dependencies:
      dependents.setdefault(dep, []).append(task.id)

  ready: List[Tuple[int, int, str]] = []
  for task in plan.tasks:
    if remaining[task.id] == 0:
      heapq.heappush(ready, (-task.priority, index[task.id], task.id))

  ordered: List[ConversionTask] = []
  while ready:
    _, _, task_id = heapq.heappop(ready)
    ordered.append(by_id[task_id])
    for child in dependents.get(task_id, []):
      remaining[child] -= 1
      if remaining[child] == 0:
        heapq.heappush(ready, (-by_id[child].priority, index[child], child))

  if len(ordered) != len(plan.tasks):
    raise validation_error(f'Plan {plan.id} contains a dependency cycle', code='PLAN_DEPENDENCY_CYCLE')
  return ordered
