from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from stackport.config import settings
from stackport.conversion.errors import AppError
from stackport.conversion.models import ConversionJob, ConversionPlan
from stackport.conversion.orchestrator import ConversionOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(with_worker: bool = False) -> ConversionOrchestrator:
  return ConversionOrchestrator.from_settings(settings, with_worker=with_worker)


def parse_global_args() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='stackport', description='Conversion job orchestration CLI')
  sub = parser.add_subparsers(dest='command', required=True)

  p_start = sub.add_parser('start', help='Create and start a conversion job from a plan file')
  p_start.add_argument('--plan', required=True, help='Path to a JSON conversion plan')
  p_start.add_argument('--user')
  p_start.add_argument('--json', action='store_true')

  for name, help_text in (
    ('status', 'Show the status of a job'),
    ('pause', 'Pause a running job'),
    ('resume', 'Resume a paused job'),
    ('delete', 'Delete a job and cancel its pending work')
  ):
    command = sub.add_parser(name, help=help_text)
    command.add_argument('job_id')
    command.add_argument('--json', action='store_true')

  p_list = sub.add_parser('list', help='List jobs in creation order')
  p_list.add_argument('--project')
  p_list.add_argument('--json', action='store_true')

  p_stats = sub.add_parser('stats', help='Show queue depth per state')
  p_stats.add_argument('--json', action='store_true')

  p_worker = sub.add_parser('worker', help='Run the queue worker')
  p_worker.add_argument('--once', action='store_true', help='Process ready items and exit')

  return parser


def load_plan(path: str) -> ConversionPlan:
  payload = json.loads(Path(path).expanduser().read_text(encoding='utf-8'))
  return ConversionPlan.from_dict(payload)


def _summary(job: ConversionJob) -> str:
  line = f'{job.id}  {job.status.value:<9} {job.progress:>3}%  project={job.project_id}'
  if job.current_task:
    line += f'  task={job.current_task}'
  if job.error_message:
    line += f'  error={job.error_message}'
  return line


def _emit(as_json: bool, payload: Dict[str, Any], text: str) -> None:
  if as_json:
    print(json.dumps(payload, indent=2, default=str))
  else:
    print(text)


async def _run_command(orchestrator: ConversionOrchestrator, ns: argparse.Namespace) -> int:
  cmd = ns.command
  if cmd == 'start':
    job = await orchestrator.start_conversion(load_plan(ns.plan), ns.user)
    _emit(ns.json, {'job': job.to_dict(include_plan=False)}, _summary(job))
    return 0
  if cmd == 'status':
    job = await orchestrator.get_conversion(ns.job_id)
    _emit(ns.json, {'job': job.to_dict(include_plan=False)}, _summary(job))
    return 0
  if cmd == 'pause':
    job = await orchestrator.pause_conversion(ns.job_id)
    _emit(ns.json, {'job': job.to_dict(include_plan=False)}, _summary(job))
    return 0
  if cmd == 'resume':
    job = await orchestrator.resume_conversion(ns.job_id)
    _emit(ns.json, {'job': job.to_dict(include_plan=False)}, _summary(job))
    return 0
  if cmd == 'delete':
    await orchestrator.delete_conversion(ns.job_id)
    _emit(ns.json, {'deleted': True, 'job_id': ns.job_id}, f'Deleted {ns.job_id}')
    return 0
  if cmd == 'list':
    jobs: List[ConversionJob] = await orchestrator.list_conversions(ns.project)
    _emit(
      ns.json,
      {'jobs': [job.to_dict(include_plan=False) for job in jobs]},
      '\n'.join(_summary(job) for job in jobs) or 'No conversion jobs.'
    )
    return 0
  if cmd == 'stats':
    stats = await orchestrator.get_queue_stats()
    _emit(ns.json, stats.to_dict(), '  '.join(f'{key}={value}' for key, value in stats.to_dict().items()))
    return 0
  if cmd == 'worker':
    return await _run_worker(orchestrator, ns.once)
  return 1


async def _run_worker(orchestrator: ConversionOrchestrator, once: bool) -> int:
  summary = await orchestrator.reconcile()
  logger.info('Reconciled queue before starting worker: %s', summary)
  worker = orchestrator.worker
  if worker is None:
    print('Worker is disabled.', file=sys.stderr)
    return 1
  if once:
    processed = await worker.drain()
    print(f'Processed {processed} queue item(s)')
    return 0
  orchestrator.start_worker()
  while worker.running:
    await asyncio.sleep(1.0)
  return 0


async def _main_async(ns: argparse.Namespace) -> int:
  orchestrator = build_orchestrator(with_worker=ns.command == 'worker')
  try:
    return await _run_command(orchestrator, ns)
  except AppError as error:
    payload = error.public_payload()
    if getattr(ns, 'json', False):
      print(json.dumps({'error': payload}, indent=2), file=sys.stderr)
    else:
      print(f'{error.code}: {error.user_message}', file=sys.stderr)
    return 2
  finally:
    await orchestrator.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
  logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
  parser = parse_global_args()
  ns = parser.parse_args(argv)
  try:
    return asyncio.run(_main_async(ns))
  except KeyboardInterrupt:
    return 130


if __name__ == '__main__':
  raise SystemExit(main())
