from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventLogger:
  """JSON-lines sink for job lifecycle events and escalated errors."""

  def __init__(self, base_dir: Path) -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self.log_file = self.base_dir / 'events.log'
    self._lock = threading.Lock()

  def log_event(self, category: str, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    entry = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'category': category,
      'message': message,
      'payload': payload or {}
    }
    line = json.dumps(entry, default=str)
    with self._lock:
      with self.log_file.open('a', encoding='utf-8') as handle:
        handle.write(line + '\n')

  def log_error(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    self.log_event('error', message, payload)

  def recent(self, limit: int = 200, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if not self.log_file.exists():
      return []
    lines = self.log_file.read_text(encoding='utf-8').splitlines()
    entries: List[Dict[str, Any]] = []
    for line in lines:
      if not line.strip():
        continue
      try:
        entry = json.loads(line)
      except json.JSONDecodeError:
        logger.warning('Malformed log line: %s', line)
        continue
      if job_id is not None and _entry_job_id(entry) != job_id:
        continue
      entries.append(entry)
    return entries[-limit:] if limit > 0 else []


def _entry_job_id(entry: Dict[str, Any]) -> Optional[str]:
  payload = entry.get('payload') or {}
  if payload.get('job_id'):
    return payload['job_id']
  context = payload.get('context') or {}
  return context.get('job_id')
