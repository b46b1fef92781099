from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from stackport.conversion.models import ConversionJob, ConversionPlan, ConversionStatus, TaskStatus


def _connect(db_path: Path) -> sqlite3.Connection:
  connection = sqlite3.connect(db_path, timeout=30)
  connection.row_factory = sqlite3.Row
  return connection


@contextmanager
def _session(db_path: Path) -> Iterator[sqlite3.Connection]:
  conn = _connect(db_path)
  try:
    with conn:
      yield conn
  finally:
    conn.close()


# Columns a status transition may write alongside the new status.
_TRANSITION_FIELDS = {
  'progress': 'progress',
  'current_task': 'current_task',
  'error_message': 'error_message',
  'started_at': 'started_at',
  'completed_at': 'completed_at',
  'result': 'result_json'
}


class JobStore:
  """Durable job records; the only source of truth for job state."""

  def __init__(self, db_path: Path) -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self._init_schema()

  def _init_schema(self) -> None:
    with _session(self.db_path) as conn:
      conn.execute('PRAGMA journal_mode=WAL')
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conversion_jobs (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT NOT NULL UNIQUE,
          project_id TEXT NOT NULL,
          plan_json TEXT NOT NULL,
          status TEXT NOT NULL,
          progress INTEGER NOT NULL DEFAULT 0,
          current_task TEXT,
          task_statuses_json TEXT NOT NULL DEFAULT '{}',
          result_json TEXT,
          error_message TEXT,
          created_at REAL NOT NULL,
          started_at REAL,
          completed_at REAL,
          updated_at REAL NOT NULL
        );
        """
      )
      conn.execute('CREATE INDEX IF NOT EXISTS idx_conversion_jobs_project ON conversion_jobs(project_id)')
      self._ensure_column(conn, 'task_statuses_json', "TEXT NOT NULL DEFAULT '{}'")

  def _ensure_column(self, conn: sqlite3.Connection, column: str, definition: str) -> None:
    existing = {row['name'] for row in conn.execute('PRAGMA table_info(conversion_jobs)')}
    if column not in existing:
      conn.execute(f'ALTER TABLE conversion_jobs ADD COLUMN {column} {definition}')

  def insert(self, job: ConversionJob) -> None:
    with _session(self.db_path) as conn:
      conn.execute(
        """
        INSERT INTO conversion_jobs (
          id, project_id, plan_json, status, progress, current_task, task_statuses_json,
          result_json, error_message, created_at, started_at, completed_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
          job.id,
          job.project_id,
          json.dumps(job.plan.to_dict()),
          job.status.value,
          job.progress,
          job.current_task,
          json.dumps({key: value.value for key, value in job.task_statuses.items()}),
          json.dumps(job.result) if job.result is not None else None,
          job.error_message,
          job.created_at,
          job.started_at,
          job.completed_at,
          job.updated_at
        )
      )

  def load(self, job_id: str) -> Optional[ConversionJob]:
    with _session(self.db_path) as conn:
      row = conn.execute('SELECT * FROM conversion_jobs WHERE id = ?', (job_id,)).fetchone()
    return self._deserialize(row) if row else None

  def list(self, project_id: Optional[str] = None) -> List[ConversionJob]:
    with _session(self.db_path) as conn:
      if project_id is None:
        rows = conn.execute('SELECT * FROM conversion_jobs ORDER BY seq ASC').fetchall()
      else:
        rows = conn.execute(
          'SELECT * FROM conversion_jobs WHERE project_id = ? ORDER BY seq ASC',
          (project_id,)
        ).fetchall()
    return [self._deserialize(row) for row in rows]

  def list_by_status(self, statuses: Iterable[ConversionStatus]) -> List[ConversionJob]:
    values = [status.value for status in statuses]
    if not values:
      return []
    placeholders = ', '.join('?' for _ in values)
    with _session(self.db_path) as conn:
      rows = conn.execute(
        f'SELECT * FROM conversion_jobs WHERE status IN ({placeholders}) ORDER BY seq ASC',
        values
      ).fetchall()
    return [self._deserialize(row) for row in rows]

  def compare_and_set_status(
    self,
    job_id: str,
    expected: Iterable[ConversionStatus],
    new_status: ConversionStatus,
    **fields: Any
  ) -> bool:
    """Atomically move `job_id` to `new_status` only if its current status is in `expected`."""
    assignments = ['status = ?', 'updated_at = ?']
    params: List[Any] = [new_status.value, time.time()]
    for name, value in fields.items():
      column = _TRANSITION_FIELDS.get(name)
      if column is None:
        raise ValueError(f'Unsupported transition field: {name}')
      assignments.append(f'{column} = ?')
      params.append(json.dumps(value) if name == 'result' and value is not None else value)
    expected_values = [status.value for status in expected]
    placeholders = ', '.join('?' for _ in expected_values)
    params.append(job_id)
    params.extend(expected_values)
    with _session(self.db_path) as conn:
      cursor = conn.execute(
        f'UPDATE conversion_jobs SET {", ".join(assignments)} WHERE id = ? AND status IN ({placeholders})',
        params
      )
      return cursor.rowcount == 1

  def update_progress(self, job_id: str, progress: int, current_task: Optional[str] = None) -> bool:
    """Progress never decreases; only applies while the job is running."""
    with _session(self.db_path) as conn:
      cursor = conn.execute(
        """
        UPDATE conversion_jobs
        SET progress = MAX(progress, ?),
            current_task = COALESCE(?, current_task),
            updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (progress, current_task, time.time(), job_id, ConversionStatus.RUNNING.value)
      )
      return cursor.rowcount == 1

  def set_task_status(
    self,
    job_id: str,
    task_id: str,
    status: TaskStatus,
    allowed: Iterable[ConversionStatus]
  ) -> bool:
    allowed_values = {value.value for value in allowed}
    conn = _connect(self.db_path)
    try:
      conn.execute('BEGIN IMMEDIATE')
      row = conn.execute(
        'SELECT status, task_statuses_json FROM conversion_jobs WHERE id = ?',
        (job_id,)
      ).fetchone()
      if row is None or row['status'] not in allowed_values:
        conn.rollback()
        return False
      statuses = json.loads(row['task_statuses_json'] or '{}')
      statuses[task_id] = status.value
      conn.execute(
        'UPDATE conversion_jobs SET task_statuses_json = ?, updated_at = ? WHERE id = ?',
        (json.dumps(statuses), time.time(), job_id)
      )
      conn.commit()
      return True
    except Exception:
      conn.rollback()
      raise
    finally:
      conn.close()

  def delete(self, job_id: str) -> bool:
    with _session(self.db_path) as conn:
      cursor = conn.execute('DELETE FROM conversion_jobs WHERE id = ?', (job_id,))
      return cursor.rowcount == 1

  def ping(self) -> bool:
    with _session(self.db_path) as conn:
      conn.execute('SELECT 1').fetchone()
    return True

  def _deserialize(self, row: sqlite3.Row) -> ConversionJob:
    statuses: Dict[str, str] = json.loads(row['task_statuses_json'] or '{}')
    return ConversionJob(
      id=row['id'],
      project_id=row['project_id'],
      plan=ConversionPlan.from_dict(json.loads(row['plan_json'])),
      status=ConversionStatus(row['status']),
      progress=int(row['progress']),
      current_task=row['current_task'],
      task_statuses={task_id: TaskStatus(value) for task_id, value in statuses.items()},
      result=json.loads(row['result_json']) if row['result_json'] else None,
      error_message=row['error_message'],
      created_at=row['created_at'],
      started_at=row['started_at'],
      completed_at=row['completed_at'],
      updated_at=row['updated_at']
    )
