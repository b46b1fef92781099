from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from stackport.conversion.models import (
  IN_FLIGHT_STATES,
  ConversionPlan,
  JobProgressUpdate,
  QueueItem,
  QueueItemState,
  QueueStats
)
from stackport.conversion.progress import ProgressCallback, ProgressChannel

logger = logging.getLogger(__name__)

_IN_FLIGHT_SQL = ', '.join(f"'{state.value}'" for state in IN_FLIGHT_STATES)


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


@contextmanager
def _immediate(db_path: Path) -> Iterator[sqlite3.Connection]:
  """Write transaction taken up front so concurrent claimers serialize."""
  conn = _connect(db_path)
  try:
    conn.execute('BEGIN IMMEDIATE')
    try:
      yield conn
    except Exception:
      conn.rollback()
      raise
    conn.commit()
  finally:
    conn.close()


class SQLiteQueueBackend:
  """Durable at-least-once work queue. Holds dispatch state only, never job state."""

  def __init__(self, db_path: Path) -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self._init_schema()

  def _init_schema(self) -> None:
    with _session(self.db_path) as conn:
      conn.execute('PRAGMA journal_mode=WAL')
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_items (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT NOT NULL UNIQUE,
          job_id TEXT NOT NULL,
          payload_json TEXT NOT NULL,
          state TEXT NOT NULL,
          priority INTEGER NOT NULL DEFAULT 1,
          attempts INTEGER NOT NULL DEFAULT 0,
          worker_id TEXT,
          last_error TEXT,
          available_at REAL NOT NULL,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL
        );
        """
      )
      conn.execute(
        f"""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_items_in_flight
        ON queue_items(job_id) WHERE state IN ({_IN_FLIGHT_SQL})
        """
      )
      conn.execute('CREATE INDEX IF NOT EXISTS idx_queue_items_state ON queue_items(state, priority, seq)')

  def enqueue(self, job_id: str, payload: Dict[str, Any], priority: int = 1, delay: float = 0.0) -> str:
    """Returns the new item id, or the id of the item already in flight for `job_id`."""
    now = time.time()
    item_id = uuid.uuid4().hex
    state = QueueItemState.DELAYED if delay > 0 else QueueItemState.WAITING
    try:
      with _session(self.db_path) as conn:
        conn.execute(
          """
          INSERT INTO queue_items (id, job_id, payload_json, state, priority, available_at, created_at, updated_at)
          VALUES (?, ?, ?, ?, ?, ?, ?, ?)
          """,
          (item_id, job_id, json.dumps(payload), state.value, priority, now + delay, now, now)
        )
      return item_id
    except sqlite3.IntegrityError:
      existing = self.find_in_flight(job_id)
      if existing is None:
        raise
      logger.info('Job %s already has queue item %s in flight; ignoring duplicate enqueue', job_id, existing.id)
      return existing.id

  def find_in_flight(self, job_id: str) -> Optional[QueueItem]:
    with _session(self.db_path) as conn:
      row = conn.execute(
        f'SELECT * FROM queue_items WHERE job_id = ? AND state IN ({_IN_FLIGHT_SQL})',
        (job_id,)
      ).fetchone()
    return self._deserialize(row) if row else None

  def get(self, item_id: str) -> Optional[QueueItem]:
    with _session(self.db_path) as conn:
      row = conn.execute('SELECT * FROM queue_items WHERE id = ?', (item_id,)).fetchone()
    return self._deserialize(row) if row else None

  def list_in_flight(self) -> List[QueueItem]:
    with _session(self.db_path) as conn:
      rows = conn.execute(
        f'SELECT * FROM queue_items WHERE state IN ({_IN_FLIGHT_SQL}) ORDER BY seq ASC'
      ).fetchall()
    return [self._deserialize(row) for row in rows]

  def transition_job(self, job_id: str, from_states: Iterable[QueueItemState], to_state: QueueItemState) -> int:
    states = [state.value for state in from_states]
    placeholders = ', '.join('?' for _ in states)
    with _session(self.db_path) as conn:
      cursor = conn.execute(
        f'UPDATE queue_items SET state = ?, updated_at = ? WHERE job_id = ? AND state IN ({placeholders})',
        [to_state.value, time.time(), job_id, *states]
      )
      return cursor.rowcount

  def cancel(self, job_id: str) -> int:
    """Drop pending items for `job_id`; an active item is left to its worker."""
    with _session(self.db_path) as conn:
      cursor = conn.execute(
        'DELETE FROM queue_items WHERE job_id = ? AND state IN (?, ?, ?)',
        (job_id, QueueItemState.WAITING.value, QueueItemState.DELAYED.value, QueueItemState.PAUSED.value)
      )
      return cursor.rowcount

  def claim(self, worker_id: str) -> Optional[QueueItem]:
    now = time.time()
    with _immediate(self.db_path) as conn:
      conn.execute(
        'UPDATE queue_items SET state = ?, updated_at = ? WHERE state = ? AND available_at <= ?',
        (QueueItemState.WAITING.value, now, QueueItemState.DELAYED.value, now)
      )
      row = conn.execute(
        'SELECT * FROM queue_items WHERE state = ? ORDER BY priority DESC, seq ASC LIMIT 1',
        (QueueItemState.WAITING.value,)
      ).fetchone()
      if row is None:
        return None
      conn.execute(
        'UPDATE queue_items SET state = ?, attempts = attempts + 1, worker_id = ?, updated_at = ? WHERE id = ?',
        (QueueItemState.ACTIVE.value, worker_id, now, row['id'])
      )
      claimed = conn.execute('SELECT * FROM queue_items WHERE id = ?', (row['id'],)).fetchone()
    return self._deserialize(claimed)

  def set_state(self, item_id: str, state: QueueItemState, last_error: Optional[str] = None, delay: float = 0.0) -> bool:
    now = time.time()
    with _session(self.db_path) as conn:
      cursor = conn.execute(
        """
        UPDATE queue_items
        SET state = ?, last_error = COALESCE(?, last_error), available_at = ?, updated_at = ?,
            worker_id = CASE WHEN ? = 'active' THEN worker_id ELSE NULL END
        WHERE id = ?
        """,
        (state.value, last_error, now + delay, now, state.value, item_id)
      )
      return cursor.rowcount == 1

  def touch(self, item_id: str) -> None:
    with _session(self.db_path) as conn:
      conn.execute('UPDATE queue_items SET updated_at = ? WHERE id = ?', (time.time(), item_id))

  def requeue_stalled(self, older_than: float) -> List[str]:
    cutoff = time.time() - older_than
    with _immediate(self.db_path) as conn:
      rows = conn.execute(
        'SELECT id FROM queue_items WHERE state = ? AND updated_at < ?',
        (QueueItemState.ACTIVE.value, cutoff)
      ).fetchall()
      ids = [row['id'] for row in rows]
      if ids:
        placeholders = ', '.join('?' for _ in ids)
        conn.execute(
          f'UPDATE queue_items SET state = ?, worker_id = NULL, updated_at = ? WHERE id IN ({placeholders})',
          [QueueItemState.WAITING.value, time.time(), *ids]
        )
    return ids

  def prune(self, keep_completed: int, keep_failed: int) -> int:
    removed = 0
    with _session(self.db_path) as conn:
      for state, keep in ((QueueItemState.COMPLETED, keep_completed), (QueueItemState.FAILED, keep_failed)):
        cursor = conn.execute(
          """
          DELETE FROM queue_items WHERE state = ? AND seq NOT IN (
            SELECT seq FROM queue_items WHERE state = ? ORDER BY seq DESC LIMIT ?
          )
          """,
          (state.value, state.value, max(0, keep))
        )
        removed += cursor.rowcount
    return removed

  def stats(self) -> QueueStats:
    with _session(self.db_path) as conn:
      rows = conn.execute('SELECT state, COUNT(*) AS total FROM queue_items GROUP BY state').fetchall()
    counts = {row['state']: row['total'] for row in rows}
    return QueueStats(**{state.value: int(counts.get(state.value, 0)) for state in QueueItemState})

  def _deserialize(self, row: sqlite3.Row) -> QueueItem:
    return QueueItem(
      id=row['id'],
      job_id=row['job_id'],
      payload=json.loads(row['payload_json']),
      state=QueueItemState(row['state']),
      priority=row['priority'],
      attempts=row['attempts'],
      worker_id=row['worker_id'],
      last_error=row['last_error'],
      available_at=row['available_at'],
      created_at=row['created_at'],
      updated_at=row['updated_at']
    )


class QueueAdapter:
  """Turns jobs into dispatchable work items and relays progress to the owning process."""

  def __init__(self, backend: SQLiteQueueBackend, channel: Optional[ProgressChannel] = None) -> None:
    self.backend = backend
    self.channel = channel or ProgressChannel()

  def start_conversion_job(self, job_id: str, project_id: str, plan: ConversionPlan, user_id: Optional[str] = None) -> str:
    payload = {
      'job_id': job_id,
      'project_id': project_id,
      'user_id': user_id,
      'plan': plan.to_dict()
    }
    item_id = self.backend.enqueue(job_id, payload)
    logger.info('Queued job %s as item %s', job_id, item_id)
    return item_id

  def pause_job(self, job_id: str) -> int:
    return self.backend.transition_job(
      job_id,
      (QueueItemState.WAITING, QueueItemState.DELAYED),
      QueueItemState.PAUSED
    )

  def resume_job(self, job_id: str) -> int:
    return self.backend.transition_job(job_id, (QueueItemState.PAUSED,), QueueItemState.WAITING)

  def cancel(self, job_id: str) -> int:
    removed = self.backend.cancel(job_id)
    if removed:
      logger.info('Removed %s pending queue item(s) for job %s', removed, job_id)
    return removed

  def in_flight(self, job_id: str) -> Optional[QueueItem]:
    return self.backend.find_in_flight(job_id)

  def on_job_progress(self, job_id: str, callback: ProgressCallback) -> None:
    self.channel.subscribe(job_id, callback)

  def off_job_progress(self, job_id: str) -> None:
    self.channel.unsubscribe(job_id)

  async def publish_progress(self, update: JobProgressUpdate) -> bool:
    return await self.channel.publish(update)

  def get_queue_stats(self) -> QueueStats:
    return self.backend.stats()

  def claim_next(self, worker_id: str) -> Optional[QueueItem]:
    return self.backend.claim(worker_id)

  def ack_completed(self, item_id: str) -> None:
    self.backend.set_state(item_id, QueueItemState.COMPLETED)

  def ack_failed(self, item_id: str, error: str) -> None:
    self.backend.set_state(item_id, QueueItemState.FAILED, last_error=error)

  def park(self, item_id: str) -> None:
    self.backend.set_state(item_id, QueueItemState.PAUSED)

  def release(self, item_id: str, delay: float = 0.0, error: Optional[str] = None) -> None:
    state = QueueItemState.DELAYED if delay > 0 else QueueItemState.WAITING
    self.backend.set_state(item_id, state, last_error=error, delay=delay)

  def touch(self, item_id: str) -> None:
    self.backend.touch(item_id)

  def requeue_stalled(self, older_than: float) -> List[str]:
    ids = self.backend.requeue_stalled(older_than)
    if ids:
      logger.warning('Requeued %s stalled queue item(s)', len(ids))
    return ids

  def prune(self, keep_completed: int = 10, keep_failed: int = 50) -> int:
    return self.backend.prune(keep_completed, keep_failed)

  def close(self) -> None:
    self.channel.clear()
