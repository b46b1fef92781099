from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict

from stackport.conversion.models import JobProgressUpdate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[JobProgressUpdate], Any]


class ProgressChannel:
  """In-process progress observers, one per job id.

  Delivery is best effort: updates published in another process, or before a callback is
  registered, are never seen here. Consumers that need guaranteed state re-read the job record.
  """

  def __init__(self) -> None:
    self._callbacks: Dict[str, ProgressCallback] = {}

  def subscribe(self, job_id: str, callback: ProgressCallback) -> None:
    if job_id in self._callbacks:
      logger.debug('Replacing progress callback for job %s', job_id)
    self._callbacks[job_id] = callback

  def unsubscribe(self, job_id: str) -> bool:
    return self._callbacks.pop(job_id, None) is not None

  async def publish(self, update: JobProgressUpdate) -> bool:
    callback = self._callbacks.get(update.job_id)
    if callback is None:
      return False
    try:
      outcome = callback(update)
      if inspect.isawaitable(outcome):
        await outcome
    except Exception:  # observers never break the publisher
      logger.exception('Progress callback failed for job %s', update.job_id)
      return False
    return True

  def clear(self) -> None:
    self._callbacks.clear()

  def __len__(self) -> int:
    return len(self._callbacks)
