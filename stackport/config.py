from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class Settings:
  """Global orchestration configuration derived from environment variables."""

  backend_host: str = os.getenv('STACKPORT_HOST', '127.0.0.1')
  backend_port: int = int(os.getenv('STACKPORT_PORT', '6120'))
  log_level: str = os.getenv('STACKPORT_LOG_LEVEL', 'info')
  data_dir: Path = Path(os.getenv('STACKPORT_DATA_DIR', './data')).resolve()
  db_path: Path = Path(os.getenv('STACKPORT_DB_PATH', './data/jobs.db')).resolve()
  queue_db_path: Path = Path(os.getenv('STACKPORT_QUEUE_DB_PATH', './data/queue.db')).resolve()
  retry_max_attempts: int = int(os.getenv('STACKPORT_RETRY_ATTEMPTS', '3'))
  retry_base_delay_seconds: float = float(os.getenv('STACKPORT_RETRY_BASE_DELAY', '1.0'))
  retry_max_delay_seconds: float = float(os.getenv('STACKPORT_RETRY_MAX_DELAY', '30.0'))
  retry_jitter: bool = os.getenv('STACKPORT_RETRY_JITTER', 'true').lower() == 'true'
  task_timeout_seconds: float = float(os.getenv('STACKPORT_TASK_TIMEOUT', '300'))
  operation_timeout_seconds: float = float(os.getenv('STACKPORT_OPERATION_TIMEOUT', '30'))
  cascade_window_seconds: float = float(os.getenv('STACKPORT_CASCADE_WINDOW', '60'))
  cascade_threshold: int = int(os.getenv('STACKPORT_CASCADE_THRESHOLD', '10'))
  max_rate_limit_wait_seconds: float = float(os.getenv('STACKPORT_MAX_RATE_LIMIT_WAIT', '300'))
  queue_poll_interval_seconds: float = float(os.getenv('STACKPORT_QUEUE_POLL_INTERVAL', '1.0'))
  stalled_item_seconds: float = float(os.getenv('STACKPORT_STALLED_AFTER', '600'))
  keep_completed_items: int = int(os.getenv('STACKPORT_KEEP_COMPLETED', '10'))
  keep_failed_items: int = int(os.getenv('STACKPORT_KEEP_FAILED', '50'))
  worker_enabled: bool = os.getenv('STACKPORT_WORKER_ENABLED', 'true').lower() == 'true'
  worker_concurrency: int = int(os.getenv('STACKPORT_WORKER_CONCURRENCY', '2'))
  agent_base_url: str = os.getenv('STACKPORT_AGENT_URL', 'http://127.0.0.1:6121')
  agent_api_key: Optional[str] = os.getenv('STACKPORT_AGENT_API_KEY')
  max_cpu_percent: float = float(os.getenv('STACKPORT_MAX_CPU', '85'))
  max_memory_percent: float = float(os.getenv('STACKPORT_MAX_MEMORY', '90'))
  throttle_sleep_seconds: float = float(os.getenv('STACKPORT_THROTTLE_SLEEP', '5'))

  @property
  def log_dir(self) -> Path:
    return self.data_dir / 'logs'

  def ensure_directories(self) -> None:
    self.data_dir.mkdir(parents=True, exist_ok=True)
    self.log_dir.mkdir(parents=True, exist_ok=True)
    for path in (self.db_path, self.queue_db_path):
      if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
