from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .backoff import DEFAULT_BASE_DELAY_MS, DEFAULT_MAX_DELAY_MS

MAX_BATCH_SIZE = 100


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


@dataclass
class SyncClientConfig:
    server_url: str = "http://127.0.0.1:8000"
    device_id: str = ""
    user_id: Optional[str] = None
    token: Optional[str] = None
    db_path: str = "sync_client.sqlite3"
    batch_size: int = MAX_BATCH_SIZE
    delta_page_size: int = 500
    request_timeout: float = 60.0
    base_retry_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_retry_delay_ms: int = DEFAULT_MAX_DELAY_MS
    max_retries: int = 3
    sync_interval: float = 300.0

    def __post_init__(self):
        if not self.device_id:
            self.device_id = socket.gethostname()
        self.batch_size = max(1, min(int(self.batch_size), MAX_BATCH_SIZE))

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "SyncClientConfig":
        load_dotenv(dotenv_path)
        return cls(
            server_url=os.getenv("SYNC_SERVER_URL", cls.server_url),
            device_id=os.getenv("SYNC_DEVICE_ID", ""),
            user_id=os.getenv("SYNC_USER_ID") or None,
            token=os.getenv("SYNC_TOKEN") or None,
            db_path=os.getenv("SYNC_DB_PATH", cls.db_path),
            batch_size=_env_int("SYNC_BATCH_SIZE", MAX_BATCH_SIZE),
            delta_page_size=_env_int("SYNC_DELTA_PAGE_SIZE", cls.delta_page_size),
            request_timeout=_env_float("SYNC_REQUEST_TIMEOUT", cls.request_timeout),
            base_retry_delay_ms=_env_int("SYNC_BASE_RETRY_DELAY_MS", DEFAULT_BASE_DELAY_MS),
            max_retry_delay_ms=_env_int("SYNC_MAX_RETRY_DELAY_MS", DEFAULT_MAX_DELAY_MS),
            max_retries=_env_int("SYNC_MAX_RETRIES", cls.max_retries),
            sync_interval=_env_float("SYNC_INTERVAL", cls.sync_interval),
        )
