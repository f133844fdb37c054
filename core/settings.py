"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Vitta"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, STORAGE_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = STORAGE_DIR / "offline.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    queue_collection: str = "offlineQueue"
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 32000
    jitter_ratio: float = 0.1
    # 4xx responses use the retry budget like 5xx when enabled
    retry_client_errors: bool = True
    # "retain" keeps exhausted operations for manual action, "purge" drops them
    exhausted_policy: str = "retain"
    auto_retry: bool = True
    connectivity_check_interval_sec: int = 30
    connectivity_probe_path: str = "/manifest.json"


SYNC = SyncSettings()


@dataclass(frozen=True)
class ApiSettings:
    base_url: str = os.environ.get("VITTA_API_BASE_URL", "http://localhost:3000")
    timeout_sec: float = 10.0


API = ApiSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "API",
    "get_default_data_dir",
]
