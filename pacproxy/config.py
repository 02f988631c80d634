from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

DEFAULT_PAC_URL = "https://blackwhite.txthinking.com/white.pac"
DEFAULT_PAC_PATH = Path("pac.txt")
DEFAULT_CLIENT_IP = "127.0.0.1"
DEFAULT_CLIENT_LISTEN = "127.0.0.1:1080"
DEFAULT_PAC_HOST = "127.0.0.1"
DEFAULT_DEBOUNCE_INTERVAL = 0.1
DEFAULT_KILL_TIMEOUT = 10.0
DEFAULT_TOGGLE_TIMEOUT = 30.0
DEFAULT_LOG_DIR = Path("logs")

BINARY_NAME = "brook.exe" if sys.platform == "win32" else "brook"


@dataclass(frozen=True)
class SupervisorConfig:
    """Typed representation of CLI arguments used to boot the supervisor."""

    server: str
    password: str
    bin_path: Path | None = None
    pac_url: str = DEFAULT_PAC_URL
    pac_path: Path = DEFAULT_PAC_PATH
    update: bool = False
    listen: str = DEFAULT_CLIENT_LISTEN
    log_dir: Path = DEFAULT_LOG_DIR
    debounce_interval: float = DEFAULT_DEBOUNCE_INTERVAL
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
