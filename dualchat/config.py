from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

from .states import DEFAULT_BASE_URL


# Load env from the project directory first, then the working directory
here = Path(__file__).resolve().parents[1]
for env_path in (here / ".env", Path.cwd() / ".env"):
    if env_path.is_file():
        load_dotenv(dotenv_path=str(env_path), override=False)
        break


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_BASE_URL
    gateway_url: Optional[str] = None
    store_path: Path = Path("conversations.json")
    request_timeout: float = 300.0
    turn_delay: float = 0.05
    save_delay: float = 0.25
    log_level: str = "INFO"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"config_invalid | {name}={raw!r} is not a number; using {default}")
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings read from the environment.

    Env vars:
      - DUALCHAT_BASE_URL (default: http://127.0.0.1:1234)
      - DUALCHAT_GATEWAY_URL (optional; empty runs the gateway in-process)
      - DUALCHAT_STORE_PATH (default: ./conversations.json)
      - DUALCHAT_REQUEST_TIMEOUT, DUALCHAT_TURN_DELAY, DUALCHAT_SAVE_DELAY (seconds)
      - DUALCHAT_LOG_LEVEL (default: INFO)
    """
    gateway = (os.getenv("DUALCHAT_GATEWAY_URL") or "").strip() or None
    return Settings(
        base_url=(os.getenv("DUALCHAT_BASE_URL") or DEFAULT_BASE_URL).strip(),
        gateway_url=gateway,
        store_path=Path(os.getenv("DUALCHAT_STORE_PATH") or "conversations.json").expanduser(),
        request_timeout=_float_env("DUALCHAT_REQUEST_TIMEOUT", 300.0),
        turn_delay=max(0.0, _float_env("DUALCHAT_TURN_DELAY", 0.05)),
        save_delay=max(0.0, _float_env("DUALCHAT_SAVE_DELAY", 0.25)),
        log_level=(os.getenv("DUALCHAT_LOG_LEVEL") or "INFO").upper(),
    )
