from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import dotenv
import pydantic

dotenv.load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


class Settings(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    WATCH_CONFIG: Optional[Path] = None

    OVERRIDE_LOGGING: int = logging.INFO

    TELEGRAM_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None

    STATE_DIR: Optional[Path] = None

    DRY_RUN: bool = False

    SHUTDOWN_GRACE: float = 10.0

    HTTP_HOST: str = "127.0.0.1"
    HTTP_PORT: int = 8000

    HTTP_TIMEOUT: float = 30.0
    API_RATE_LIMIT: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        watch_config = os.environ.get("WATCH_CONFIG")
        state_dir = os.environ.get("STATE_DIR")
        return cls(
            WATCH_CONFIG=Path(watch_config) if watch_config else None,
            OVERRIDE_LOGGING=logging.getLevelName(
                os.environ.get("OVERRIDE_LOGGING", "INFO")
            ),
            TELEGRAM_TOKEN=os.environ.get("TELEGRAM_TOKEN"),
            TELEGRAM_CHAT_ID=os.environ.get("TELEGRAM_CHAT_ID"),
            STATE_DIR=Path(state_dir) if state_dir else None,
            DRY_RUN=_env_bool("DRY_RUN"),
            SHUTDOWN_GRACE=float(os.environ.get("SHUTDOWN_GRACE", 10)),
            HTTP_HOST=os.environ.get("HTTP_HOST", "127.0.0.1"),
            HTTP_PORT=int(os.environ.get("HTTP_PORT", 8000)),
            HTTP_TIMEOUT=float(os.environ.get("HTTP_TIMEOUT", 30)),
            API_RATE_LIMIT=float(os.environ.get("API_RATE_LIMIT", 10)),
        )


SETTINGS = Settings.from_env()
