"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "chatsync.db"
DEFAULT_OBJECTS_DIR = DATA_DIR / "objects"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def resolve_objects_dir(env_value: PathLike | None = None) -> Path:
    """Resolve CHAT_OBJECTS_DIR to an absolute directory."""
    if not env_value:
        return DEFAULT_OBJECTS_DIR

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass
class SyncSettings:
    """Tunables of the conversation synchronization engine."""

    grace_window: timedelta = timedelta(seconds=10)
    settle_timeout: timedelta = timedelta(seconds=30)
    upload_retries: int = 2
    upload_retry_delay: float = 1.0  # seconds, multiplied by attempt number
    message_limit: int = 100
    signing_secret: str = "dev-signing-secret"
    signed_url_ttl: int = 3600  # seconds

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from CHAT_* environment variables."""
        defaults = cls()
        return cls(
            grace_window=timedelta(
                seconds=float(
                    os.getenv(
                        "CHAT_GRACE_WINDOW_SECONDS",
                        defaults.grace_window.total_seconds(),
                    )
                )
            ),
            settle_timeout=timedelta(
                seconds=float(
                    os.getenv(
                        "CHAT_SETTLE_TIMEOUT_SECONDS",
                        defaults.settle_timeout.total_seconds(),
                    )
                )
            ),
            upload_retries=int(
                os.getenv("CHAT_UPLOAD_RETRIES", defaults.upload_retries)
            ),
            upload_retry_delay=float(
                os.getenv("CHAT_UPLOAD_RETRY_DELAY", defaults.upload_retry_delay)
            ),
            message_limit=int(
                os.getenv("CHAT_MESSAGE_LIMIT", defaults.message_limit)
            ),
            signing_secret=os.getenv("CHAT_SIGNING_SECRET", defaults.signing_secret),
            signed_url_ttl=int(
                os.getenv("CHAT_SIGNED_URL_TTL", defaults.signed_url_ttl)
            ),
        )
