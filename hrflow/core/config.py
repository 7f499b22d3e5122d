"""
Engine configuration.

All tunables come from environment variables (a `.env` file is honoured via
python-dotenv). `Settings.from_env()` snapshots them into an immutable object
that the engine components receive explicitly, so tests can build their own
`Settings(...)` without touching the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the workflow engine."""

    database_url: Optional[str] = None
    redis_url: str = "redis://localhost:6379/0"
    result_backend: Optional[str] = None

    # Single-writer lease on run advancement
    run_lease_seconds: int = 30

    # Action queue retry policy: resume_at = now + base * 2**attempts (capped)
    queue_max_attempts: int = 3
    queue_backoff_seconds: int = 60
    queue_backoff_max_seconds: int = 3600
    queue_claim_seconds: int = 300

    # Scheduler cadence
    sweep_batch_size: int = 50
    sweep_interval_seconds: int = 60
    overdue_interval_seconds: int = 900

    # Collaborator implementations ("package.module:ClassName")
    employee_directory_class: Optional[str] = None
    notification_sender_class: Optional[str] = None
    document_storage_class: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if database_url and database_url.startswith("postgres://"):
            # Heroku/Railway style URLs
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        redis_url = os.getenv("REDIS_URL", cls.redis_url)

        return cls(
            database_url=database_url,
            redis_url=redis_url,
            result_backend=os.getenv("CELERY_RESULT_BACKEND", redis_url),
            run_lease_seconds=_int_env("HRFLOW_RUN_LEASE_SECONDS", cls.run_lease_seconds),
            queue_max_attempts=_int_env("HRFLOW_QUEUE_MAX_ATTEMPTS", cls.queue_max_attempts),
            queue_backoff_seconds=_int_env("HRFLOW_QUEUE_BACKOFF_SECONDS", cls.queue_backoff_seconds),
            queue_backoff_max_seconds=_int_env(
                "HRFLOW_QUEUE_BACKOFF_MAX_SECONDS", cls.queue_backoff_max_seconds
            ),
            queue_claim_seconds=_int_env("HRFLOW_QUEUE_CLAIM_SECONDS", cls.queue_claim_seconds),
            sweep_batch_size=_int_env("HRFLOW_SWEEP_BATCH_SIZE", cls.sweep_batch_size),
            sweep_interval_seconds=_int_env("HRFLOW_SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds),
            overdue_interval_seconds=_int_env(
                "HRFLOW_OVERDUE_INTERVAL_SECONDS", cls.overdue_interval_seconds
            ),
            employee_directory_class=os.getenv("HRFLOW_EMPLOYEE_DIRECTORY"),
            notification_sender_class=os.getenv("HRFLOW_NOTIFICATION_SENDER"),
            document_storage_class=os.getenv("HRFLOW_DOCUMENT_STORAGE"),
        )

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next attempt after `attempts` failures."""
        return min(self.queue_backoff_seconds * (2 ** attempts), self.queue_backoff_max_seconds)
