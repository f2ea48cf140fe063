# File: config.py
"""
Runtime settings.

Everything is read from environment variables so the same image can run the
CLI, the REST API, or the test suite without code changes.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class PollSettings:
    """Bounds and pacing of the convergence wait."""

    interval_seconds: float = 10.0
    max_interval_seconds: float = 60.0
    backoff: float = 1.5
    jitter: float = 0.2
    timeout_seconds: float = 900.0
    max_ticks: Optional[int] = None


@dataclass
class Settings:
    region: str = "us-east-1"
    db_path: str = "/tmp/azfailover.db"
    sns_topic_arn: Optional[str] = None
    resolve_workers: int = 8
    restore_delay_seconds: float = 300.0
    rest_port: int = 8000
    log_file: Optional[str] = None
    poll: PollSettings = field(default_factory=PollSettings)

    @property
    def database_url(self) -> str:
        if self.db_path.startswith(":memory:"):
            return "sqlite://"
        return f"sqlite:///{self.db_path}"

    @classmethod
    def from_env(cls) -> "Settings":
        db_dir = os.getenv("AZFAILOVER_DB_DIR", "/tmp")
        return cls(
            region=os.getenv("AZFAILOVER_REGION", os.getenv("AWS_REGION", "us-east-1")),
            db_path=os.getenv("AZFAILOVER_DB_PATH", os.path.join(db_dir, "azfailover.db")),
            sns_topic_arn=os.getenv("AZFAILOVER_SNS_TOPIC_ARN") or None,
            resolve_workers=_env_int("AZFAILOVER_RESOLVE_WORKERS", 8),
            restore_delay_seconds=_env_float("AZFAILOVER_RESTORE_DELAY", 300.0),
            rest_port=int(os.getenv("REST_PORT", 8000)),
            log_file=os.getenv("AZFAILOVER_LOG_FILE") or None,
            poll=PollSettings(
                interval_seconds=_env_float("AZFAILOVER_POLL_INTERVAL", 10.0),
                max_interval_seconds=_env_float("AZFAILOVER_POLL_MAX_INTERVAL", 60.0),
                backoff=_env_float("AZFAILOVER_POLL_BACKOFF", 1.5),
                jitter=_env_float("AZFAILOVER_POLL_JITTER", 0.2),
                timeout_seconds=_env_float("AZFAILOVER_POLL_TIMEOUT", 900.0),
                max_ticks=_env_int("AZFAILOVER_POLL_MAX_TICKS", None),
            ),
        )
