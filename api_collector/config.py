from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

from .utils import parse_iso


def env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {v!r}")


@dataclass(frozen=True)
class CollectorOptions:
    """Knobs callers pass to the collection engine."""

    batch_size: int = 100
    concurrency: int = 10
    page_size: int = 100
    since: datetime | None = None
    incremental: bool = False

    def __post_init__(self) -> None:
        for name in ("batch_size", "concurrency", "page_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.incremental and self.since is None:
            raise ValueError("incremental collection requires a since watermark")


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str = "INFO"

    http_user_agent: str = "api-collector/0.1"

    jira_endpoint: str | None = None
    jira_token: str | None = None
    jira_connection_id: int | None = None
    jira_board_id: int | None = None

    batch_size: int = 100
    concurrency: int = 10
    page_size: int = 100
    since: datetime | None = None

    raw_dry_run_dir: str = "./out"

    # Scheduler cadences (minutes)
    sched_jira_epics_minutes: int = 60

    def collector_options(self, **overrides: object) -> CollectorOptions:
        values = {
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "page_size": self.page_size,
            "since": self.since,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CollectorOptions(**values)  # type: ignore[arg-type]


def _optional_int(name: str) -> int | None:
    v = env(name)
    if v is None or not v.strip():
        return None
    return env_int(name, 0)


def load_settings() -> Settings:
    db = env("DATABASE_URL") or env("POSTGRES_DSN") or ""
    if not db:
        raise RuntimeError("Missing DATABASE_URL (or POSTGRES_DSN).")

    return Settings(
        database_url=db,
        log_level=env("LOG_LEVEL", "INFO") or "INFO",
        http_user_agent=env("HTTP_USER_AGENT", "api-collector/0.1") or "api-collector/0.1",
        jira_endpoint=env("JIRA_ENDPOINT"),
        jira_token=env("JIRA_TOKEN"),
        jira_connection_id=_optional_int("JIRA_CONNECTION_ID"),
        jira_board_id=_optional_int("JIRA_BOARD_ID"),
        batch_size=env_int("COLLECTOR_BATCH_SIZE", 100),
        concurrency=env_int("COLLECTOR_CONCURRENCY", 10),
        page_size=env_int("COLLECTOR_PAGE_SIZE", 100),
        since=parse_iso(env("COLLECTOR_SINCE")),
        raw_dry_run_dir=env("RAW_DRY_RUN_DIR", "./out") or "./out",
        sched_jira_epics_minutes=env_int("SCHED_JIRA_EPICS_MINUTES", 60),
    )
