from __future__ import annotations

import json
from typing import Any

from .db import execute

SQL_CREATE = """
CREATE TABLE IF NOT EXISTS collector_runs (
  run_id TEXT PRIMARY KEY,
  job_key TEXT NOT NULL,
  started_at_utc TIMESTAMPTZ NOT NULL,
  ended_at_utc TIMESTAMPTZ,
  status TEXT NOT NULL,
  stats_json JSONB NOT NULL DEFAULT '{}'::jsonb,
  error_text TEXT
)
"""

SQL_START = """
INSERT INTO collector_runs (run_id, job_key, started_at_utc, status, stats_json)
VALUES (%s, %s, now(), 'RUNNING', '{}'::jsonb)
"""

SQL_FINISH = """
UPDATE collector_runs
SET ended_at_utc = now(),
    status = %s,
    stats_json = %s::jsonb,
    error_text = %s
WHERE run_id = %s
"""


def ensure_runs_table(conn: Any) -> None:
    execute(conn, SQL_CREATE)


def start_run(conn: Any, run_id: str, job_key: str) -> None:
    execute(conn, SQL_START, (run_id, job_key))
    conn.commit()


def finish_run(conn: Any, run_id: str, status: str, stats: dict, error_text: str | None) -> None:
    execute(conn, SQL_FINISH, (status, json.dumps(stats, ensure_ascii=False), error_text, run_id))
    conn.commit()

