from __future__ import annotations

import json
from typing import Any

from .db import execute, fetchone
from .models import Checkpoint

SQL_CREATE = """
CREATE TABLE IF NOT EXISTS collector_checkpoints (
  job_key TEXT PRIMARY KEY,
  last_since_utc TIMESTAMPTZ,
  meta_json JSONB NOT NULL DEFAULT '{}'::jsonb,
  updated_at_utc TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

SQL_GET = """
SELECT job_key, last_since_utc, meta_json
FROM collector_checkpoints
WHERE job_key = %s
"""

SQL_UPSERT = """
INSERT INTO collector_checkpoints (job_key, last_since_utc, meta_json, updated_at_utc)
VALUES (%s, %s, %s::jsonb, now())
ON CONFLICT (job_key)
DO UPDATE SET
  last_since_utc = EXCLUDED.last_since_utc,
  meta_json = EXCLUDED.meta_json,
  updated_at_utc = now()
"""


def ensure_checkpoints_table(conn: Any) -> None:
    execute(conn, SQL_CREATE)


def get_checkpoint(conn: Any, job_key: str) -> Checkpoint:
    row = fetchone(conn, SQL_GET, (job_key,))
    if not row:
        return Checkpoint(job_name=job_key)
    _, last_since_utc, meta_json = row
    return Checkpoint(job_name=job_key, last_since_utc=last_since_utc, meta=meta_json or {})


def set_checkpoint(conn: Any, cp: Checkpoint) -> None:
    execute(
        conn,
        SQL_UPSERT,
        (cp.job_name, cp.last_since_utc, json.dumps(cp.meta or {}, ensure_ascii=False, default=str)),
    )
