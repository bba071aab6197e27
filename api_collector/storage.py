from __future__ import annotations

import base64
import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Protocol

from .models import RawRecord
from .utils import as_iso, parse_iso, sha256_hex, stable_json_dumps

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SQL_CREATE = """
CREATE TABLE IF NOT EXISTS {table} (
  fingerprint TEXT PRIMARY KEY,
  params JSONB NOT NULL,
  input JSONB NOT NULL,
  input_digest TEXT NOT NULL,
  page_index INTEGER NOT NULL,
  record_index INTEGER NOT NULL,
  url TEXT,
  payload BYTEA NOT NULL,
  collected_at_utc TIMESTAMPTZ NOT NULL
)
"""

SQL_UPSERT = """
INSERT INTO {table} (
  fingerprint, params, input, input_digest,
  page_index, record_index, url, payload, collected_at_utc
)
VALUES (%s, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s, %s)
ON CONFLICT (fingerprint)
DO UPDATE SET
  input = EXCLUDED.input,
  url = EXCLUDED.url,
  payload = EXCLUDED.payload,
  collected_at_utc = EXCLUDED.collected_at_utc
WHERE {table}.payload IS DISTINCT FROM EXCLUDED.payload
RETURNING fingerprint
"""


def params_fingerprint(params: Dict[str, Any]) -> str:
    return sha256_hex(stable_json_dumps(params).encode("utf-8"))


def record_fingerprint(params: Dict[str, Any], batch_digest: str, page_index: int, record_index: int) -> str:
    material = stable_json_dumps([params, batch_digest, page_index, record_index])
    return sha256_hex(material.encode("utf-8"))


def encode_payload(record: Any) -> bytes:
    if isinstance(record, bytes):
        return record
    if isinstance(record, bytearray):
        return bytes(record)
    if isinstance(record, str):
        return record.encode("utf-8")
    return stable_json_dumps(record).encode("utf-8")


class RawSink(Protocol):
    def store(self, record: RawRecord) -> bool:
        """Persist ``record``; True if a row was written, False if an identical one existed."""
        ...


def check_table_name(table: str) -> str:
    if not _TABLE_RE.match(table or ""):
        raise ValueError(f"invalid raw table name: {table!r}")
    return table


class PostgresRawStore:
    """Fingerprint-keyed upsert into a raw table.

    Uses its own autocommit connection so every stored record is durable once
    ``store`` returns. Workers share the connection under a lock.
    """

    def __init__(self, dsn: str, table: str):
        from .db import raw_connect

        self.table = check_table_name(table)
        self._conn = raw_connect(dsn, autocommit=True)
        self._lock = threading.Lock()

    def ensure_table(self) -> None:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(SQL_CREATE.format(table=self.table))

    def store(self, record: RawRecord) -> bool:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(
                SQL_UPSERT.format(table=self.table),
                (
                    record.fingerprint,
                    stable_json_dumps(record.params),
                    stable_json_dumps(record.input),
                    record.input_digest,
                    record.page_index,
                    record.record_index,
                    record.url,
                    record.payload,
                    record.collected_at_utc,
                ),
            )
            return cur.fetchone() is not None

    def close(self) -> None:
        self._conn.close()


class LocalJsonlRawStore:
    """JSONL-backed raw sink for dry runs.

    A line is appended only for a new fingerprint or a changed payload; on
    load the last line per fingerprint wins.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            self._path.write_text("", encoding="utf-8")
        self._by_fp: Dict[str, RawRecord] = {}
        self._lock = threading.Lock()
        self._load_existing()

    def _load_existing(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                rec = _record_from_dict(json.loads(line))
                self._by_fp[rec.fingerprint] = rec

    def store(self, record: RawRecord) -> bool:
        with self._lock:
            existing = self._by_fp.get(record.fingerprint)
            if existing is not None and existing.payload == record.payload:
                return False
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(_record_to_dict(record), ensure_ascii=False) + "\n")
            self._by_fp[record.fingerprint] = record
            return True

    def get(self, fingerprint: str) -> RawRecord | None:
        return self._by_fp.get(fingerprint)

    def iter_all(self) -> Iterable[RawRecord]:
        return list(self._by_fp.values())


def _record_to_dict(rec: RawRecord) -> dict:
    return {
        "fingerprint": rec.fingerprint,
        "params": rec.params,
        "input": rec.input,
        "input_digest": rec.input_digest,
        "page_index": rec.page_index,
        "record_index": rec.record_index,
        "url": rec.url,
        "payload_b64": base64.b64encode(rec.payload).decode("ascii"),
        "collected_at_utc": as_iso(rec.collected_at_utc),
    }


def _record_from_dict(d: dict) -> RawRecord:
    return RawRecord(
        fingerprint=str(d["fingerprint"]),
        params=dict(d.get("params") or {}),
        input_digest=str(d["input_digest"]),
        page_index=int(d["page_index"]),
        record_index=int(d["record_index"]),
        payload=base64.b64decode(d["payload_b64"]),
        collected_at_utc=parse_iso(d["collected_at_utc"]),
        url=d.get("url"),
        input=list(d.get("input") or []),
    )
