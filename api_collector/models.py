from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, Iterator, Optional, Tuple, TypeVar

from .utils import sha256_hex, stable_json_dumps

T = TypeVar("T")


@dataclass(frozen=True)
class InputBatch(Generic[T]):
    """A bounded, ordered group of input values paginated together."""

    index: int
    items: Tuple[T, ...]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    @property
    def digest(self) -> str:
        return sha256_hex(stable_json_dumps(list(self.items)).encode("utf-8"))


@dataclass(frozen=True)
class Pager:
    page: int
    size: int

    @property
    def skip(self) -> int:
        return self.page * self.size


@dataclass(frozen=True)
class RequestData(Generic[T]):
    """Everything a query builder may look at to build one page request."""

    input: InputBatch[T]
    pager: Pager
    params: Dict[str, Any]


@dataclass(frozen=True)
class Task(Generic[T]):
    """One (batch, page) unit of work.

    total_pages stays None until a response reports it; it is then carried
    forward to every later page of the same batch.
    """

    batch: InputBatch[T]
    page: int = 0
    total_pages: Optional[int] = None

    def next_page(self, total_pages: Optional[int]) -> "Task[T]":
        return Task(batch=self.batch, page=self.page + 1, total_pages=total_pages)


@dataclass(frozen=True)
class PageOutcome:
    records: int
    stored: int
    total_pages: Optional[int]
    done: bool


@dataclass
class RawRecord:
    fingerprint: str
    params: Dict[str, Any]
    input_digest: str
    page_index: int
    record_index: int
    payload: bytes
    collected_at_utc: datetime
    url: str | None = None
    input: list[Any] = field(default_factory=list)


@dataclass
class Checkpoint:
    job_name: str
    last_since_utc: datetime | None = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunStats:
    batches: int = 0
    pages: int = 0
    records: int = 0
    stored: int = 0
    unchanged: int = 0
