from __future__ import annotations

from typing import Any, Callable, Generic, Iterator, Optional, Protocol, Sequence, Type, TypeVar

from .errors import SourceQueryError
from .models import InputBatch

T = TypeVar("T")


class Cursor(Protocol):
    def fetchmany(self, size: int) -> Sequence[Any]: ...

    def close(self) -> None: ...


class BatchedCursorIterator(Generic[T]):
    """Group the rows of a forward-only cursor into InputBatches.

    Every row must carry a single scalar of ``item_type``. When ``decoder`` is
    given it converts the raw column value instead of the type check. A row
    that fails either way raises SourceQueryError and closes the cursor.

    The cursor is closed on exhaustion, on failure, or by ``close()`` when a
    consumer stops early; the iterator is also a context manager for that.
    """

    def __init__(
        self,
        cursor: Cursor,
        item_type: Type[T],
        batch_size: int,
        decoder: Optional[Callable[[Any], T]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._cursor = cursor
        self.item_type = item_type
        self.batch_size = batch_size
        self._decoder = decoder
        self._next_index = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[InputBatch[T]]:
        return self

    def __next__(self) -> InputBatch[T]:
        if self._closed:
            raise StopIteration
        try:
            rows = self._cursor.fetchmany(self.batch_size)
        except Exception as e:
            self.close()
            raise SourceQueryError(f"failed to read input rows: {e}", batch_index=self._next_index) from e
        if not rows:
            self.close()
            raise StopIteration
        try:
            items = tuple(self._decode(row) for row in rows)
        except SourceQueryError:
            self.close()
            raise
        batch = InputBatch(index=self._next_index, items=items)
        self._next_index += 1
        return batch

    def _decode(self, row: Any) -> T:
        value = row
        if isinstance(row, dict):
            row = tuple(row.values())
        if isinstance(row, (tuple, list)):
            if len(row) != 1:
                raise SourceQueryError(
                    f"expected one column per input row, got {len(row)}", batch_index=self._next_index
                )
            value = row[0]

        if self._decoder is not None:
            try:
                return self._decoder(value)
            except Exception as e:
                raise SourceQueryError(
                    f"cannot decode input value {value!r} as {self.item_type.__name__}: {e}",
                    batch_index=self._next_index,
                ) from e

        if not isinstance(value, self.item_type):
            raise SourceQueryError(
                f"input value {value!r} is {type(value).__name__}, expected {self.item_type.__name__}",
                batch_index=self._next_index,
            )
        return value

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cursor.close()

    def __enter__(self) -> "BatchedCursorIterator[T]":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def open_batched_cursor(
    conn: Any,
    sql: str,
    params: tuple,
    item_type: Type[T],
    batch_size: int,
    *,
    decoder: Optional[Callable[[Any], T]] = None,
    name: str = "api_collector_input",
) -> BatchedCursorIterator[T]:
    # Named cursors are server-side in both psycopg and psycopg2.
    cur = conn.cursor(name=name)
    try:
        cur.execute(sql, params)
    except Exception as e:
        cur.close()
        raise SourceQueryError(f"input query failed: {e}") from e
    return BatchedCursorIterator(cur, item_type, batch_size, decoder=decoder)
