from __future__ import annotations


class CollectorError(RuntimeError):
    """Base class for errors that abort a collection run."""

    def __init__(self, message: str, *, batch_index: int | None = None, page: int | None = None) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.page = page


class SourceQueryError(CollectorError):
    """The input query failed or a row could not be decoded."""


class FetchError(CollectorError):
    """A remote page request failed."""


class ParseError(CollectorError):
    """A response body could not be split into records or paged."""


class PersistenceError(CollectorError):
    """A raw record could not be written to the sink."""
