"""Concurrent paginated collection of raw API records.

An ApiCollector pulls InputBatches from an iterator, pages through the remote
results for each batch and hands every record to a RawSink. Pages of one batch
run strictly in order, because the page count is often only known from a
response; different batches run side by side up to ``concurrency`` tasks.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterator, Optional, Protocol, Sequence
from urllib.parse import urlencode

from .errors import CollectorError, FetchError, ParseError, PersistenceError
from .logging_utils import get_logger, log_json
from .models import InputBatch, PageOutcome, Pager, RawRecord, RequestData, RunStats, Task
from .storage import RawSink, check_table_name, encode_payload, params_fingerprint, record_fingerprint
from .utils import as_iso, now_utc


class PageFetcher(Protocol):
    def get(self, path: str, params: Dict[str, Any]) -> Any: ...


QueryBuilder = Callable[[RequestData], Dict[str, Any]]
ResponseParser = Callable[[Any], Sequence[Any]]
TotalPagesResolver = Callable[[Any, "ApiCollectorArgs"], Optional[int]]


@dataclass(frozen=True)
class ApiCollectorArgs:
    params: Dict[str, Any]
    table: str
    api_client: PageFetcher
    url_template: str
    query: QueryBuilder
    input: Iterator[InputBatch]
    response_parser: ResponseParser
    sink: RawSink
    get_total_pages: Optional[TotalPagesResolver] = None
    page_size: int = 100
    concurrency: int = 10
    incremental: bool = False
    since: Optional[datetime] = None


def is_last_page(task: Task, record_count: int, total_pages: Optional[int]) -> bool:
    if record_count == 0:
        return True
    if total_pages is None:
        return False
    return total_pages < 1 or task.page + 1 >= total_pages


class ApiCollector:
    def __init__(self, args: ApiCollectorArgs, logger: logging.Logger | None = None):
        if args.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {args.page_size}")
        if args.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {args.concurrency}")
        if args.incremental and args.since is None:
            raise ValueError("incremental collection requires a since watermark")
        check_table_name(args.table)
        try:
            self.url = args.url_template.format(**args.params)
        except KeyError as e:
            raise ValueError(f"url_template references unknown param {e}") from e

        self.args = args
        self.logger = logger or get_logger(__name__)
        # A since bound scopes the result set, so it is part of the record identity.
        self.record_params = dict(args.params)
        if args.since is not None:
            self.record_params["Since"] = as_iso(args.since)
        self.params_fingerprint = params_fingerprint(self.record_params)

    def execute(self) -> RunStats:
        """Run until the input is exhausted; raise the first task error, if any."""
        args = self.args
        stats = RunStats()
        ready: Deque[Task] = deque()
        pending: Dict[Future, Task] = {}
        failure: CollectorError | None = None
        exhausted = False

        log_json(
            self.logger,
            logging.INFO,
            "collector_started",
            table=args.table,
            params=self.record_params,
            params_fingerprint=self.params_fingerprint,
            url=self.url,
            concurrency=args.concurrency,
            page_size=args.page_size,
            since=args.since,
        )

        try:
            with ThreadPoolExecutor(max_workers=args.concurrency, thread_name_prefix="collector") as pool:
                while True:
                    # Fill free slots: next pages of running batches first, then new batches.
                    while failure is None and len(pending) < args.concurrency:
                        if ready:
                            task = ready.popleft()
                        elif not exhausted:
                            try:
                                batch = next(args.input, None)
                            except CollectorError as e:
                                failure = e
                                log_json(self.logger, logging.ERROR, "input_failed", error=str(e))
                                break
                            if batch is None:
                                exhausted = True
                                break
                            stats.batches += 1
                            task = Task(batch=batch)
                        else:
                            break
                        pending[pool.submit(self._run_task, task)] = task

                    if not pending:
                        break

                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for fut in done:
                        task = pending.pop(fut)
                        try:
                            outcome = fut.result()
                        except CollectorError as e:
                            if failure is None:
                                failure = e
                                log_json(
                                    self.logger,
                                    logging.ERROR,
                                    "task_failed",
                                    batch=task.batch.index,
                                    page=task.page,
                                    error_type=type(e).__name__,
                                    error=str(e),
                                    in_flight=len(pending),
                                )
                            continue

                        stats.pages += 1
                        stats.records += outcome.records
                        stats.stored += outcome.stored
                        stats.unchanged += outcome.records - outcome.stored
                        if outcome.done:
                            log_json(self.logger, logging.DEBUG, "batch_done", batch=task.batch.index, pages=task.page + 1)
                        elif failure is None:
                            ready.append(task.next_page(outcome.total_pages))
        finally:
            self._close_input()

        if failure is not None:
            log_json(self.logger, logging.ERROR, "collector_failed", table=args.table, error=str(failure), stats=stats.__dict__)
            raise failure

        log_json(self.logger, logging.INFO, "collector_finished", table=args.table, stats=stats.__dict__)
        return stats

    def _run_task(self, task: Task) -> PageOutcome:
        args = self.args
        batch_index = task.batch.index
        request = RequestData(input=task.batch, pager=Pager(page=task.page, size=args.page_size), params=args.params)

        try:
            query = args.query(request)
            request_url = f"{self.url}?{urlencode(query, doseq=True)}"
            response = args.api_client.get(self.url, query)
        except Exception as e:
            raise FetchError(
                f"fetch failed for batch {batch_index} page {task.page}: {e}", batch_index=batch_index, page=task.page
            ) from e

        try:
            records = list(args.response_parser(response))
            payloads = [encode_payload(item) for item in records]
            total_pages = task.total_pages
            if total_pages is None and args.get_total_pages is not None:
                total_pages = args.get_total_pages(response, args)
        except Exception as e:
            raise ParseError(
                f"cannot parse response for batch {batch_index} page {task.page}: {e}",
                batch_index=batch_index,
                page=task.page,
            ) from e

        digest = task.batch.digest
        collected_at = now_utc()
        values = list(task.batch.items)
        stored = 0
        for record_index, payload in enumerate(payloads):
            try:
                raw = RawRecord(
                    fingerprint=record_fingerprint(self.record_params, digest, task.page, record_index),
                    params=self.record_params,
                    input_digest=digest,
                    page_index=task.page,
                    record_index=record_index,
                    payload=payload,
                    collected_at_utc=collected_at,
                    url=request_url,
                    input=values,
                )
                if args.sink.store(raw):
                    stored += 1
            except Exception as e:
                raise PersistenceError(
                    f"cannot store record {record_index} of batch {batch_index} page {task.page}: {e}",
                    batch_index=batch_index,
                    page=task.page,
                ) from e

        done = is_last_page(task, len(records), total_pages)
        log_json(
            self.logger,
            logging.DEBUG,
            "page_collected",
            batch=batch_index,
            page=task.page,
            records=len(records),
            stored=stored,
            total_pages=total_pages,
            done=done,
        )
        return PageOutcome(records=len(records), stored=stored, total_pages=total_pages, done=done)

    def _close_input(self) -> None:
        close = getattr(self.args.input, "close", None)
        if callable(close):
            close()
