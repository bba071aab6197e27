"""Collect Jira epics referenced by the issues of one board.

Epic keys come from already-collected issue rows, so epics that live outside
the board are fetched too. Each batch of keys becomes one JQL search that is
paged through until Jira's reported total is reached.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Sequence

from ..collector import ApiCollector, ApiCollectorArgs, PageFetcher
from ..config import CollectorOptions
from ..iterator import BatchedCursorIterator, open_batched_cursor
from ..models import RequestData, RunStats
from ..storage import RawSink

RAW_EPIC_TABLE = "_raw_jira_api_epics"
SEARCH_URL = "api/2/search"

EPIC_KEYS_SQL = """
SELECT DISTINCT i.epic_key
FROM _tool_jira_issues i
LEFT JOIN _tool_jira_board_issues bi ON (
  i.connection_id = bi.connection_id
  AND i.issue_id = bi.issue_id
)
WHERE i.connection_id = %s
  AND bi.board_id = %s
  AND i.epic_key != ''
ORDER BY i.epic_key
"""


def get_epic_keys_iterator(conn: Any, connection_id: int, board_id: int, batch_size: int = 100) -> BatchedCursorIterator[str]:
    return open_batched_cursor(
        conn, EPIC_KEYS_SQL, (connection_id, board_id), str, batch_size, name="jira_epic_keys"
    )


@dataclass(frozen=True)
class EpicQuery:
    """Builds search parameters for a batch of epic keys."""

    since: datetime | None = None
    expand: str | None = "changelog"

    def jql(self, keys: Sequence[str]) -> str:
        clause = f"issue in ({','.join(keys)})"
        if self.since is not None:
            clause += f" AND updated >= '{self.since.strftime('%Y/%m/%d %H:%M')}'"
        return f"{clause} ORDER BY created ASC"

    def __call__(self, req: RequestData) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "jql": self.jql(list(req.input)),
            "startAt": req.pager.skip,
            "maxResults": req.pager.size,
        }
        if self.expand:
            query["expand"] = self.expand
        return query


def get_total_pages_from_response(resp: Any, args: ApiCollectorArgs) -> int | None:
    body = resp.json()
    total = body.get("total") if isinstance(body, dict) else None
    if not isinstance(total, int) or isinstance(total, bool):
        return None
    return math.ceil(total / args.page_size)


def parse_issues_response(resp: Any) -> list[Any]:
    body = resp.json()
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    issues = body.get("issues") or []
    if not isinstance(issues, list):
        raise ValueError("'issues' is not a list")
    return issues


def collect_epics(
    conn: Any,
    sink: RawSink,
    api_client: PageFetcher,
    connection_id: int,
    board_id: int,
    options: CollectorOptions,
) -> RunStats:
    epic_keys = get_epic_keys_iterator(conn, connection_id, board_id, batch_size=options.batch_size)
    with epic_keys:
        collector = ApiCollector(
            ApiCollectorArgs(
                params={"ConnectionId": connection_id, "BoardId": board_id},
                table=RAW_EPIC_TABLE,
                api_client=api_client,
                url_template=SEARCH_URL,
                query=EpicQuery(since=options.since),
                input=epic_keys,
                response_parser=parse_issues_response,
                get_total_pages=get_total_pages_from_response,
                sink=sink,
                page_size=options.page_size,
                concurrency=options.concurrency,
                incremental=options.incremental,
                since=options.since,
            )
        )
        return collector.execute()
