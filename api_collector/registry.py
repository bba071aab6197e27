from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict

from .config import CollectorOptions, Settings
from .http_client import build_api_client
from .models import RunStats
from .plugins.jira_epics import RAW_EPIC_TABLE, collect_epics
from .storage import RawSink

JobRunner = Callable[[Any, RawSink, CollectorOptions], RunStats]


@dataclass(frozen=True)
class Job:
    name: str
    key: str
    table: str
    run: JobRunner


def _jira_epics(settings: Settings) -> Job:
    if not settings.jira_endpoint:
        raise RuntimeError("Missing JIRA_ENDPOINT.")
    if settings.jira_connection_id is None or settings.jira_board_id is None:
        raise RuntimeError("Missing JIRA_CONNECTION_ID or JIRA_BOARD_ID.")

    client = build_api_client(settings.jira_endpoint, settings.http_user_agent, settings.jira_token)
    connection_id = settings.jira_connection_id
    board_id = settings.jira_board_id

    def run(conn: Any, sink: RawSink, options: CollectorOptions) -> RunStats:
        return collect_epics(conn, sink, client, connection_id, board_id, options)

    return Job(
        name="jira_epics",
        key=f"jira_epics:{connection_id}:{board_id}",
        table=RAW_EPIC_TABLE,
        run=run,
    )


JOB_FACTORIES: Dict[str, Callable[[Settings], Job]] = {
    "jira_epics": _jira_epics,
}


def build_job(settings: Settings, name: str) -> Job:
    factory = JOB_FACTORIES.get(name)
    if factory is None:
        raise SystemExit(f"Unknown job: {name}. Available: {', '.join(JOB_FACTORIES.keys())}")
    return factory(settings)
