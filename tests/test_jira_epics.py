import unittest
from datetime import datetime, timezone

from api_collector.config import CollectorOptions
from api_collector.models import InputBatch, Pager, RequestData
from api_collector.plugins.jira_epics import (
    EPIC_KEYS_SQL,
    RAW_EPIC_TABLE,
    EpicQuery,
    collect_epics,
    get_total_pages_from_response,
    parse_issues_response,
)

from .fakes import FakeConnection, FakeCursor, FakeResponse, MemorySink


class FakeJira:
    """Answers api/2/search for a fixed set of epics, paging by startAt/maxResults."""

    def __init__(self, epics):
        self.epics = epics
        self.requests = []

    def get(self, path, params):
        self.requests.append((path, dict(params)))
        jql = params["jql"]
        keys = jql[jql.index("(") + 1:jql.index(")")].split(",")
        matched = [{"key": k, "fields": {"summary": self.epics[k]}} for k in keys if k in self.epics]
        start, size = params["startAt"], params["maxResults"]
        return FakeResponse(
            {"startAt": start, "maxResults": size, "total": len(matched), "issues": matched[start:start + size]}
        )


class Args:
    page_size = 50


class TestEpicQuery(unittest.TestCase):
    def test_full_sweep_query(self):
        req = RequestData(input=InputBatch(index=0, items=("EP-1", "EP-2")), pager=Pager(page=2, size=50), params={})
        query = EpicQuery()(req)
        self.assertEqual(
            query,
            {
                "jql": "issue in (EP-1,EP-2) ORDER BY created ASC",
                "startAt": 100,
                "maxResults": 50,
                "expand": "changelog",
            },
        )

    def test_since_bound(self):
        since = datetime(2024, 3, 9, 7, 5, tzinfo=timezone.utc)
        self.assertEqual(
            EpicQuery(since=since).jql(["EP-1"]),
            "issue in (EP-1) AND updated >= '2024/03/09 07:05' ORDER BY created ASC",
        )

    def test_without_expand(self):
        req = RequestData(input=InputBatch(index=0, items=("EP-1",)), pager=Pager(page=0, size=10), params={})
        self.assertNotIn("expand", EpicQuery(expand=None)(req))


class TestResponseHandling(unittest.TestCase):
    def test_total_pages(self):
        self.assertEqual(get_total_pages_from_response(FakeResponse({"total": 101}), Args()), 3)
        self.assertEqual(get_total_pages_from_response(FakeResponse({"total": 100}), Args()), 2)
        self.assertEqual(get_total_pages_from_response(FakeResponse({"total": 0}), Args()), 0)
        self.assertIsNone(get_total_pages_from_response(FakeResponse({"issues": []}), Args()))
        self.assertIsNone(get_total_pages_from_response(FakeResponse([]), Args()))

    def test_parse_issues(self):
        issues = [{"key": "EP-1"}, {"key": "EP-2"}]
        self.assertEqual(parse_issues_response(FakeResponse({"issues": issues})), issues)
        self.assertEqual(parse_issues_response(FakeResponse({"total": 0})), [])
        with self.assertRaises(ValueError):
            parse_issues_response(FakeResponse(["not", "an", "object"]))
        with self.assertRaises(ValueError):
            parse_issues_response(FakeResponse({"issues": "nope"}))


class TestCollectEpics(unittest.TestCase):
    def test_epic_keys_come_back_in_stable_order(self):
        self.assertIn("SELECT DISTINCT i.epic_key", EPIC_KEYS_SQL)
        self.assertTrue(EPIC_KEYS_SQL.strip().endswith("ORDER BY i.epic_key"))

    def test_collects_all_epic_pages(self):
        keys = ["EP-1", "EP-2", "EP-3", "EP-4", "EP-5"]
        cursor = FakeCursor([(k,) for k in keys])
        conn = FakeConnection(cursor)
        jira = FakeJira({k: f"epic {k}" for k in keys if k != "EP-4"})
        sink = MemorySink()

        stats = collect_epics(conn, sink, jira, 3, 11, CollectorOptions(batch_size=3, concurrency=2, page_size=2))

        self.assertEqual(cursor.executed, [(EPIC_KEYS_SQL, (3, 11))])
        self.assertTrue(cursor.closed)
        self.assertEqual(RAW_EPIC_TABLE, "_raw_jira_api_epics")
        # batch 1: 3 epics over 2 pages; batch 2: 1 epic (EP-4 unknown) on 1 page
        self.assertEqual(stats.batches, 2)
        self.assertEqual(stats.pages, 3)
        self.assertEqual(stats.records, 4)
        self.assertEqual(len(sink.records), 4)
        for rec in sink.records.values():
            self.assertEqual(rec.params, {"ConnectionId": 3, "BoardId": 11})
            self.assertTrue(rec.url.startswith("api/2/search?"))
        self.assertEqual({p for p, _ in jira.requests}, {"api/2/search"})
        self.assertEqual(sorted(q["startAt"] for _, q in jira.requests), [0, 0, 2])

    def test_since_bound_scopes_record_identity(self):
        cursor = FakeCursor([("EP-1",)])
        jira = FakeJira({"EP-1": "epic EP-1"})
        sink = MemorySink()
        since = datetime(2024, 3, 9, tzinfo=timezone.utc)

        collect_epics(
            FakeConnection(cursor), sink, jira, 3, 11,
            CollectorOptions(batch_size=10, page_size=10, since=since, incremental=True),
        )

        rec = list(sink.records.values())[0]
        self.assertEqual(rec.params, {"ConnectionId": 3, "BoardId": 11, "Since": "2024-03-09T00:00:00Z"})
        self.assertIn("AND updated >= '2024/03/09 00:00'", jira.requests[0][1]["jql"])


if __name__ == "__main__":
    unittest.main()
