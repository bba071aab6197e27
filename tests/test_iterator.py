import math
import unittest

from api_collector.errors import SourceQueryError
from api_collector.iterator import BatchedCursorIterator, open_batched_cursor

from .fakes import FakeConnection, FakeCursor


class TestBatchedCursorIterator(unittest.TestCase):
    def test_batches_reproduce_cursor_order(self):
        for total in (0, 1, 4, 5, 17):
            for size in (1, 2, 5, 20):
                keys = [f"K-{i}" for i in range(total)]
                cursor = FakeCursor([(k,) for k in keys])
                batches = list(BatchedCursorIterator(cursor, str, size))

                self.assertEqual(len(batches), math.ceil(total / size))
                self.assertEqual([k for b in batches for k in b.items], keys)
                for b in batches[:-1]:
                    self.assertEqual(len(b), size)
                self.assertEqual([b.index for b in batches], list(range(len(batches))))
                self.assertTrue(cursor.closed)

    def test_reads_exactly_batch_size_rows_per_pull(self):
        cursor = FakeCursor([("A",), ("B",), ("C",), ("D",), ("E",)])
        it = BatchedCursorIterator(cursor, str, 2)
        self.assertEqual(next(it).items, ("A", "B"))
        self.assertEqual(cursor.pos, 2)
        self.assertEqual(next(it).items, ("C", "D"))
        self.assertEqual(next(it).items, ("E",))
        self.assertEqual(cursor.fetch_sizes, [2, 2, 2])
        with self.assertRaises(StopIteration):
            next(it)
        self.assertTrue(cursor.closed)

    def test_bare_scalars_and_dict_rows(self):
        cursor = FakeCursor([1, {"id": 2}, [3]])
        batches = list(BatchedCursorIterator(cursor, int, 10))
        self.assertEqual(batches[0].items, (1, 2, 3))

    def test_wrong_type_fails_whole_batch(self):
        cursor = FakeCursor([("A",), (2,), ("C",)])
        it = BatchedCursorIterator(cursor, str, 3)
        with self.assertRaises(SourceQueryError):
            next(it)
        self.assertTrue(cursor.closed)
        with self.assertRaises(StopIteration):
            next(it)

    def test_multi_column_row_is_rejected(self):
        it = BatchedCursorIterator(FakeCursor([("A", "B")]), str, 1)
        with self.assertRaises(SourceQueryError):
            next(it)

    def test_decoder(self):
        it = BatchedCursorIterator(FakeCursor([("1",), ("2",)]), int, 5, decoder=int)
        self.assertEqual(next(it).items, (1, 2))

        bad = BatchedCursorIterator(FakeCursor([("x",)]), int, 5, decoder=int)
        with self.assertRaises(SourceQueryError) as ctx:
            next(bad)
        self.assertIsInstance(ctx.exception.__cause__, ValueError)

    def test_fetch_error_is_source_query_error(self):
        class Broken(FakeCursor):
            def fetchmany(self, size):
                raise RuntimeError("connection lost")

        cursor = Broken([])
        with self.assertRaises(SourceQueryError):
            next(BatchedCursorIterator(cursor, str, 3))
        self.assertTrue(cursor.closed)

    def test_early_abandon_releases_cursor(self):
        cursor = FakeCursor([("A",), ("B",), ("C",)])
        with BatchedCursorIterator(cursor, str, 1) as it:
            next(it)
        self.assertTrue(cursor.closed)
        it.close()
        self.assertTrue(it.closed)

    def test_batch_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            BatchedCursorIterator(FakeCursor([]), str, 0)

    def test_open_batched_cursor_uses_named_cursor(self):
        cursor = FakeCursor([("E-1",)])
        conn = FakeConnection(cursor)
        it = open_batched_cursor(conn, "SELECT 1", (7,), str, 10, name="keys")
        self.assertEqual(conn.cursor_names, ["keys"])
        self.assertEqual(cursor.executed, [("SELECT 1", (7,))])
        self.assertEqual(next(it).items, ("E-1",))

    def test_open_batched_cursor_query_failure(self):
        class Failing(FakeCursor):
            def execute(self, sql, params=()):
                raise RuntimeError("relation does not exist")

        cursor = Failing([])
        with self.assertRaises(SourceQueryError):
            open_batched_cursor(FakeConnection(cursor), "SELECT 1", (), str, 10)
        self.assertTrue(cursor.closed)


if __name__ == "__main__":
    unittest.main()
