"""Tests for the PostgreSQL adapter retry behaviour and row mapping."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from indexer.postgres_adapter import PostgresAdapter, PostgresConfig


class FakePool:
    """Hands out one connection; ``failures`` connection errors are raised first."""

    def __init__(self, conn, failures=0):
        self.conn = conn
        self.failures = failures
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("connection was closed in the middle of operation")
        yield self.conn

    async def close(self):
        self.closed = True


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def make_adapter(pool, max_retries=3):
    sleep = AsyncMock()
    adapter = PostgresAdapter(PostgresConfig(), max_retries=max_retries, retry_delay=1.0, sleep=sleep)
    adapter.pool = pool
    adapter._create_pool = AsyncMock(side_effect=lambda: setattr(adapter, "pool", pool))
    return adapter, sleep


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.fetchval = AsyncMock()
    conn.fetchrow = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock()
    conn.executemany = AsyncMock()
    conn.transaction = MagicMock(return_value=FakeTransaction())
    return conn


class TestRunRetries:

    @pytest.mark.asyncio
    async def test_transient_error_reconnects_and_retries(self, conn):
        conn.fetchval.return_value = "emb-1"
        pool = FakePool(conn, failures=2)
        adapter, sleep = make_adapter(pool)

        row_id = await adapter.insert_embedding("p1", "src/a.ts", "code", "summary", [0.1, 0.2])

        assert row_id == "emb-1"
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]
        assert adapter._create_pool.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, conn):
        adapter, sleep = make_adapter(FakePool(conn, failures=5), max_retries=3)

        with pytest.raises(ConnectionResetError):
            await adapter.count_embeddings("p1")
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, conn):
        conn.fetchval.side_effect = ValueError("invalid input syntax")
        adapter, sleep = make_adapter(FakePool(conn))

        with pytest.raises(ValueError):
            await adapter.count_embeddings("p1")
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_uninitialized_adapter(self):
        adapter = PostgresAdapter(PostgresConfig())
        with pytest.raises(RuntimeError):
            await adapter.ping()


class TestQueries:

    @pytest.mark.asyncio
    async def test_embedding_is_written_as_float32_vector(self, conn):
        adapter, _ = make_adapter(FakePool(conn))

        await adapter.insert_embedding("p1", "src/a.ts", "code", "summary", [0.1, 0.2])

        args = conn.fetchval.await_args.args
        assert "summary_embedding" in args[0]
        assert args[1:5] == ("p1", "src/a.ts", "code", "summary")
        assert args[5].dtype == np.float32

    @pytest.mark.asyncio
    async def test_embedding_for_known_file_is_overwritten(self, conn):
        adapter, _ = make_adapter(FakePool(conn))

        await adapter.insert_embedding("p1", "src/a.ts", "code", "summary", [0.1, 0.2])

        sql = conn.fetchval.await_args.args[0]
        assert "ON CONFLICT (project_id, file_name) DO UPDATE" in sql

    @pytest.mark.asyncio
    async def test_search_raises_ivfflat_probes_inside_transaction(self, conn):
        conn.fetch.return_value = [{"id": "e1", "file_name": "src/a.ts", "source_code": "code",
                                    "summary": "s", "similarity": 0.4}]
        adapter, _ = make_adapter(FakePool(conn))
        adapter.config = PostgresConfig(ivfflat_probes=25)

        rows = await adapter.search_similar("p1", [0.1, 0.2], limit=10)

        conn.transaction.assert_called_once()
        conn.execute.assert_awaited_once_with("SET LOCAL ivfflat.probes = 25")
        assert conn.fetch.await_args.args[2:] == ("p1", 10)
        assert rows == [{"id": "e1", "file_name": "src/a.ts", "source_code": "code",
                         "summary": "s", "similarity": 0.4}]

    @pytest.mark.asyncio
    async def test_soft_delete_reports_match(self, conn):
        adapter, _ = make_adapter(FakePool(conn))

        conn.execute.return_value = "UPDATE 1"
        assert await adapter.soft_delete_project("p1") is True
        conn.execute.return_value = "UPDATE 0"
        assert await adapter.soft_delete_project("p1") is False

    @pytest.mark.asyncio
    async def test_delete_embeddings_returns_count(self, conn):
        conn.execute.return_value = "DELETE 12"
        adapter, _ = make_adapter(FakePool(conn))
        assert await adapter.delete_embeddings("p1") == 12

    @pytest.mark.asyncio
    async def test_insert_commits_counts_new_rows(self, conn):
        conn.fetchval.side_effect = ["c-1", None, "c-3"]
        adapter, _ = make_adapter(FakePool(conn))
        commits = [
            {"commit_hash": h, "commit_message": "m", "commit_author_name": "a",
             "commit_author_avatar": "", "commit_date": None, "summary": ""}
            for h in ("a1", "a2", "a3")
        ]

        assert await adapter.insert_commits("p1", commits) == 2
        assert "ON CONFLICT (project_id, commit_hash) DO NOTHING" in conn.fetchval.await_args.args[0]

    @pytest.mark.asyncio
    async def test_insert_no_commits_skips_database(self, conn):
        adapter, _ = make_adapter(FakePool(conn))
        assert await adapter.insert_commits("p1", []) == 0
        conn.fetchval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_complete_meeting_keeps_issue_order(self, conn):
        adapter, _ = make_adapter(FakePool(conn))
        issues = [
            {"start": "00:00", "end": "01:00", "gist": "g1", "headline": "h1", "summary": "s1"},
            {"start": "01:00", "end": "02:00", "gist": "g2", "headline": "h2", "summary": "s2"},
        ]

        await adapter.complete_meeting("m1", "h1", issues)

        rows = conn.executemany.await_args.args[1]
        assert [(r[1], r[5]) for r in rows] == [(0, "h1"), (1, "h2")]
        assert conn.execute.await_args.args[1:] == ("m1", "h1")

    @pytest.mark.asyncio
    async def test_missing_meeting(self, conn):
        conn.fetchrow.return_value = None
        adapter, _ = make_adapter(FakePool(conn))
        assert await adapter.get_meeting("missing") is None
