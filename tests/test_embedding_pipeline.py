"""Tests for the repository embedding pipeline."""

import asyncio

import pytest

from conftest import FakeAIClient, FakeLoader, FakeStore, source_file
from indexer.errors import RepositoryAccessError
from pipelines.indexer import EmbeddingPipeline, IndexingStats, main
from pipelines.repo_loader import RepoFile


REPO_URL = "https://github.com/acme/app"


class TestIndexRepository:

    @pytest.mark.asyncio
    async def test_every_qualifying_file_is_embedded(self, fake_store, fake_ai, policy):
        files = [source_file("src/a.ts"), source_file("src/b.ts"), source_file("src/c.ts")]
        pipeline = EmbeddingPipeline(FakeLoader(files), fake_ai, fake_store, policy)

        stats = await pipeline.index_repository("p1", REPO_URL)

        assert stats.loaded == 3
        assert stats.embedded == 3
        assert stats.skipped == []
        assert [e["file_name"] for e in fake_store.embeddings] == ["src/a.ts", "src/b.ts", "src/c.ts"]
        assert fake_store.embeddings[0]["summary"] == "Summary of src/a.ts"
        assert fake_store.embeddings[0]["source_code"] == files[0].content

    @pytest.mark.asyncio
    async def test_failed_summary_skips_only_that_file(self, fake_store, policy):
        files = [source_file("src/a.ts"), source_file("src/b.ts"), source_file("src/c.ts")]
        ai = FakeAIClient(fail_on={"src/b.ts"})
        pipeline = EmbeddingPipeline(FakeLoader(files), ai, fake_store, policy)

        stats = await pipeline.index_repository("p1", REPO_URL)

        assert stats.embedded == 2
        assert [s.path for s in stats.skipped] == ["src/b.ts"]
        assert "summary failed" in stats.skipped[0].error
        assert [e["file_name"] for e in fake_store.embeddings] == ["src/a.ts", "src/c.ts"]

    @pytest.mark.asyncio
    async def test_filtered_files_are_not_summarized(self, fake_store, fake_ai, policy):
        files = [
            source_file("src/a.ts"),
            RepoFile(path="src/tiny.ts", content="export {}"),
            RepoFile(path="src/index.ts", content="\n".join(f"export * from './m{i}';" for i in range(20))),
        ]
        pipeline = EmbeddingPipeline(FakeLoader(files), fake_ai, fake_store, policy)

        stats = await pipeline.index_repository("p1", REPO_URL)

        assert stats.filtered_out == 2
        assert stats.eligible == 1
        assert fake_ai.summarized == ["src/a.ts"]

    @pytest.mark.asyncio
    async def test_empty_summary_is_skipped(self, fake_store, policy):
        class BlankAI(FakeAIClient):
            async def summarize(self, path, content):
                return ""

        pipeline = EmbeddingPipeline(FakeLoader([source_file("src/a.ts")]), BlankAI(), fake_store, policy)

        stats = await pipeline.index_repository("p1", REPO_URL)

        assert stats.embedded == 0
        assert len(stats.skipped) == 1
        assert fake_store.embeddings == []

    @pytest.mark.asyncio
    async def test_loader_error_propagates(self, fake_store, fake_ai, policy, caplog):
        loader = FakeLoader([], error=RepositoryAccessError("GitHub returned 401", status_code=401))
        pipeline = EmbeddingPipeline(loader, fake_ai, fake_store, policy)

        with pytest.raises(RepositoryAccessError):
            await pipeline.index_repository("p1", REPO_URL)
        assert fake_store.embeddings == []
        failure = [r for r in caplog.records if "Repository load failed" in r.getMessage()]
        assert failure and failure[0].exc_info is not None
        assert failure[0].ctx_project_id == "p1"

    @pytest.mark.asyncio
    async def test_token_is_passed_to_loader(self, fake_store, fake_ai, policy):
        loader = FakeLoader([])
        pipeline = EmbeddingPipeline(loader, fake_ai, fake_store, policy)

        await pipeline.index_repository("p1", REPO_URL, "ghp_secret")

        assert loader.calls == [(REPO_URL, "ghp_secret")]


class TestReindexProject:

    @pytest.mark.asyncio
    async def test_reindex_replaces_previous_embeddings(self, fake_store, fake_ai, policy):
        fake_store.embeddings.append({"id": "old", "project_id": "p1", "file_name": "src/removed.ts",
                                      "source_code": "", "summary": "", "embedding": None})
        fake_store.embeddings.append({"id": "other", "project_id": "p2", "file_name": "src/keep.ts",
                                      "source_code": "", "summary": "", "embedding": None})
        files = [source_file("src/a.ts"), source_file("src/b.ts")]
        pipeline = EmbeddingPipeline(FakeLoader(files), fake_ai, fake_store, policy)

        stats = await pipeline.reindex_project("p1", REPO_URL)

        assert stats.deleted == 1
        assert stats.embedded == 2
        assert await pipeline.get_indexed_file_count("p1") == 2
        assert sorted(e["file_name"] for e in fake_store.embeddings if e["project_id"] == "p1") == [
            "src/a.ts", "src/b.ts"
        ]
        assert await fake_store.count_embeddings("p2") == 1

    @pytest.mark.asyncio
    async def test_overlapping_index_and_reindex_leave_one_row_per_file(self, fake_ai, policy):
        class SlowLoader(FakeLoader):
            async def load(self, repo_url, token=None):
                await asyncio.sleep(0)
                return await super().load(repo_url, token)

        class SlowStore(FakeStore):
            async def insert_embedding(self, *args):
                await asyncio.sleep(0)
                return await super().insert_embedding(*args)

        store = SlowStore()
        files = [source_file(f"src/f{i}.ts") for i in range(3)]
        pipeline = EmbeddingPipeline(SlowLoader(files), fake_ai, store, policy)

        await asyncio.gather(
            pipeline.index_repository("p-overlap", REPO_URL),
            pipeline.reindex_project("p-overlap", REPO_URL),
        )

        assert sorted(e["file_name"] for e in store.embeddings) == ["src/f0.ts", "src/f1.ts", "src/f2.ts"]
        assert await pipeline.get_indexed_file_count("p-overlap") == 3


class TestIndexingStats:

    def test_to_dict_is_json_ready(self):
        stats = IndexingStats(project_id="p1", loaded=4, filtered_out=1, embedded=3)
        stats.finish()

        data = stats.to_dict()

        assert data["eligible"] == 3
        assert isinstance(data["started_at"], str)
        assert isinstance(data["finished_at"], str)
        assert data["duration_seconds"] >= 0


class TestCommandLine:

    def test_missing_arguments_exit(self):
        with pytest.raises(SystemExit):
            main([])
