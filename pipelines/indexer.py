"""Embedding pipeline for RepoBrief.

Loads a repository, keeps the files worth summarizing, and for each one in
turn asks the AI client for a summary and an embedding before persisting the
result. Files are processed strictly one after another so a run never holds
more than one AI request or database write in flight.

Usage:
    python -m pipelines.indexer --project-id <id> --repo-url https://github.com/org/repo [--reindex]
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config.policy_loader import IngestPolicy, ingest_policy
from indexer.ai_client import AIClient
from indexer.file_filter import rejection_reason
from indexer.postgres_adapter import PostgresAdapter
from observability.logging import get_structured_logger
from observability.prometheus_metrics import record_file_result, record_indexing_run
from pipelines.repo_loader import RepositoryLoader

logger = logging.getLogger(__name__)

# One indexing or re-indexing run per project at a time within this process
_project_locks: Dict[str, asyncio.Lock] = {}


def project_lock(project_id: str) -> asyncio.Lock:
    lock = _project_locks.get(project_id)
    if lock is None:
        lock = _project_locks[project_id] = asyncio.Lock()
    return lock


@dataclass
class SkippedFile:
    """A file that qualified for indexing but could not be embedded."""
    path: str
    error: str


@dataclass
class IndexingStats:
    """Outcome of one indexing run."""
    project_id: str
    loaded: int = 0
    filtered_out: int = 0
    embedded: int = 0
    skipped: List[SkippedFile] = field(default_factory=list)
    deleted: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def eligible(self) -> int:
        return self.loaded - self.filtered_out

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def finish(self):
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["eligible"] = self.eligible
        data["duration_seconds"] = round(self.duration, 3)
        return data


class EmbeddingPipeline:
    """Loader -> filter -> summarize -> embed -> persist, one file at a time."""

    def __init__(self, loader: RepositoryLoader, ai_client: AIClient, store: PostgresAdapter,
                 policy: IngestPolicy = ingest_policy):
        self.loader = loader
        self.ai_client = ai_client
        self.store = store
        self.policy = policy

    async def index_repository(self, project_id: str, repo_url: str,
                               token: Optional[str] = None) -> IndexingStats:
        """Index every qualifying file of a repository into the project.

        Loader failures (including RepositoryAccessError) abort the run and
        propagate to the caller. A failure on an individual file is logged,
        recorded in ``stats.skipped`` and does not stop the run. Runs for the
        same project are serialized.
        """
        async with project_lock(project_id):
            return await self._index(project_id, repo_url, token)

    async def _index(self, project_id: str, repo_url: str, token: Optional[str]) -> IndexingStats:
        log = get_structured_logger(__name__, project_id=project_id)
        stats = IndexingStats(project_id=project_id)
        start = time.monotonic()

        try:
            files = await self.loader.load(repo_url, token)
        except Exception as e:
            record_indexing_run(time.monotonic() - start, error=str(e))
            log.exception(f"Repository load failed for {repo_url}: {e}")
            raise

        stats.loaded = len(files)

        for repo_file in files:
            reason = rejection_reason(repo_file.path, repo_file.content, self.policy)
            if reason is not None:
                stats.filtered_out += 1
                record_file_result("filtered_out")
                log.debug(f"Filtered out {repo_file.path}: {reason}")
                continue

            try:
                await self._index_file(project_id, repo_file.path, repo_file.content)
            except Exception as e:
                stats.skipped.append(SkippedFile(path=repo_file.path, error=str(e)))
                record_file_result("skipped")
                log.bind(path=repo_file.path).warning(f"Skipping {repo_file.path}: {e}", error_type=type(e).__name__)
                continue

            stats.embedded += 1
            record_file_result("embedded")

        stats.finish()
        record_indexing_run(time.monotonic() - start)
        log.info(
            f"Indexing finished: {stats.loaded} loaded, {stats.eligible} after filtering, "
            f"{stats.embedded} embedded, {len(stats.skipped)} skipped",
            loaded=stats.loaded,
            filtered_out=stats.filtered_out,
            embedded=stats.embedded,
            skipped=len(stats.skipped),
        )
        return stats

    async def _index_file(self, project_id: str, path: str, content: str):
        summary = await self.ai_client.summarize(path, content)
        if not summary:
            raise ValueError("empty summary returned")
        embedding = await self.ai_client.embed(summary)
        await self.store.insert_embedding(project_id, path, content, summary, embedding)

    async def reindex_project(self, project_id: str, repo_url: str,
                              token: Optional[str] = None) -> IndexingStats:
        """Delete every stored embedding of the project, then index from scratch."""
        async with project_lock(project_id):
            deleted = await self.store.delete_embeddings(project_id)
            logger.info(f"Deleted {deleted} embeddings for project {project_id} before re-indexing")
            stats = await self._index(project_id, repo_url, token)
        stats.deleted = deleted
        return stats

    async def get_indexed_file_count(self, project_id: str) -> int:
        return await self.store.count_embeddings(project_id)


async def _run_cli(args: argparse.Namespace) -> IndexingStats:
    from config.database import DatabaseConfig, close_database, get_db_adapter, initialize_database
    from config.settings import get_settings
    from indexer.ai_client import RateLimiter
    from pipelines.repo_loader import GitHubClient

    settings = get_settings()
    await initialize_database(DatabaseConfig.from_env())
    store = await get_db_adapter()
    ai_client = AIClient(settings.ai, RateLimiter(settings.ai.min_call_interval))

    try:
        async with GitHubClient(settings.github) as github:
            pipeline = EmbeddingPipeline(RepositoryLoader(github), ai_client, store)
            if args.reindex:
                return await pipeline.reindex_project(args.project_id, args.repo_url, args.token)
            return await pipeline.index_repository(args.project_id, args.repo_url, args.token)
    finally:
        await ai_client.close()
        await close_database()


def main(argv: Optional[List[str]] = None) -> int:
    """Run one indexing pass from the command line."""
    from config.settings import get_settings
    from observability.logging import setup_logging

    parser = argparse.ArgumentParser(description="Index a GitHub repository into a RepoBrief project")
    parser.add_argument("--project-id", required=True, help="Project that will own the embeddings")
    parser.add_argument("--repo-url", required=True, help="GitHub repository URL")
    parser.add_argument("--token", default=None, help="GitHub token (defaults to GITHUB_TOKEN)")
    parser.add_argument("--reindex", action="store_true", help="Delete existing embeddings first")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file, use_json=settings.log_json)

    try:
        stats = asyncio.run(_run_cli(args))
    except Exception as e:
        logger.error(f"Indexing failed: {e}")
        return 1

    print(json.dumps(stats.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
