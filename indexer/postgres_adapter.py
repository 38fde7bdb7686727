"""PostgreSQL database adapter for RepoBrief.

Persists projects, source-file embeddings, commits, saved questions and
meetings, and answers nearest-neighbour queries through pgvector.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector
from pydantic import BaseModel

from indexer.errors import is_transient_db_error
from observability.prometheus_metrics import record_db_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "repobrief"
    user: str = "repobrief"
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 60
    ivfflat_probes: int = 10


async def _init_connection(conn: asyncpg.Connection):
    """Per-connection codecs: pgvector <-> numpy and jsonb <-> Python objects."""
    await register_vector(conn)
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


class PostgresAdapter:
    """PostgreSQL database adapter with pgvector support.

    Every public method runs through ``_run``, which retries connection-level
    failures up to ``max_retries`` times, rebuilding the pool between attempts
    and waiting ``retry_delay * attempt`` seconds.
    """

    def __init__(self, config: PostgresConfig, max_retries: int = 3, retry_delay: float = 1.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.pool: Optional[asyncpg.Pool] = None
        self._sleep = sleep

    async def initialize(self):
        """Ensure the pgvector extension exists, then open the connection pool."""
        try:
            conn = await asyncpg.connect(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
            )
            try:
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
                logger.info("pgvector extension ensured")
            finally:
                await conn.close()

            await self._create_pool()
        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    async def _create_pool(self):
        self.pool = await asyncpg.create_pool(
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
            user=self.config.user,
            password=self.config.password,
            min_size=self.config.min_connections,
            max_size=self.config.max_connections,
            command_timeout=self.config.command_timeout,
            init=_init_connection,
        )
        logger.info("PostgreSQL connection pool initialized")

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def _reconnect(self):
        if self.pool:
            try:
                await self.pool.close()
            except Exception as e:
                logger.warning(f"Error closing pool during reconnect: {e}")
            self.pool = None
        await self._create_pool()

    async def _run(self, operation: str, fn: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        """Run ``fn`` on a pooled connection with reconnect-and-retry on transient errors."""
        attempt = 1
        while True:
            if self.pool is None:
                raise RuntimeError("PostgreSQL adapter not initialized. Call initialize() first.")
            try:
                async with self.pool.acquire() as conn:
                    return await fn(conn)
            except Exception as e:
                if not is_transient_db_error(e) or attempt >= self.max_retries:
                    raise
                record_db_retry(operation)
                logger.warning(
                    f"Database operation {operation} failed (attempt {attempt}/{self.max_retries}), "
                    f"reconnecting: {e}"
                )
                await self._sleep(self.retry_delay * attempt)
                await self._reconnect()
                attempt += 1

    async def ping(self) -> bool:
        return await self._run("ping", lambda conn: conn.fetchval("SELECT 1")) == 1

    # Projects

    async def create_project(self, name: str, github_url: str,
                             github_token: Optional[str] = None) -> Dict[str, Any]:
        """Insert a new project and return it."""
        row = await self._run("create_project", lambda conn: conn.fetchrow(
            """
            INSERT INTO projects (name, github_url, github_token)
            VALUES ($1, $2, $3)
            RETURNING id, name, github_url, github_token, created_at, deleted_at
            """,
            name, github_url, github_token
        ))
        return dict(row)

    async def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Get an active (not soft-deleted) project by id."""
        row = await self._run("get_project", lambda conn: conn.fetchrow(
            """
            SELECT id, name, github_url, github_token, created_at, deleted_at
            FROM projects
            WHERE id = $1 AND deleted_at IS NULL
            """,
            project_id
        ))
        return dict(row) if row else None

    async def list_projects(self) -> List[Dict[str, Any]]:
        rows = await self._run("list_projects", lambda conn: conn.fetch(
            """
            SELECT id, name, github_url, github_token, created_at, deleted_at
            FROM projects
            WHERE deleted_at IS NULL
            ORDER BY created_at DESC
            """
        ))
        return [dict(row) for row in rows]

    async def soft_delete_project(self, project_id: str) -> bool:
        """Mark a project deleted; returns False when no active project matched."""
        status = await self._run("soft_delete_project", lambda conn: conn.execute(
            "UPDATE projects SET deleted_at = NOW() WHERE id = $1 AND deleted_at IS NULL",
            project_id
        ))
        return status.endswith(" 1")

    # Source code embeddings

    async def delete_embeddings(self, project_id: str) -> int:
        """Delete every embedding of a project; returns the number of rows removed."""
        status = await self._run("delete_embeddings", lambda conn: conn.execute(
            "DELETE FROM source_code_embeddings WHERE project_id = $1",
            project_id
        ))
        return int(status.split()[-1])

    async def insert_embedding(self, project_id: str, file_name: str, source_code: str,
                               summary: str, embedding: np.ndarray) -> str:
        """Write one embedding row, metadata and vector together, in a single statement.

        A file already stored for the project is overwritten in place.
        """
        return await self._run("insert_embedding", lambda conn: conn.fetchval(
            """
            INSERT INTO source_code_embeddings (project_id, file_name, source_code, summary, summary_embedding)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (project_id, file_name) DO UPDATE
            SET source_code = EXCLUDED.source_code,
                summary = EXCLUDED.summary,
                summary_embedding = EXCLUDED.summary_embedding,
                created_at = now()
            RETURNING id
            """,
            project_id, file_name, source_code, summary, np.asarray(embedding, dtype=np.float32)
        ))

    async def count_embeddings(self, project_id: str) -> int:
        return await self._run("count_embeddings", lambda conn: conn.fetchval(
            "SELECT COUNT(*) FROM source_code_embeddings WHERE project_id = $1",
            project_id
        ))

    async def list_embedded_paths(self, project_id: str) -> List[str]:
        rows = await self._run("list_embedded_paths", lambda conn: conn.fetch(
            "SELECT file_name FROM source_code_embeddings WHERE project_id = $1 ORDER BY file_name",
            project_id
        ))
        return [row["file_name"] for row in rows]

    async def search_similar(self, project_id: str, embedding: np.ndarray,
                             limit: int = 10) -> List[Dict[str, Any]]:
        """Nearest embeddings of an active project by cosine similarity, most similar first.

        The ivfflat index filters by project only after probing, so the probe
        count is raised for the duration of the query.
        """
        async def search(conn: asyncpg.Connection):
            async with conn.transaction():
                await conn.execute(f"SET LOCAL ivfflat.probes = {int(self.config.ivfflat_probes)}")
                return await conn.fetch(
                    """
                    SELECT e.id, e.file_name, e.source_code, e.summary,
                           1 - (e.summary_embedding <=> $1) AS similarity
                    FROM source_code_embeddings e
                    JOIN projects p ON p.id = e.project_id AND p.deleted_at IS NULL
                    WHERE e.project_id = $2
                      AND e.summary_embedding IS NOT NULL
                    ORDER BY e.summary_embedding <=> $1
                    LIMIT $3
                    """,
                    np.asarray(embedding, dtype=np.float32), project_id, limit
                )

        rows = await self._run("search_similar", search)
        return [dict(row) for row in rows]

    # Commits

    async def get_commit_hashes(self, project_id: str) -> Set[str]:
        rows = await self._run("get_commit_hashes", lambda conn: conn.fetch(
            "SELECT commit_hash FROM commits WHERE project_id = $1",
            project_id
        ))
        return {row["commit_hash"] for row in rows}

    async def insert_commits(self, project_id: str, commits: Sequence[Dict[str, Any]]) -> int:
        """Insert commits in order inside one transaction, ignoring hashes already stored.

        Returns the number of rows actually inserted.
        """
        if not commits:
            return 0

        async def insert(conn: asyncpg.Connection) -> int:
            inserted = 0
            async with conn.transaction():
                for commit in commits:
                    commit_id = await conn.fetchval(
                        """
                        INSERT INTO commits (project_id, commit_hash, commit_message, commit_author_name,
                                             commit_author_avatar, commit_date, summary)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (project_id, commit_hash) DO NOTHING
                        RETURNING id
                        """,
                        project_id, commit["commit_hash"], commit["commit_message"],
                        commit["commit_author_name"], commit["commit_author_avatar"],
                        commit["commit_date"], commit["summary"]
                    )
                    if commit_id is not None:
                        inserted += 1
            return inserted

        return await self._run("insert_commits", insert)

    async def list_commits(self, project_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await self._run("list_commits", lambda conn: conn.fetch(
            """
            SELECT id, commit_hash, commit_message, commit_author_name, commit_author_avatar,
                   commit_date, summary, created_at
            FROM commits
            WHERE project_id = $1
            ORDER BY commit_date DESC
            LIMIT $2
            """,
            project_id, limit
        ))
        return [dict(row) for row in rows]

    # Questions

    async def save_question(self, project_id: str, question: str, answer: str,
                            file_references: List[Dict[str, Any]],
                            user_id: Optional[str] = None) -> str:
        return await self._run("save_question", lambda conn: conn.fetchval(
            """
            INSERT INTO questions (project_id, user_id, question, answer, file_references)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            project_id, user_id, question, answer, file_references
        ))

    async def list_questions(self, project_id: str) -> List[Dict[str, Any]]:
        rows = await self._run("list_questions", lambda conn: conn.fetch(
            """
            SELECT id, user_id, question, answer, file_references, created_at
            FROM questions
            WHERE project_id = $1
            ORDER BY created_at DESC
            """,
            project_id
        ))
        return [dict(row) for row in rows]

    # Meetings

    async def create_meeting(self, project_id: str, name: str, meeting_url: str) -> Dict[str, Any]:
        """Register an uploaded meeting in PROCESSING state."""
        row = await self._run("create_meeting", lambda conn: conn.fetchrow(
            """
            INSERT INTO meetings (project_id, name, meeting_url, status)
            VALUES ($1, $2, $3, 'PROCESSING')
            RETURNING id, project_id, name, meeting_url, status, created_at
            """,
            project_id, name, meeting_url
        ))
        return dict(row)

    async def complete_meeting(self, meeting_id: str, name: Optional[str],
                               issues: Sequence[Dict[str, Any]]) -> None:
        """Store extracted issues and flip the meeting to COMPLETED atomically."""
        async def complete(conn: asyncpg.Connection):
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO meeting_issues (meeting_id, position, start_time, end_time, gist, headline, summary)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    [
                        (meeting_id, position, issue["start"], issue["end"], issue["gist"],
                         issue["headline"], issue["summary"])
                        for position, issue in enumerate(issues)
                    ]
                )
                await conn.execute(
                    "UPDATE meetings SET status = 'COMPLETED', name = COALESCE($2, name) WHERE id = $1",
                    meeting_id, name
                )

        await self._run("complete_meeting", complete)

    async def get_meeting(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        async def fetch(conn: asyncpg.Connection):
            meeting = await conn.fetchrow(
                """
                SELECT id, project_id, name, meeting_url, status, created_at
                FROM meetings WHERE id = $1
                """,
                meeting_id
            )
            if meeting is None:
                return None
            issues = await conn.fetch(
                """
                SELECT id, start_time AS start, end_time AS "end", gist, headline, summary
                FROM meeting_issues WHERE meeting_id = $1
                ORDER BY position
                """,
                meeting_id
            )
            result = dict(meeting)
            result["issues"] = [dict(issue) for issue in issues]
            return result

        return await self._run("get_meeting", fetch)
