"""Database configuration and lifecycle for RepoBrief.

Similarity search needs pgvector, so PostgreSQL is the only backend. One
adapter is shared by the API process (or the CLI run) and is opened and
closed through ``initialize_database`` / ``close_database``.
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

from indexer.postgres_adapter import PostgresAdapter, PostgresConfig

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Connection settings plus the transient-error retry policy."""
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    max_retries: int = Field(default=3, description="Attempts per operation on connection errors")
    retry_delay: float = Field(default=1.0, description="Seconds, multiplied by the attempt number")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Read POSTGRES_* and DB_* environment variables."""
        postgres = PostgresConfig(
            host=os.getenv('POSTGRES_HOST', 'localhost'),
            port=int(os.getenv('POSTGRES_PORT', '5432')),
            database=os.getenv('POSTGRES_DB', 'repobrief'),
            user=os.getenv('POSTGRES_USER', 'repobrief'),
            password=os.getenv('POSTGRES_PASSWORD', ''),
            min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '2')),
            max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '10')),
            command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '60')),
            ivfflat_probes=int(os.getenv('IVFFLAT_PROBES', '10'))
        )
        return cls(
            postgres=postgres,
            max_retries=int(os.getenv('DB_MAX_RETRIES', '3')),
            retry_delay=float(os.getenv('DB_RETRY_DELAY', '1.0'))
        )


_adapter: Optional[PostgresAdapter] = None


async def initialize_database(config: Optional[DatabaseConfig] = None) -> PostgresAdapter:
    """Open the shared adapter; calling it again returns the open one."""
    global _adapter
    if _adapter is not None:
        return _adapter

    config = config or DatabaseConfig.from_env()
    adapter = PostgresAdapter(config.postgres, max_retries=config.max_retries, retry_delay=config.retry_delay)
    await adapter.initialize()
    _adapter = adapter

    pg = config.postgres
    logger.info(f"Database ready at {pg.host}:{pg.port}/{pg.database}")
    return adapter


async def get_db_adapter() -> PostgresAdapter:
    if _adapter is None:
        raise RuntimeError("Database not initialized. Call initialize_database() first.")
    return _adapter


async def close_database():
    global _adapter
    if _adapter is not None:
        await _adapter.close()
        _adapter = None
        logger.info("Database connections closed")
