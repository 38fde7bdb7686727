"""Configuration for RepoBrief: settings, database lifecycle and the ingestion policy."""

from .database import DatabaseConfig, initialize_database, get_db_adapter, close_database
from .policy_loader import IngestPolicy, ingest_policy
from .settings import Settings, get_settings

__all__ = [
    'DatabaseConfig',
    'initialize_database',
    'get_db_adapter',
    'close_database',
    'IngestPolicy',
    'ingest_policy',
    'Settings',
    'get_settings'
]
