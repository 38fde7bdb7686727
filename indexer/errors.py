"""Exception types shared by the ingestion, retrieval and API layers."""

import asyncio
import re
from typing import Optional


class RepoBriefError(Exception):
    """Base class for all service errors."""


class RepositoryAccessError(RepoBriefError):
    """The remote repository is unreachable, unknown, or the token lacks permission."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingFormatError(RepoBriefError):
    """The embedding provider returned a payload that is not a usable vector."""


class InvalidRequest(RepoBriefError, ValueError):
    """Caller input failed validation (HTTP 400)."""


class ProjectNotFound(RepoBriefError):
    """No active project exists with the requested id (HTTP 404)."""


class TranscriptionError(RepoBriefError):
    """The transcription service failed or returned no text."""


# A standalone 429 status in the message, or the provider phrasing for a rate limit
RATE_LIMIT_PATTERN = re.compile(r"(?<!\d)429(?!\d)|too many requests|rate[ _]limit")


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True when ``error`` signals an upstream rate limit."""
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 429:
        return True
    return RATE_LIMIT_PATTERN.search(str(error).lower()) is not None


TRANSIENT_DB_MARKERS = ("connection", "closed", "econnrefused", "timeout", "reset")


def is_transient_db_error(error: BaseException) -> bool:
    """Return True for connection-level database failures worth a reconnect and retry."""
    if isinstance(error, (ConnectionError, asyncio.TimeoutError, OSError)):
        return True
    # asyncpg raises InterfaceError / ConnectionDoesNotExistError subclasses for dropped links
    name = type(error).__name__.lower()
    if "connection" in name or "interface" in name:
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_DB_MARKERS)
