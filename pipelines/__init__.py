"""Pipelines package for RepoBrief.

Provides repository loading, embedding, commit polling and meeting processing.
"""

from .repo_loader import GitHubClient, RepositoryLoader, RepoFile, parse_repo_url
from .indexer import EmbeddingPipeline, IndexingStats, SkippedFile
from .commit_poller import CommitPoller
from .meeting_processor import MeetingProcessor, ms_to_time

__all__ = [
    # Loader
    'GitHubClient',
    'RepositoryLoader',
    'RepoFile',
    'parse_repo_url',

    # Embedding
    'EmbeddingPipeline',
    'IndexingStats',
    'SkippedFile',

    # Commits
    'CommitPoller',

    # Meetings
    'MeetingProcessor',
    'ms_to_time'
]
