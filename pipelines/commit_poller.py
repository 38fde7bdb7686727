"""Commit polling for RepoBrief.

Fetches the newest commits of a project's repository, summarizes the diff of
every commit not yet stored, and persists the new commits in one batch.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from indexer.ai_client import AIClient
from indexer.postgres_adapter import PostgresAdapter
from observability.prometheus_metrics import record_commit
from pipelines.repo_loader import GitHubClient, parse_repo_url

logger = logging.getLogger(__name__)


@dataclass
class CommitInfo:
    """Commit metadata as listed by the repository host."""
    commit_hash: str
    commit_message: str
    commit_author_name: str
    commit_author_avatar: str
    commit_date: datetime


def _parse_timestamp(value: Optional[str]) -> datetime:
    # GitHub uses a trailing Z, which fromisoformat only accepts from 3.11 on
    return datetime.fromisoformat((value or "1970-01-01T00:00:00Z").replace("Z", "+00:00"))


def parse_commit(item: Dict[str, Any]) -> CommitInfo:
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    return CommitInfo(
        commit_hash=item["sha"],
        commit_message=commit.get("message") or "",
        commit_author_name=author.get("name") or "",
        commit_author_avatar=(item.get("author") or {}).get("avatar_url") or "",
        commit_date=_parse_timestamp(author.get("date")),
    )


class CommitPoller:
    """Summarize and persist new commits of a project."""

    def __init__(self, github: GitHubClient, ai_client: AIClient, store: PostgresAdapter,
                 commits_per_poll: int = 10):
        self.github = github
        self.ai_client = ai_client
        self.store = store
        self.commits_per_poll = commits_per_poll

    async def fetch_recent_commits(self, owner: str, repo: str,
                                   token: Optional[str] = None) -> List[CommitInfo]:
        """Newest commits by author date, at most ``commits_per_poll``."""
        items = await self.github.get_json(
            f"/repos/{owner}/{repo}/commits", token, params={"per_page": self.commits_per_poll}
        )
        commits = [parse_commit(item) for item in items]
        commits.sort(key=lambda c: c.commit_date, reverse=True)
        return commits[:self.commits_per_poll]

    async def summarize_commit(self, owner: str, repo: str, commit_hash: str,
                               token: Optional[str] = None) -> str:
        diff = await self.github.get_commit_diff(owner, repo, commit_hash, token)
        return await self.ai_client.summarize_commit(diff)

    async def poll_commits(self, project_id: str) -> int:
        """Persist the commits of the project that are not stored yet.

        Returns the number of commits inserted. A project without a repository
        URL is a no-op. A failed diff fetch or summary stores the commit with an
        empty summary.
        """
        project = await self.store.get_project(project_id)
        if not project or not project.get("github_url"):
            logger.info(f"Project {project_id} has no linked repository, skipping commit poll")
            return 0

        owner, repo = parse_repo_url(project["github_url"])
        token = project.get("github_token")

        fetched = await self.fetch_recent_commits(owner, repo, token)
        existing = await self.store.get_commit_hashes(project_id)
        new_commits = [commit for commit in fetched if commit.commit_hash not in existing]

        if not new_commits:
            logger.info(f"No new commits for project {project_id}")
            return 0

        summaries = await asyncio.gather(
            *(self.summarize_commit(owner, repo, commit.commit_hash, token) for commit in new_commits),
            return_exceptions=True
        )

        rows = []
        for commit, summary in zip(new_commits, summaries):
            if isinstance(summary, BaseException):
                logger.warning(f"Failed to summarize commit {commit.commit_hash}: {summary}")
                summary = ""
            record_commit(bool(summary))
            rows.append({**asdict(commit), "summary": summary})

        inserted = await self.store.insert_commits(project_id, rows)
        logger.info(f"Stored {inserted} new commits for project {project_id}")
        return inserted
