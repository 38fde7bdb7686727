"""Shared fixtures for the RepoBrief test suite."""

import os

# Must be set before server.security.rate_limiting builds its limiter
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from typing import Any, Dict, List, Optional, Set

import numpy as np
import pytest

from config.policy_loader import IngestPolicy
from config.settings import AISettings, PipelineSettings
from pipelines.repo_loader import RepoFile


class FakeStore:
    """In-memory stand-in for PostgresAdapter covering the calls the pipelines make."""

    def __init__(self):
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.embeddings: List[Dict[str, Any]] = []
        self.commits: Dict[str, List[Dict[str, Any]]] = {}
        self.meetings: Dict[str, Dict[str, Any]] = {}

    def add_project(self, project_id: str, github_url: Optional[str] = "https://github.com/acme/app",
                    github_token: Optional[str] = None) -> Dict[str, Any]:
        project = {"id": project_id, "name": project_id, "github_url": github_url,
                   "github_token": github_token}
        self.projects[project_id] = project
        return project

    async def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        return self.projects.get(project_id)

    async def list_projects(self) -> List[Dict[str, Any]]:
        return list(self.projects.values())

    async def insert_embedding(self, project_id, file_name, source_code, summary, embedding) -> str:
        row_id = f"emb-{len(self.embeddings) + 1}"
        self.embeddings.append({
            "id": row_id, "project_id": project_id, "file_name": file_name,
            "source_code": source_code, "summary": summary, "embedding": embedding,
        })
        return row_id

    async def delete_embeddings(self, project_id: str) -> int:
        before = len(self.embeddings)
        self.embeddings = [e for e in self.embeddings if e["project_id"] != project_id]
        return before - len(self.embeddings)

    async def count_embeddings(self, project_id: str) -> int:
        return sum(1 for e in self.embeddings if e["project_id"] == project_id)

    async def get_commit_hashes(self, project_id: str) -> Set[str]:
        return {c["commit_hash"] for c in self.commits.get(project_id, [])}

    async def insert_commits(self, project_id: str, commits) -> int:
        stored = self.commits.setdefault(project_id, [])
        existing = {c["commit_hash"] for c in stored}
        inserted = 0
        for commit in commits:
            if commit["commit_hash"] in existing:
                continue
            stored.append(dict(commit))
            existing.add(commit["commit_hash"])
            inserted += 1
        return inserted

    async def complete_meeting(self, meeting_id: str, name: Optional[str], issues) -> None:
        meeting = self.meetings.setdefault(meeting_id, {"id": meeting_id, "name": "Recording"})
        meeting["status"] = "COMPLETED"
        if name is not None:
            meeting["name"] = name
        meeting["issues"] = list(issues)


class FakeAIClient:
    """Deterministic AI client; ``fail_on`` paths raise from summarize."""

    def __init__(self, dimension: int = 4, fail_on: Optional[Set[str]] = None):
        self.dimension = dimension
        self.fail_on = fail_on or set()
        self.summarized: List[str] = []
        self.commit_diffs: List[str] = []

    async def summarize(self, path: str, content: str) -> str:
        self.summarized.append(path)
        if path in self.fail_on:
            raise RuntimeError(f"summary failed for {path}")
        return f"Summary of {path}"

    async def summarize_commit(self, diff: str) -> str:
        self.commit_diffs.append(diff)
        return f"- changes from {diff.splitlines()[0] if diff else 'empty diff'}"

    async def embed(self, text: str) -> np.ndarray:
        return np.full(self.dimension, 0.5, dtype=np.float32)


class FakeLoader:
    """Repository loader returning a fixed list of files."""

    def __init__(self, files: List[RepoFile], error: Optional[Exception] = None):
        self.files = files
        self.error = error
        self.calls = []

    async def load(self, repo_url: str, token: Optional[str] = None) -> List[RepoFile]:
        self.calls.append((repo_url, token))
        if self.error is not None:
            raise self.error
        return list(self.files)


def source_file(path: str, lines: int = 10) -> RepoFile:
    """A file that passes the default filter: code only, well over the minimum length."""
    body = "\n".join(f"const value{i} = compute({i}) * {i};" for i in range(lines))
    return RepoFile(path=path, content=body)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_ai():
    return FakeAIClient()


@pytest.fixture
def policy(tmp_path):
    """The default ingestion policy, independent of any policy file on disk."""
    return IngestPolicy(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def ai_settings():
    return AISettings(
        groq_api_key="test",
        embedding_dimension=4,
        max_retries=3,
        initial_retry_delay=2.0,
        backoff_factor=2.0,
    )


@pytest.fixture
def pipeline_settings():
    return PipelineSettings()
