"""Tests for commit polling."""

import pytest

from conftest import FakeAIClient
from indexer.errors import RepositoryAccessError
from pipelines.commit_poller import CommitPoller, parse_commit


def commit_item(sha: str, date: str, message: str = "change") -> dict:
    return {
        "sha": sha,
        "commit": {"message": message, "author": {"name": "Ada", "date": date}},
        "author": {"avatar_url": f"https://avatars.example/{sha}"},
    }


class FakeGitHub:

    def __init__(self, items, failing_diffs=()):
        self.items = items
        self.failing_diffs = set(failing_diffs)
        self.diff_requests = []

    async def get_json(self, path, token=None, params=None):
        assert path == "/repos/acme/app/commits"
        return list(self.items)

    async def get_commit_diff(self, owner, repo, sha, token=None):
        self.diff_requests.append((owner, repo, sha))
        if sha in self.failing_diffs:
            raise RepositoryAccessError("diff unavailable")
        return f"diff for {sha}\n+added line"


class TestParseCommit:

    def test_fields_are_extracted(self):
        commit = parse_commit(commit_item("abc", "2026-01-02T03:04:05Z", "Fix login"))
        assert commit.commit_hash == "abc"
        assert commit.commit_message == "Fix login"
        assert commit.commit_author_name == "Ada"
        assert commit.commit_author_avatar == "https://avatars.example/abc"
        assert commit.commit_date.year == 2026
        assert commit.commit_date.tzinfo is not None

    def test_missing_author_is_tolerated(self):
        commit = parse_commit({"sha": "abc", "commit": {"message": "x", "author": None}, "author": None})
        assert commit.commit_author_name == ""
        assert commit.commit_author_avatar == ""


class TestPollCommits:

    @pytest.fixture
    def items(self):
        return [
            commit_item("c1", "2026-01-01T00:00:00Z"),
            commit_item("c3", "2026-01-03T00:00:00Z"),
            commit_item("c2", "2026-01-02T00:00:00Z"),
        ]

    @pytest.mark.asyncio
    async def test_only_unseen_commits_are_stored(self, fake_store, items):
        fake_store.add_project("p1")
        fake_store.commits["p1"] = [{"commit_hash": "c1"}]
        ai = FakeAIClient()
        poller = CommitPoller(FakeGitHub(items), ai, fake_store)

        processed = await poller.poll_commits("p1")

        assert processed == 2
        stored = [c["commit_hash"] for c in fake_store.commits["p1"]]
        assert stored == ["c1", "c3", "c2"]
        assert fake_store.commits["p1"][1]["summary"].startswith("- changes from diff for c3")

    @pytest.mark.asyncio
    async def test_second_poll_finds_nothing(self, fake_store, items):
        fake_store.add_project("p1")
        github = FakeGitHub(items)
        poller = CommitPoller(github, FakeAIClient(), fake_store)

        assert await poller.poll_commits("p1") == 3
        assert await poller.poll_commits("p1") == 0
        assert len(github.diff_requests) == 3

    @pytest.mark.asyncio
    async def test_failed_diff_stores_empty_summary(self, fake_store, items):
        fake_store.add_project("p1")
        poller = CommitPoller(FakeGitHub(items, failing_diffs={"c2"}), FakeAIClient(), fake_store)

        assert await poller.poll_commits("p1") == 3

        summaries = {c["commit_hash"]: c["summary"] for c in fake_store.commits["p1"]}
        assert summaries["c2"] == ""
        assert summaries["c1"] != ""

    @pytest.mark.asyncio
    async def test_newest_commits_are_kept(self, fake_store, items):
        fake_store.add_project("p1")
        poller = CommitPoller(FakeGitHub(items), FakeAIClient(), fake_store, commits_per_poll=2)

        assert await poller.poll_commits("p1") == 2
        assert [c["commit_hash"] for c in fake_store.commits["p1"]] == ["c3", "c2"]

    @pytest.mark.asyncio
    async def test_project_without_repository_is_noop(self, fake_store, items):
        fake_store.add_project("p1", github_url=None)
        github = FakeGitHub(items)
        poller = CommitPoller(github, FakeAIClient(), fake_store)

        assert await poller.poll_commits("p1") == 0
        assert await poller.poll_commits("unknown") == 0
        assert github.diff_requests == []

    @pytest.mark.asyncio
    async def test_diff_is_requested_for_each_commit(self, fake_store, items):
        fake_store.add_project("p1")
        github = FakeGitHub(items[:1])
        poller = CommitPoller(github, FakeAIClient(), fake_store)

        await poller.poll_commits("p1")

        assert github.diff_requests == [("acme", "app", "c1")]
