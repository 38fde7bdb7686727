"""Tests for GitHub repository loading."""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import GitHubSettings
from indexer.errors import RepositoryAccessError
from pipelines.repo_loader import GitHubClient, RepositoryLoader, parse_repo_url


def blob(content: bytes) -> dict:
    return {"encoding": "base64", "content": base64.b64encode(content).decode("ascii")}


class FakeGitHub:
    """Serves canned API responses keyed by request path."""

    def __init__(self, responses):
        self.responses = responses
        self.settings = GitHubSettings(max_concurrency=2)
        self.requested = []

    async def get_json(self, path, token=None, params=None):
        self.requested.append(path)
        response = self.responses[path]
        if isinstance(response, Exception):
            raise response
        return response


class TestParseRepoUrl:

    @pytest.mark.parametrize("url", [
        "https://github.com/acme/app",
        "https://github.com/acme/app.git",
        "https://github.com/acme/app/",
        "github.com/acme/app",
        "https://www.github.com/acme/app/tree/main/src",
    ])
    def test_valid_urls(self, url):
        assert parse_repo_url(url) == ("acme", "app")

    @pytest.mark.parametrize("url", ["", "https://gitlab.com/acme/app", "https://github.com/acme", "not a url"])
    def test_invalid_urls(self, url):
        with pytest.raises(RepositoryAccessError):
            parse_repo_url(url)


class TestRepositoryLoader:

    @pytest.fixture
    def github(self):
        return FakeGitHub({
            "/repos/acme/app": {"default_branch": "trunk"},
            "/repos/acme/app/git/trees/trunk": {
                "sha": "root",
                "truncated": False,
                "tree": [
                    {"path": "src", "type": "tree", "sha": "t1"},
                    {"path": "src/index.ts", "type": "blob", "sha": "b1"},
                    {"path": "src/logo.png", "type": "blob", "sha": "b2"},
                    {"path": "node_modules/lib/index.js", "type": "blob", "sha": "b3"},
                    {"path": "src/data.ts", "type": "blob", "sha": "b4"},
                    {"path": "src/broken.ts", "type": "blob", "sha": "b5"},
                ],
            },
            "/repos/acme/app/git/blobs/b1": blob(b"export const app = 1;"),
            "/repos/acme/app/git/blobs/b4": blob(b"\xff\xfe\x00binary"),
            "/repos/acme/app/git/blobs/b5": RepositoryAccessError("GitHub unreachable"),
        })

    @pytest.mark.asyncio
    async def test_ignored_paths_are_never_fetched(self, github, policy):
        loader = RepositoryLoader(github, policy)

        files = await loader.load("https://github.com/acme/app")

        assert [f.path for f in files] == ["src/index.ts"]
        assert files[0].content == "export const app = 1;"
        assert "/repos/acme/app/git/blobs/b2" not in github.requested
        assert "/repos/acme/app/git/blobs/b3" not in github.requested

    @pytest.mark.asyncio
    async def test_stats_record_ignored_and_failed(self, github, policy):
        loader = RepositoryLoader(github, policy)

        await loader.load("https://github.com/acme/app")

        stats = loader.last_stats
        assert stats.total_paths == 5
        assert stats.ignored == 2
        assert stats.fetched == 1
        assert stats.failed == 1
        assert stats.failed_paths == ["src/broken.ts"]

    @pytest.mark.asyncio
    async def test_inaccessible_repository_raises(self, policy):
        github = FakeGitHub({
            "/repos/acme/private": RepositoryAccessError("GitHub returned 404", status_code=404),
        })
        loader = RepositoryLoader(github, policy)

        with pytest.raises(RepositoryAccessError) as exc_info:
            await loader.load("https://github.com/acme/private")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_truncated_tree_is_walked_without_ignored_directories(self, policy):
        github = FakeGitHub({
            "/repos/acme/big": {"default_branch": "main"},
            "/repos/acme/big/git/trees/main": {"sha": "root", "truncated": True, "tree": []},
            "/repos/acme/big/git/trees/root": {"tree": [
                {"path": "lib", "type": "tree", "sha": "lib-sha"},
                {"path": "node_modules", "type": "tree", "sha": "nm-sha"},
                {"path": "main.py", "type": "blob", "sha": "m1"},
            ]},
            "/repos/acme/big/git/trees/lib-sha": {"tree": [
                {"path": "util.py", "type": "blob", "sha": "u1"},
            ]},
            "/repos/acme/big/git/blobs/m1": blob(b"print('main')"),
            "/repos/acme/big/git/blobs/u1": blob(b"def util(): pass"),
        })
        loader = RepositoryLoader(github, policy)

        files = await loader.load("https://github.com/acme/big")

        assert sorted(f.path for f in files) == ["lib/util.py", "main.py"]
        assert "/repos/acme/big/git/trees/nm-sha" not in github.requested


class TestGitHubClientErrors:

    @pytest.mark.asyncio
    async def test_forbidden_maps_to_repository_access_error(self):
        response = MagicMock(status=403)
        session = MagicMock()
        session.get.return_value.__aenter__ = AsyncMock(return_value=response)
        session.get.return_value.__aexit__ = AsyncMock(return_value=False)

        client = GitHubClient(GitHubSettings(), session=session)
        with pytest.raises(RepositoryAccessError) as exc_info:
            await client.get_json("/repos/acme/app", token="bad")
        assert exc_info.value.status_code == 403
        headers = session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer bad"

    @pytest.mark.asyncio
    async def test_commit_diff_is_fetched_through_the_api(self):
        response = MagicMock(status=200)
        response.raise_for_status = MagicMock()
        response.text = AsyncMock(return_value="diff --git a/src/a.ts b/src/a.ts")
        session = MagicMock()
        session.get.return_value.__aenter__ = AsyncMock(return_value=response)
        session.get.return_value.__aexit__ = AsyncMock(return_value=False)

        client = GitHubClient(GitHubSettings(), session=session)
        diff = await client.get_commit_diff("acme", "app", "c1", token="ghp_private")

        assert diff.startswith("diff --git")
        assert session.get.call_args.args[0] == "https://api.github.com/repos/acme/app/commits/c1"
        headers = session.get.call_args.kwargs["headers"]
        assert headers["Accept"] == "application/vnd.github.diff"
        assert headers["Authorization"] == "Bearer ghp_private"
