"""Repository loader for RepoBrief.

Walks a GitHub repository tree through the REST API, drops ignored paths
before any file body is fetched, and downloads the remaining blobs with
bounded concurrency.
"""

import asyncio
import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from config.policy_loader import IngestPolicy, ingest_policy
from config.settings import GitHubSettings
from indexer.errors import RepositoryAccessError
from indexer.file_filter import is_ignored

logger = logging.getLogger(__name__)

USER_AGENT = "RepoBrief/0.3 (+repository indexer)"

GITHUB_URL_PATTERN = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+?)(?:\.git)?/?(?:[/?#].*)?$"
)


def parse_repo_url(repo_url: str) -> Tuple[str, str]:
    """Split a GitHub repository URL into (owner, repo)."""
    match = GITHUB_URL_PATTERN.match((repo_url or "").strip())
    if not match:
        raise RepositoryAccessError(f"Not a GitHub repository URL: {repo_url!r}")
    return match.group("owner"), match.group("repo")


@dataclass
class RepoFile:
    """One repository file as loaded from the host."""
    path: str
    content: str


@dataclass
class LoadStats:
    """Counters for one repository load."""
    total_paths: int = 0
    ignored: int = 0
    fetched: int = 0
    failed: int = 0
    failed_paths: List[str] = field(default_factory=list)


class GitHubClient:
    """Thin aiohttp wrapper for the GitHub REST API.

    Authentication and permission failures (401/403/404) as well as network
    errors are raised as RepositoryAccessError.
    """

    def __init__(self, settings: GitHubSettings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.api_url = settings.api_url.rstrip("/")
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
            connector = aiohttp.TCPConnector(limit=self.settings.max_concurrency * 2)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={"User-Agent": USER_AGENT}
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session and self.session:
            await self.session.close()
            self.session = None

    def _headers(self, token: Optional[str], accept: str) -> Dict[str, str]:
        headers = {"Accept": accept, "X-GitHub-Api-Version": "2022-11-28"}
        token = token or self.settings.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, url: str, token: Optional[str], accept: str,
                       params: Optional[Dict[str, Any]] = None, as_json: bool = True) -> Any:
        if self.session is None:
            raise RuntimeError("GitHubClient must be used as an async context manager")
        try:
            async with self.session.get(url, params=params, headers=self._headers(token, accept)) as response:
                if response.status in (401, 403, 404):
                    raise RepositoryAccessError(
                        f"GitHub returned {response.status} for {url}", status_code=response.status
                    )
                response.raise_for_status()
                if as_json:
                    return await response.json()
                return await response.text()
        except aiohttp.ClientResponseError as e:
            raise RepositoryAccessError(f"GitHub request failed for {url}: {e.message}", status_code=e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RepositoryAccessError(f"GitHub unreachable for {url}: {e}") from e

    async def get_json(self, path: str, token: Optional[str] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request(f"{self.api_url}{path}", token, "application/vnd.github+json", params)

    async def get_commit_diff(self, owner: str, repo: str, sha: str, token: Optional[str] = None) -> str:
        """Unified diff of one commit, served by the API so private repositories accept the token."""
        return await self._request(
            f"{self.api_url}/repos/{owner}/{repo}/commits/{sha}", token, "application/vnd.github.diff", as_json=False
        )


class RepositoryLoader:
    """Load all non-ignored files of a GitHub repository."""

    def __init__(self, client: GitHubClient, policy: IngestPolicy = ingest_policy,
                 max_concurrency: Optional[int] = None):
        self.client = client
        self.policy = policy
        self.max_concurrency = max_concurrency or client.settings.max_concurrency
        self.last_stats = LoadStats()

    async def load(self, repo_url: str, token: Optional[str] = None) -> List[RepoFile]:
        """Return every non-ignored text file of the repository in tree order.

        Raises RepositoryAccessError when the repository or its tree cannot be
        read. Individual blobs that fail to download or are not UTF-8 text are
        logged and left out.
        """
        owner, repo = parse_repo_url(repo_url)
        stats = LoadStats()
        self.last_stats = stats

        info = await self.client.get_json(f"/repos/{owner}/{repo}", token)
        branch = info.get("default_branch") or "main"

        blobs = await self._list_blobs(owner, repo, branch, token)
        stats.total_paths = len(blobs)

        candidates = [entry for entry in blobs if not is_ignored(entry["path"], self.policy.ignore_patterns)]
        stats.ignored = stats.total_paths - len(candidates)
        logger.info(
            f"Repository {owner}/{repo}@{branch}: {stats.total_paths} files, "
            f"{stats.ignored} ignored, {len(candidates)} to fetch"
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch(entry: Dict[str, Any]) -> Optional[RepoFile]:
            async with semaphore:
                try:
                    content = await self._fetch_blob(owner, repo, entry["sha"], token)
                except RepositoryAccessError as e:
                    logger.warning(f"Failed to fetch {entry['path']}: {e}")
                    stats.failed += 1
                    stats.failed_paths.append(entry["path"])
                    return None
                if content is None:
                    logger.debug(f"Skipping non-text file {entry['path']}")
                    return None
                stats.fetched += 1
                return RepoFile(path=entry["path"], content=content)

        results = await asyncio.gather(*(fetch(entry) for entry in candidates))
        files = [result for result in results if result is not None]

        logger.info(f"Loaded {len(files)} files from {owner}/{repo} ({stats.failed} failed)")
        return files

    async def _list_blobs(self, owner: str, repo: str, branch: str,
                          token: Optional[str]) -> List[Dict[str, Any]]:
        tree = await self.client.get_json(
            f"/repos/{owner}/{repo}/git/trees/{branch}", token, params={"recursive": "1"}
        )
        if not tree.get("truncated"):
            return [entry for entry in tree.get("tree", []) if entry.get("type") == "blob"]

        logger.info(f"Tree listing for {owner}/{repo} truncated, walking directories")
        return await self._walk_tree(owner, repo, tree["sha"], "", token)

    async def _walk_tree(self, owner: str, repo: str, sha: str, prefix: str,
                         token: Optional[str]) -> List[Dict[str, Any]]:
        tree = await self.client.get_json(f"/repos/{owner}/{repo}/git/trees/{sha}", token)
        blobs = []
        for entry in tree.get("tree", []):
            path = f"{prefix}{entry['path']}"
            if entry.get("type") == "blob":
                blobs.append({**entry, "path": path})
            elif entry.get("type") == "tree":
                # Ignored directories are pruned without listing their contents
                if is_ignored(path + "/", self.policy.ignore_patterns):
                    continue
                blobs.extend(await self._walk_tree(owner, repo, entry["sha"], path + "/", token))
        return blobs

    async def _fetch_blob(self, owner: str, repo: str, sha: str, token: Optional[str]) -> Optional[str]:
        blob = await self.client.get_json(f"/repos/{owner}/{repo}/git/blobs/{sha}", token)
        raw = blob.get("content", "")
        data = base64.b64decode(raw) if blob.get("encoding") == "base64" else raw.encode("utf-8")
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return None
