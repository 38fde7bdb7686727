"""Job handlers for background processing tasks."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.settings import Settings
from indexer.ai_client import AIClient
from indexer.errors import InvalidRequest, ProjectNotFound, RepositoryAccessError
from indexer.postgres_adapter import PostgresAdapter
from pipelines.commit_poller import CommitPoller
from pipelines.indexer import EmbeddingPipeline
from pipelines.repo_loader import GitHubClient, RepositoryLoader
from server.jobs import JobManager

logger = logging.getLogger(__name__)

INDEX_REPOSITORY = "index_repository"
REINDEX_PROJECT = "reindex_project"
POLL_COMMITS = "poll_commits"
POLL_ALL_COMMITS = "poll_all_commits"


@dataclass
class JobServices:
    """Long-lived collaborators shared by every job run in this process."""
    settings: Settings
    store: PostgresAdapter
    ai_client: AIClient


_services: Optional[JobServices] = None


def configure_services(services: Optional[JobServices]):
    global _services
    _services = services


def get_services() -> JobServices:
    if _services is None:
        raise RuntimeError("Job services not configured")
    return _services


def is_retryable_job_error(error: Exception) -> bool:
    """Bad input and repositories that reject us will not succeed on a later attempt."""
    if isinstance(error, (InvalidRequest, ProjectNotFound)):
        return False
    if isinstance(error, RepositoryAccessError) and error.status_code in (401, 403, 404):
        return False
    return True


async def _resolve_repository(services: JobServices, params: Dict[str, Any]) -> Dict[str, Any]:
    project_id = params.get("project_id")
    if not project_id:
        raise InvalidRequest("project_id is required")

    project = await services.store.get_project(project_id)
    if project is None:
        raise ProjectNotFound(f"Project {project_id} not found")

    repo_url = params.get("repo_url") or project.get("github_url")
    if not repo_url:
        raise InvalidRequest(f"Project {project_id} has no repository URL")

    return {
        "project_id": project_id,
        "repo_url": repo_url,
        "token": params.get("token") or project.get("github_token"),
    }


async def index_repository_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Index a project's repository.

    Args:
        job_id: Unique job identifier
        params: Job parameters containing:
            - project_id: Project that owns the embeddings
            - repo_url: Repository URL (defaults to the project's)
            - token: Access token (defaults to the project's)

    Returns:
        Indexing statistics
    """
    services = get_services()
    target = await _resolve_repository(services, params)
    logger.info(f"Job {job_id}: indexing {target['repo_url']} for project {target['project_id']}")

    async with GitHubClient(services.settings.github) as github:
        pipeline = EmbeddingPipeline(RepositoryLoader(github), services.ai_client, services.store)
        stats = await pipeline.index_repository(target["project_id"], target["repo_url"], target["token"])

    return stats.to_dict()


async def reindex_project_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Delete a project's embeddings and index its repository again."""
    services = get_services()
    target = await _resolve_repository(services, params)
    logger.info(f"Job {job_id}: re-indexing project {target['project_id']}")

    async with GitHubClient(services.settings.github) as github:
        pipeline = EmbeddingPipeline(RepositoryLoader(github), services.ai_client, services.store)
        stats = await pipeline.reindex_project(target["project_id"], target["repo_url"], target["token"])

    return stats.to_dict()


async def poll_commits_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Summarize and store new commits of one project."""
    services = get_services()
    project_id = params.get("project_id")
    if not project_id:
        raise InvalidRequest("project_id is required")

    async with GitHubClient(services.settings.github) as github:
        poller = CommitPoller(github, services.ai_client, services.store,
                              commits_per_poll=services.settings.github.commits_per_poll)
        processed = await poller.poll_commits(project_id)

    logger.info(f"Job {job_id}: {processed} new commits for project {project_id}")
    return {"project_id": project_id, "commits_processed": processed}


async def poll_all_commits_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Poll commits for every active project; one project's failure does not stop the rest."""
    services = get_services()
    projects = await services.store.list_projects()
    processed = 0
    failed = []

    async with GitHubClient(services.settings.github) as github:
        poller = CommitPoller(github, services.ai_client, services.store,
                              commits_per_poll=services.settings.github.commits_per_poll)
        for project in projects:
            try:
                processed += await poller.poll_commits(project["id"])
            except Exception as e:
                logger.warning(f"Job {job_id}: commit poll failed for project {project['id']}: {e}")
                failed.append(project["id"])

    logger.info(f"Job {job_id}: polled {len(projects)} projects, {processed} new commits, {len(failed)} failed")
    return {"projects": len(projects), "commits_processed": processed, "failed_projects": failed}


def register_handlers(manager: JobManager):
    """Register the RepoBrief job handlers with a job manager."""
    manager.register_handler(INDEX_REPOSITORY, index_repository_job)
    manager.register_handler(REINDEX_PROJECT, reindex_project_job)
    manager.register_handler(POLL_COMMITS, poll_commits_job)
    manager.register_handler(POLL_ALL_COMMITS, poll_all_commits_job)
    logger.info("Job handlers registered successfully")
