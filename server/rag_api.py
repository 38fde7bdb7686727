from fastapi import FastAPI, Body, HTTPException, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict, List, Optional
import logging

from config import get_db_adapter, initialize_database, close_database, get_settings
from indexer.ai_client import AIClient, RateLimiter
from indexer.errors import InvalidRequest, ProjectNotFound, RepoBriefError, RepositoryAccessError
from indexer.postgres_adapter import PostgresAdapter
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from pipelines.meeting_processor import MeetingProcessor
from pipelines.repo_loader import parse_repo_url
from server.job_handlers import (
    INDEX_REPOSITORY, REINDEX_PROJECT, POLL_COMMITS, POLL_ALL_COMMITS,
    JobServices, configure_services, register_handlers, is_retryable_job_error
)
from server.jobs import JobManager, JobRecord, JobStatus
from server.qa_service import QuestionAnsweringService, encode_references
from server.security import require_api_key, setup_cors, setup_rate_limiting, qa_rate_limit, meeting_rate_limit

logger = logging.getLogger(__name__)

app = FastAPI(title="RepoBrief API", version="0.3.0")

setup_prometheus_metrics(app)
setup_cors(app)
setup_rate_limiting(app)

# Process-wide collaborators, created on startup
db_adapter: Optional[PostgresAdapter] = None
ai_client: Optional[AIClient] = None
qa_service: Optional[QuestionAnsweringService] = None
meeting_processor: Optional[MeetingProcessor] = None
job_manager: Optional[JobManager] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database, AI client, services and job manager on startup."""
    global db_adapter, ai_client, qa_service, meeting_processor, job_manager

    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file, use_json=settings.log_json)

    try:
        await initialize_database()
        db_adapter = await get_db_adapter()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    # One limiter for the whole process so every AI call shares the throttle
    ai_client = AIClient(settings.ai, RateLimiter(settings.ai.min_call_interval))
    qa_service = QuestionAnsweringService(ai_client, db_adapter, settings.pipeline)
    meeting_processor = MeetingProcessor(settings.meetings, db_adapter)

    configure_services(JobServices(settings=settings, store=db_adapter, ai_client=ai_client))
    job_manager = JobManager(
        redis_url=settings.api.redis_url,
        max_attempts=settings.api.job_max_attempts,
        retry_delay=settings.api.job_retry_delay,
        should_retry=is_retryable_job_error
    )
    register_handlers(job_manager)
    await job_manager.initialize()

    if job_manager.running and settings.api.commit_poll_cron:
        try:
            await job_manager.schedule_periodic_job(POLL_ALL_COMMITS, settings.api.commit_poll_cron)
        except ValueError as e:
            logger.warning(f"Invalid COMMIT_POLL_CRON, periodic commit polling disabled: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    if job_manager:
        try:
            await job_manager.shutdown()
        except Exception as e:
            logger.error(f"Error during job manager shutdown: {e}")

    if ai_client:
        await ai_client.close()

    configure_services(None)
    await close_database()
    logger.info("Shutdown complete")


# Dependencies (overridden in tests)

async def get_db() -> PostgresAdapter:
    """Dependency to get database adapter."""
    if db_adapter is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return db_adapter


async def get_qa_service() -> QuestionAnsweringService:
    if qa_service is None:
        raise HTTPException(status_code=500, detail="Question answering not initialized")
    return qa_service


async def get_meeting_processor() -> MeetingProcessor:
    if meeting_processor is None:
        raise HTTPException(status_code=500, detail="Meeting processing not initialized")
    return meeting_processor


async def get_job_manager() -> Optional[JobManager]:
    """The job manager, or None while background processing is unavailable."""
    if job_manager is None or not job_manager.running:
        return None
    return job_manager


# Error mapping: every error body is {"error": "..."}

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request",
                                                  "details": jsonable_encoder(exc.errors())})


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ProjectNotFound)
async def project_not_found_handler(request: Request, exc: ProjectNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(RepoBriefError)
async def repobrief_error_handler(request: Request, exc: RepoBriefError):
    logger.error(f"Unhandled service error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


# Request models

class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1)
    github_url: str
    github_token: Optional[str] = None


class SearchRequest(BaseModel):
    question: str = Field(min_length=1)


class SaveQuestionRequest(BaseModel):
    question: str = Field(min_length=1)
    answer: str
    file_references: List[Dict[str, Any]] = Field(default_factory=list)
    user_id: Optional[str] = None


class CreateMeetingRequest(BaseModel):
    name: str = Field(min_length=1)
    meeting_url: str = Field(min_length=1)


# Helpers

def public_project(project: Dict[str, Any]) -> Dict[str, Any]:
    """Project fields safe to return; the access token never leaves the server."""
    data = {k: v for k, v in project.items() if k != "github_token"}
    data["has_token"] = bool(project.get("github_token"))
    return data


async def require_project(db: PostgresAdapter, project_id: str) -> Dict[str, Any]:
    project = await db.get_project(project_id)
    if project is None:
        raise ProjectNotFound(f"Project {project_id} not found")
    return project


async def enqueue_background(jobs: Optional[JobManager], job_type: str,
                             parameters: Dict[str, Any]) -> Optional[str]:
    """Enqueue work if the job manager is up; background failures never fail the request."""
    if jobs is None:
        logger.warning(f"Job manager unavailable, {job_type} not enqueued for {parameters.get('project_id')}")
        return None
    try:
        return await jobs.enqueue_job(job_type, parameters)
    except Exception as e:
        logger.error(f"Failed to enqueue {job_type}: {e}")
        return None


def job_summary(job: JobRecord) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status.value,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error": job.error
    }


# Endpoints

@app.get("/")
async def root():
    return {"service": "RepoBrief API", "version": app.version}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/detailed")
async def detailed_health_check():
    """Report database reachability and background processing state."""
    checks: Dict[str, Any] = {}

    try:
        checks["database"] = "healthy" if db_adapter and await db_adapter.ping() else "unavailable"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"

    jobs = await get_job_manager()
    checks["jobs"] = "healthy" if jobs else "unavailable"
    checks["job_store"] = "redis" if jobs and jobs.redis_client else "memory"

    status = "healthy" if checks["database"] == "healthy" else "degraded"
    return {"status": status, "checks": checks}


@app.post("/qa")
@qa_rate_limit()
async def question_answer(request: Request, service: QuestionAnsweringService = Depends(get_qa_service)):
    """Stream an answer to a question about a project.

    Body: ``{"question": str, "projectId": str}``. The selected files are sent
    before the body in the ``X-File-References`` header as URL-encoded JSON.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Request body must be JSON"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})

    try:
        prepared = await service.answer(body.get("question"), body.get("projectId"))
    except InvalidRequest as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.error(f"Q&A failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "Internal server error"})

    headers = {
        "X-File-References": encode_references(prepared.references, service.settings.source_excerpt_chars),
        "Cache-Control": "no-cache",
    }
    return StreamingResponse(prepared.chunks, media_type="text/plain; charset=utf-8", headers=headers)


@app.post("/projects", dependencies=[Depends(require_api_key)], status_code=201)
async def create_project(req: CreateProjectRequest, db: PostgresAdapter = Depends(get_db),
                         jobs: Optional[JobManager] = Depends(get_job_manager)):
    """Create a project and start indexing and commit polling in the background."""
    try:
        parse_repo_url(req.github_url)
    except RepositoryAccessError as e:
        raise InvalidRequest(str(e)) from e

    project = await db.create_project(req.name, req.github_url, req.github_token)
    params = {"project_id": project["id"]}
    index_job = await enqueue_background(jobs, INDEX_REPOSITORY, params)
    commits_job = await enqueue_background(jobs, POLL_COMMITS, params)

    return {
        "project": public_project(project),
        "jobs": {"index_repository": index_job, "poll_commits": commits_job}
    }


@app.get("/projects")
async def list_projects(db: PostgresAdapter = Depends(get_db)):
    projects = await db.list_projects()
    return {"projects": [public_project(p) for p in projects], "total": len(projects)}


@app.get("/projects/{project_id}")
async def get_project(project_id: str, db: PostgresAdapter = Depends(get_db)):
    return public_project(await require_project(db, project_id))


@app.delete("/projects/{project_id}", dependencies=[Depends(require_api_key)])
async def delete_project(project_id: str, db: PostgresAdapter = Depends(get_db)):
    """Soft-delete a project."""
    if not await db.soft_delete_project(project_id):
        raise ProjectNotFound(f"Project {project_id} not found")
    return {"success": True}


@app.get("/projects/{project_id}/index-status")
async def index_status(project_id: str, db: PostgresAdapter = Depends(get_db)):
    """Number of files with a live embedding, and their paths."""
    await require_project(db, project_id)
    paths = await db.list_embedded_paths(project_id)
    return {"project_id": project_id, "indexed_files": len(paths), "paths": paths}


@app.post("/projects/{project_id}/reindex", dependencies=[Depends(require_api_key)])
async def reindex_project(project_id: str, db: PostgresAdapter = Depends(get_db),
                          jobs: Optional[JobManager] = Depends(get_job_manager)):
    """Delete the project's embeddings and index the repository again in the background."""
    project = await require_project(db, project_id)
    if not project.get("github_url"):
        raise InvalidRequest("Project has no repository URL")
    if jobs is None:
        raise HTTPException(status_code=503, detail="Background processing unavailable")

    job_id = await jobs.enqueue_job(REINDEX_PROJECT, {"project_id": project_id})
    return {"success": True, "message": "Re-indexing started", "job_id": job_id}


@app.get("/projects/{project_id}/commits")
async def list_commits(project_id: str, limit: int = 50, db: PostgresAdapter = Depends(get_db),
                       jobs: Optional[JobManager] = Depends(get_job_manager)):
    """Stored commits, newest first; also schedules a poll for new ones."""
    await require_project(db, project_id)
    poll_job = await enqueue_background(jobs, POLL_COMMITS, {"project_id": project_id})
    commits = await db.list_commits(project_id, limit)
    return {"commits": commits, "total": len(commits), "poll_job_id": poll_job}


@app.post("/projects/{project_id}/search")
async def search_codebase(project_id: str, req: SearchRequest, db: PostgresAdapter = Depends(get_db),
                          service: QuestionAnsweringService = Depends(get_qa_service)):
    """Files relevant to a question, without generating an answer."""
    await require_project(db, project_id)
    references = await service.find_references(project_id, req.question)
    excerpt = service.settings.source_excerpt_chars
    return {"results": [ref.to_dict(excerpt) for ref in references], "total": len(references)}


@app.post("/projects/{project_id}/questions", dependencies=[Depends(require_api_key)], status_code=201)
async def save_question(project_id: str, req: SaveQuestionRequest, db: PostgresAdapter = Depends(get_db)):
    await require_project(db, project_id)
    question_id = await db.save_question(project_id, req.question, req.answer, req.file_references, req.user_id)
    return {"id": question_id}


@app.get("/projects/{project_id}/questions")
async def list_questions(project_id: str, db: PostgresAdapter = Depends(get_db)):
    await require_project(db, project_id)
    questions = await db.list_questions(project_id)
    return {"questions": questions, "total": len(questions)}


@app.post("/projects/{project_id}/meetings", dependencies=[Depends(require_api_key)], status_code=201)
async def create_meeting(project_id: str, req: CreateMeetingRequest, db: PostgresAdapter = Depends(get_db)):
    """Register an uploaded meeting recording in PROCESSING state."""
    await require_project(db, project_id)
    return await db.create_meeting(project_id, req.name, req.meeting_url)


@app.post("/process-meeting", dependencies=[Depends(require_api_key)])
@meeting_rate_limit()
async def process_meeting(request: Request, payload: Dict[str, Any] = Body(...),
                          db: PostgresAdapter = Depends(get_db),
                          processor: MeetingProcessor = Depends(get_meeting_processor)):
    """Transcribe a meeting and store its issues.

    Body: ``{"meetingUrl": str, "projectId": str, "meetingId": str}``.
    """
    meeting_url = payload.get("meetingUrl")
    project_id = payload.get("projectId")
    meeting_id = payload.get("meetingId")
    if not all(isinstance(v, str) and v for v in (meeting_url, project_id, meeting_id)):
        raise InvalidRequest("meetingUrl, projectId and meetingId are required")

    meeting = await db.get_meeting(meeting_id)
    if meeting is None or meeting["project_id"] != project_id:
        raise ProjectNotFound(f"Meeting {meeting_id} not found in project {project_id}")

    try:
        await processor.process_meeting(meeting_id, meeting_url)
    except Exception as e:
        logger.error(f"Meeting {meeting_id} processing failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "Meeting processing failed"})

    return {"success": True}


@app.get("/meetings/{meeting_id}")
async def get_meeting(meeting_id: str, db: PostgresAdapter = Depends(get_db)):
    meeting = await db.get_meeting(meeting_id)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return meeting


@app.get("/jobs")
async def list_jobs(status: Optional[str] = None, limit: int = 100,
                    jobs: Optional[JobManager] = Depends(get_job_manager)):
    """List jobs with optional status filter"""
    if jobs is None:
        raise HTTPException(status_code=503, detail="Background processing unavailable")

    job_status = None
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    records = await jobs.list_jobs(job_status, limit)
    return {"jobs": [job_summary(job) for job in records], "total": len(records)}


@app.get("/jobs/dead-letter")
async def list_dead_letters(jobs: Optional[JobManager] = Depends(get_job_manager)):
    """Jobs that failed on every attempt."""
    if jobs is None:
        raise HTTPException(status_code=503, detail="Background processing unavailable")
    records = await jobs.list_dead_letters()
    return {"jobs": [job_summary(job) for job in records], "total": len(records)}


@app.get("/jobs/{job_id}")
async def get_job_status(job_id: str, jobs: Optional[JobManager] = Depends(get_job_manager)):
    """Get job status and logs"""
    if jobs is None:
        raise HTTPException(status_code=503, detail="Background processing unavailable")

    job_record = await jobs.get_job_status(job_id)
    if not job_record:
        raise HTTPException(status_code=404, detail="Job not found")

    return {**job_summary(job_record), "logs": job_record.logs, "result": job_record.result}
