"""Job processing system for RepoBrief.

Runs repository indexing, re-indexing and commit polling in the background
with Redis-backed job records and APScheduler. Failed jobs are retried after a
fixed delay and moved to a dead-letter list once their attempts run out.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from observability.prometheus_metrics import record_job_run

logger = logging.getLogger(__name__)

JobHandler = Callable[[str, Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]

DEAD_LETTER_KEY = "jobs:dead_letter"
JOB_TTL_SECONDS = 86400 * 7


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"
    DEAD_LETTER = "dead_letter"


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    type: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    attempts: int = 0
    max_attempts: int = 3

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        timestamp = datetime.now().isoformat()
        self.logs.append(f"[{timestamp}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        for name in ['created_at', 'started_at', 'completed_at']:
            if data[name]:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        """Create JobRecord from dictionary."""
        data = dict(data)
        data['status'] = JobStatus(data['status'])
        for name in ['created_at', 'started_at', 'completed_at']:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


class JobManager:
    """Manages background jobs with Redis and APScheduler.

    Job records live in Redis when it is reachable and in process memory
    otherwise. Scheduled callables always use APScheduler's in-memory store
    because they are bound to this manager instance.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0",
                 max_attempts: int = 3, retry_delay: float = 30.0,
                 should_retry: Callable[[Exception], bool] = lambda e: True):
        self.redis_url = redis_url
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.should_retry = should_retry
        self.redis_client: Optional[redis.Redis] = None
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.job_handlers: Dict[str, JobHandler] = {}
        self._running = False
        self._memory_jobs: Dict[str, JobRecord] = {}
        self._memory_dead_letters: List[str] = []

    async def initialize(self, use_redis: bool = True):
        """Initialize Redis connection and scheduler."""
        loop = asyncio.get_running_loop()

        if use_redis:
            try:
                self.redis_client = redis.from_url(self.redis_url, decode_responses=True, socket_connect_timeout=2)
                await loop.run_in_executor(None, self.redis_client.ping)
                logger.info("Connected to Redis successfully")
            except Exception as e:
                logger.warning(f"Redis not available: {e}. Job manager will run in memory-only mode.")
                self.redis_client = None

        try:
            self.scheduler = AsyncIOScheduler(
                executors={'default': AsyncIOExecutor()},
                job_defaults={'coalesce': True, 'max_instances': 3, 'misfire_grace_time': 300}
            )
            self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
            self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
            self.scheduler.start()
            self._running = True
            logger.info("Job scheduler initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize job manager: {e}")
            # Don't raise the exception to allow the server to start
            self._running = False

    async def shutdown(self):
        """Shutdown the job manager."""
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.redis_client:
            await asyncio.get_running_loop().run_in_executor(None, self.redis_client.close)
        logger.info("Job manager shutdown complete")

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(self, job_type: str, handler: JobHandler):
        """Register a job handler function."""
        self.job_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    async def enqueue_job(self, job_type: str, parameters: Optional[Dict[str, Any]] = None,
                          max_attempts: Optional[int] = None) -> str:
        """Record a new job and schedule it to run immediately."""
        if not self._running:
            raise RuntimeError("Job manager not initialized")

        if job_type not in self.job_handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        job_record = JobRecord(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.QUEUED,
            created_at=datetime.now(),
            parameters=parameters or {},
            max_attempts=max_attempts or self.max_attempts
        )
        job_record.add_log("Job queued")
        await self._store_job_record(job_record)
        self._schedule(job_record.id, datetime.now())

        logger.info(f"Enqueued job {job_record.id} of type {job_type}")
        return job_record.id

    def _schedule(self, job_id: str, run_date: datetime):
        self.scheduler.add_job(
            self._execute_job,
            'date',
            run_date=run_date,
            args=[job_id],
            id=f"{job_id}:{uuid.uuid4().hex[:8]}"
        )

    async def schedule_periodic_job(self, job_type: str, cron_expression: str,
                                    parameters: Optional[Dict[str, Any]] = None,
                                    job_id: Optional[str] = None) -> str:
        """Schedule a periodic job using a five-field cron expression."""
        if not self._running:
            raise RuntimeError("Job manager not initialized")

        if job_id is None:
            job_id = f"periodic_{job_type}"

        cron_parts = cron_expression.split()
        if len(cron_parts) != 5:
            raise ValueError("Cron expression must have 5 parts: minute hour day month day_of_week")

        minute, hour, day, month, day_of_week = cron_parts
        self.scheduler.add_job(
            self._execute_periodic_job,
            'cron',
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            args=[job_type, parameters or {}],
            id=job_id,
            replace_existing=True
        )

        logger.info(f"Scheduled periodic job {job_id} with cron: {cron_expression}")
        return job_id

    async def get_job_status(self, job_id: str) -> Optional[JobRecord]:
        """Get job status and details."""
        if self.redis_client:
            job_data = await asyncio.get_running_loop().run_in_executor(
                None, self.redis_client.get, f"job:{job_id}"
            )
            return JobRecord.from_dict(json.loads(job_data)) if job_data else None
        return self._memory_jobs.get(job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        """List jobs, newest first, optionally filtered by status."""
        jobs = []

        if self.redis_client:
            loop = asyncio.get_running_loop()
            job_keys = await loop.run_in_executor(None, lambda: list(self.redis_client.scan_iter("job:*")))
            for key in job_keys:
                job_data = await loop.run_in_executor(None, self.redis_client.get, key)
                if job_data:
                    jobs.append(JobRecord.from_dict(json.loads(job_data)))
        else:
            jobs = list(self._memory_jobs.values())

        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    async def list_dead_letters(self) -> List[JobRecord]:
        """Jobs that exhausted their attempts, in the order they failed."""
        if self.redis_client:
            job_ids = await asyncio.get_running_loop().run_in_executor(
                None, self.redis_client.lrange, DEAD_LETTER_KEY, 0, -1
            )
        else:
            job_ids = list(self._memory_dead_letters)

        records = []
        for job_id in job_ids:
            record = await self.get_job_status(job_id)
            if record:
                records.append(record)
        return records

    async def _execute_job(self, job_id: str):
        """Execute one attempt of a job, then retry or dead-letter it on failure."""
        job_record = await self.get_job_status(job_id)
        if not job_record:
            logger.error(f"Job {job_id} not found")
            return

        handler = self.job_handlers.get(job_record.type)
        if not handler:
            job_record.error = f"No handler registered for job type: {job_record.type}"
            await self._dead_letter(job_record)
            return

        job_record.status = JobStatus.RUNNING
        job_record.attempts += 1
        job_record.started_at = datetime.now()
        job_record.add_log(f"Attempt {job_record.attempts}/{job_record.max_attempts} started")
        await self._store_job_record(job_record)

        try:
            result = await handler(job_record.id, job_record.parameters)
        except Exception as e:
            job_record.error = str(e)
            job_record.add_log(f"Attempt {job_record.attempts} failed: {e}")
            record_job_run(job_record.type, "failed")

            if job_record.attempts < job_record.max_attempts and self.should_retry(e):
                job_record.status = JobStatus.RETRYING
                await self._store_job_record(job_record)
                self._schedule(job_id, datetime.now() + timedelta(seconds=self.retry_delay))
                logger.warning(
                    f"Job {job_id} ({job_record.type}) failed on attempt {job_record.attempts}, "
                    f"retrying in {self.retry_delay:.0f}s: {e}"
                )
            else:
                logger.error(f"Job {job_id} ({job_record.type}) failed permanently: {e}")
                await self._dead_letter(job_record)
            return

        job_record.status = JobStatus.DONE
        job_record.completed_at = datetime.now()
        job_record.result = result
        job_record.error = None
        job_record.add_log("Job completed successfully")
        record_job_run(job_record.type, "done")
        await self._store_job_record(job_record)

    async def _dead_letter(self, job_record: JobRecord):
        job_record.status = JobStatus.DEAD_LETTER
        job_record.completed_at = datetime.now()
        job_record.add_log(f"Moved to dead-letter list: {job_record.error}")
        record_job_run(job_record.type, "dead_letter")
        await self._store_job_record(job_record)

        if self.redis_client:
            await asyncio.get_running_loop().run_in_executor(
                None, self.redis_client.rpush, DEAD_LETTER_KEY, job_record.id
            )
        else:
            self._memory_dead_letters.append(job_record.id)

    async def _execute_periodic_job(self, job_type: str, parameters: Dict[str, Any]):
        """Execute a periodic job by creating a new job instance."""
        job_id = await self.enqueue_job(job_type, parameters)
        logger.info(f"Created periodic job instance {job_id} for type {job_type}")

    async def _store_job_record(self, job_record: JobRecord):
        """Store job record in Redis or memory."""
        if self.redis_client:
            job_data = json.dumps(job_record.to_dict(), default=str)
            await asyncio.get_running_loop().run_in_executor(
                None,
                self.redis_client.setex,
                f"job:{job_record.id}",
                JOB_TTL_SECONDS,
                job_data
            )
        else:
            self._memory_jobs[job_record.id] = job_record

    def _job_executed(self, event):
        logger.debug(f"Scheduler job {event.job_id} executed")

    def _job_error(self, event):
        logger.error(f"Scheduler job {event.job_id} raised: {event.exception}")
