"""Prometheus metrics integration for the RepoBrief API and pipelines."""

import os
import re
import time
import logging
from typing import Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry so tests and multiple apps never collide with the default one
repobrief_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'repobrief_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=repobrief_registry
)

request_duration = Histogram(
    'repobrief_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=repobrief_registry
)

# AI provider metrics
ai_calls = Counter(
    'repobrief_ai_calls_total',
    'Calls to external AI providers',
    ['operation', 'status'],
    registry=repobrief_registry
)

ai_retries = Counter(
    'repobrief_ai_retries_total',
    'Rate-limit retries against external AI providers',
    ['operation'],
    registry=repobrief_registry
)

# Indexing metrics
indexed_files = Counter(
    'repobrief_indexed_files_total',
    'Repository files processed by the embedding pipeline',
    ['status'],
    registry=repobrief_registry
)

indexing_duration = Histogram(
    'repobrief_indexing_duration_seconds',
    'Whole-repository indexing duration in seconds',
    buckets=[1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
    registry=repobrief_registry
)

# Question answering metrics
qa_requests = Counter(
    'repobrief_qa_requests_total',
    'Question answering requests',
    ['status'],
    registry=repobrief_registry
)

qa_references = Histogram(
    'repobrief_qa_references_count',
    'Number of file references used as answer context',
    buckets=[0, 1, 2, 5, 10],
    registry=repobrief_registry
)

# Commit metrics
commits_recorded = Counter(
    'repobrief_commits_recorded_total',
    'Commits persisted by the poller',
    ['summary_status'],
    registry=repobrief_registry
)

# Database metrics
db_retries = Counter(
    'repobrief_db_retries_total',
    'Transient database failures that were retried',
    ['operation'],
    registry=repobrief_registry
)

# Job metrics
job_runs = Counter(
    'repobrief_job_runs_total',
    'Background job executions',
    ['job_type', 'status'],
    registry=repobrief_registry
)

# Application info
app_info = Info(
    'repobrief_app_info',
    'RepoBrief application information',
    registry=repobrief_registry
)

# Error metrics
error_count = Counter(
    'repobrief_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=repobrief_registry
)


class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = normalize_endpoint(request.url.path)

        start_time = time.time()
        status_code = 500  # Default to error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            duration = time.time() - start_time
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(duration)


def normalize_endpoint(path: str) -> str:
    """Normalize endpoint path to reduce cardinality."""
    path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', path)
    path = re.sub(r'/\d+', '/{id}', path)
    path = re.sub(r'/[a-f0-9]{32,}', '/{hash}', path)
    return path


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection for FastAPI app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(repobrief_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development'),
    })

    logger.info("Prometheus metrics configured")


def record_ai_call(operation: str, status: str) -> None:
    ai_calls.labels(operation=operation, status=status).inc()
    if status == "error":
        error_count.labels(error_type="ai_error", component=operation).inc()


def record_ai_retry(operation: str) -> None:
    ai_retries.labels(operation=operation).inc()


def record_file_result(status: str) -> None:
    """Count one file as ``embedded``, ``skipped`` or ``filtered_out``."""
    indexed_files.labels(status=status).inc()


def record_indexing_run(duration: float, error: Optional[str] = None) -> None:
    indexing_duration.observe(duration)
    if error:
        error_count.labels(error_type="indexing_error", component="indexing").inc()


def record_qa_metrics(reference_count: int, error: Optional[str] = None) -> None:
    """Record question-answering metrics."""
    status = "error" if error else "success"
    qa_requests.labels(status=status).inc()

    if error:
        error_count.labels(error_type="qa_error", component="qa").inc()
    else:
        qa_references.observe(reference_count)


def record_commit(summary_ok: bool) -> None:
    commits_recorded.labels(summary_status="ok" if summary_ok else "empty").inc()


def record_db_retry(operation: str) -> None:
    db_retries.labels(operation=operation).inc()


def record_job_run(job_type: str, status: str) -> None:
    job_runs.labels(job_type=job_type, status=status).inc()
