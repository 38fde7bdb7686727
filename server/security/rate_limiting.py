"""Rate limiting for the RepoBrief API using slowapi, backed by Redis when reachable."""

import os
import logging
from typing import Optional

import redis
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import get_settings

logger = logging.getLogger(__name__)


def get_redis_client(redis_url: str) -> Optional[redis.Redis]:
    """Get Redis client for rate limiting storage."""
    try:
        client = redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=1)
        client.ping()
        return client
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will use in-memory storage.")
        return None


def get_client_ip(request: Request) -> str:
    """Extract client IP considering proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def get_request_identifier(request: Request) -> str:
    """Key requests by API key when one is presented, otherwise by client IP."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{api_key[:12]}"
    return f"ip:{get_client_ip(request)}"


def create_limiter() -> Limiter:
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false"
    if enabled and get_redis_client(redis_url):
        return Limiter(key_func=get_request_identifier, storage_uri=redis_url)
    # Fallback to in-memory storage
    return Limiter(key_func=get_request_identifier, enabled=enabled)


limiter = create_limiter()


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom handler for rate limit exceeded responses."""
    retry_after = getattr(exc, 'retry_after', None) or 60
    response = JSONResponse(
        status_code=429,
        content={
            "error": f"Rate limit exceeded: {exc.detail}",
            "retry_after": retry_after
        }
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def setup_rate_limiting(app: FastAPI) -> None:
    """Setup rate limiting for FastAPI application."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


def qa_rate_limit():
    """Per-caller limit on question answering (generation is the costly path)."""
    return limiter.limit(lambda: get_settings().api.qa_rate_limit)


def meeting_rate_limit():
    """Per-caller limit on meeting transcription requests."""
    return limiter.limit(lambda: get_settings().api.meeting_rate_limit)
