"""Security package for the RepoBrief API."""

from .auth import require_api_key
from .rate_limiting import (
    limiter,
    setup_rate_limiting,
    qa_rate_limit,
    meeting_rate_limit,
    rate_limit_handler
)
from .cors import setup_cors, get_allowed_origins, EXPOSED_HEADERS

__all__ = [
    # Authentication
    "require_api_key",
    # Rate limiting
    "limiter",
    "setup_rate_limiting",
    "qa_rate_limit",
    "meeting_rate_limit",
    "rate_limit_handler",
    # CORS
    "setup_cors",
    "get_allowed_origins",
    "EXPOSED_HEADERS"
]
