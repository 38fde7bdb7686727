"""Cross-origin access for browser clients of the RepoBrief API.

The answer endpoint returns its file references in a response header, so
that header has to be exposed explicitly or browser scripts cannot read it.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = ["X-File-References", "Retry-After", "X-Request-ID"]

LOCAL_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def get_allowed_origins(settings: Optional[Settings] = None) -> List[str]:
    """Configured origins, or the local frontend ports outside production."""
    settings = settings or get_settings()
    if settings.api.allowed_origins:
        return list(settings.api.allowed_origins)

    if settings.environment == "production":
        logger.warning("ALLOWED_ORIGINS is empty in production; cross-origin requests will be refused")
        return []
    return list(LOCAL_ORIGINS)


def get_cors_config(settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    return {
        "allow_origins": get_allowed_origins(settings),
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
        "allow_headers": ["Accept", "Content-Type", "Authorization", "X-API-Key"],
        "expose_headers": EXPOSED_HEADERS,
        "max_age": 86400 if settings.environment == "production" else 600,
    }


def setup_cors(app: FastAPI, settings: Optional[Settings] = None) -> None:
    """Install CORSMiddleware on the app."""
    config = get_cors_config(settings)
    app.add_middleware(CORSMiddleware, **config)
    logger.info(f"CORS configured for {len(config['allow_origins'])} origins")
