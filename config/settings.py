"""Application settings for RepoBrief.

All values are read from environment variables once, through ``Settings.from_env()``,
and shared via ``get_settings()``.
"""

import os
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


class AISettings(BaseModel):
    """Summarization, embedding and generation provider settings."""
    groq_api_key: str = ""
    chat_model: str = "llama-3.1-8b-instant"
    hf_token: str = ""
    embedding_provider: str = Field(default="huggingface", description="huggingface or local")
    embedding_model: str = "sentence-transformers/all-mpnet-base-v2"
    embedding_endpoint: str = "https://router.huggingface.co/hf-inference/models/{model}/pipeline/feature-extraction"
    embedding_dimension: int = 768
    request_timeout: float = 60.0

    # Retry / throttle policy shared by every provider call
    max_retries: int = 3
    initial_retry_delay: float = 2.0
    backoff_factor: float = 2.0
    min_call_interval: float = Field(default=0.0, description="Seconds between consecutive calls; 0 disables")

    # Token budgets
    summary_input_chars: int = 1000
    summary_max_tokens: int = 120
    commit_diff_chars: int = 4000
    commit_summary_max_tokens: int = 200
    answer_max_tokens: int = 1024
    answer_temperature: float = 0.3


class GitHubSettings(BaseModel):
    """Repository host settings."""
    api_url: str = "https://api.github.com"
    token: str = ""
    max_concurrency: int = 5
    request_timeout: float = 30.0
    commits_per_poll: int = 10


class PipelineSettings(BaseModel):
    """Indexing and retrieval tuning."""
    top_k: int = 10
    similarity_threshold: float = 0.12
    fallback_top_n: int = 5
    source_excerpt_chars: int = 1500


class MeetingSettings(BaseModel):
    """Transcription service settings."""
    assemblyai_api_key: str = ""
    api_url: str = "https://api.assemblyai.com/v2"
    processing_timeout: float = 300.0
    poll_interval: float = 3.0


class APISettings(BaseModel):
    """HTTP surface settings."""
    api_keys: List[str] = Field(default_factory=list)
    allowed_origins: List[str] = Field(default_factory=list)
    redis_url: str = "redis://localhost:6379/0"
    commit_poll_cron: Optional[str] = "*/15 * * * *"
    job_max_attempts: int = 3
    job_retry_delay: float = 30.0
    qa_rate_limit: str = "30/minute"
    meeting_rate_limit: str = "5/minute"


class Settings(BaseModel):
    """Top-level application settings."""
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    ai: AISettings = Field(default_factory=AISettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    meetings: MeetingSettings = Field(default_factory=MeetingSettings)
    api: APISettings = Field(default_factory=APISettings)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        ai = AISettings(
            groq_api_key=os.getenv('GROQ_API_KEY', ''),
            chat_model=os.getenv('GROQ_CHAT_MODEL', 'llama-3.1-8b-instant'),
            hf_token=os.getenv('HF_TOKEN', ''),
            embedding_provider=os.getenv('EMBEDDING_PROVIDER', 'huggingface').lower(),
            embedding_model=os.getenv('EMBEDDING_MODEL', 'sentence-transformers/all-mpnet-base-v2'),
            embedding_dimension=_env_int('EMBEDDING_DIMENSION', 768),
            request_timeout=_env_float('AI_REQUEST_TIMEOUT', 60.0),
            max_retries=_env_int('AI_MAX_RETRIES', 3),
            initial_retry_delay=_env_float('AI_INITIAL_RETRY_DELAY', 2.0),
            backoff_factor=_env_float('AI_BACKOFF_FACTOR', 2.0),
            min_call_interval=_env_float('AI_MIN_CALL_INTERVAL', 0.0),
        )
        github = GitHubSettings(
            api_url=os.getenv('GITHUB_API_URL', 'https://api.github.com'),
            token=os.getenv('GITHUB_TOKEN', ''),
            max_concurrency=_env_int('GITHUB_MAX_CONCURRENCY', 5),
        )
        meetings = MeetingSettings(
            assemblyai_api_key=os.getenv('ASSEMBLYAI_API_KEY', ''),
            processing_timeout=_env_float('MEETING_PROCESSING_TIMEOUT', 300.0),
        )
        api_keys = [key.strip() for key in os.getenv('API_KEYS', '').split(',') if key.strip()]
        origins = [origin.strip() for origin in os.getenv('ALLOWED_ORIGINS', '').split(',') if origin.strip()]
        api = APISettings(
            api_keys=api_keys,
            allowed_origins=origins,
            redis_url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
            commit_poll_cron=os.getenv('COMMIT_POLL_CRON', '*/15 * * * *') or None,
            job_max_attempts=_env_int('JOB_MAX_ATTEMPTS', 3),
            job_retry_delay=_env_float('JOB_RETRY_DELAY', 30.0),
        )

        return cls(
            environment=os.getenv('ENVIRONMENT', 'development'),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=_env_bool('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None,
            ai=ai,
            github=github,
            meetings=meetings,
            api=api,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    settings = Settings.from_env()
    if not settings.ai.groq_api_key:
        logger.warning("GROQ_API_KEY is not set; summarization and answers will fail")
    return settings
