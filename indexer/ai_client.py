"""Rate-limited client for the external AI capabilities.

Wraps code summarization, commit-diff summarization, text embedding and
streamed answer generation behind one retry/backoff policy and an optional
process-wide minimum-interval throttle.
"""

import asyncio
import logging
import numbers
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiohttp
import numpy as np
from groq import AsyncGroq

from config.settings import AISettings
from indexer.errors import EmbeddingFormatError, is_rate_limit_error
from observability.prometheus_metrics import record_ai_call, record_ai_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_SYSTEM_PROMPT = (
    "You are a senior engineer onboarding a new teammate. Summarize the code concisely. "
    "Max 80 words. Focus on the file's purpose within the project and its key logic."
)

COMMIT_SYSTEM_PROMPT = (
    "Summarize the git diff as bullet points. Lines starting with '+' were added, lines "
    "starting with '-' were removed. Cite the affected file in [brackets] when there are "
    "at most two relevant files. Be concise, max 5 bullets."
)


class RateLimiter:
    """Minimum-interval throttle shared by every AI call in the process.

    Holds the time of the last call behind an ``asyncio.Lock``; the wait
    happens inside the lock so callers pass through strictly one at a time.
    An interval of 0 disables throttling.
    """

    def __init__(self, min_interval: float = 0.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    async def wait(self) -> float:
        """Block until the next call is allowed; return the seconds waited."""
        if self.min_interval <= 0:
            return 0.0

        async with self._lock:
            waited = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.info(f"AI throttle: waiting {waited:.1f}s")
                    await self._sleep(waited)
            self._last_call = self._clock()
            return waited


async def with_retry(fn: Callable[[], Awaitable[T]],
                     max_retries: int = 3,
                     initial_delay: float = 2.0,
                     backoff_factor: float = 2.0,
                     operation: str = "ai_call",
                     sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> T:
    """Call ``fn``, retrying only on rate-limit errors with exponential backoff.

    Makes at most ``max_retries + 1`` attempts. Any other error propagates on
    the first occurrence; the last rate-limit error is re-raised once the
    retries are exhausted.
    """
    delay = initial_delay
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= max_retries:
                raise
            attempt += 1
            record_ai_retry(operation)
            logger.warning(
                f"{operation} rate limited, retry {attempt}/{max_retries} in {delay:.1f}s: {e}"
            )
            await sleep(delay)
            delay *= backoff_factor


class EmbeddingShape(str, Enum):
    """Accepted response shapes from embedding providers."""
    FLAT = "flat"        # [0.1, 0.2, ...]
    NESTED = "nested"    # [[0.1, 0.2, ...], ...]


def _is_number_list(value: Any) -> bool:
    return (isinstance(value, list) and len(value) > 0 and
            all(isinstance(v, numbers.Real) and not isinstance(v, bool) for v in value))


def classify_embedding(payload: Any) -> EmbeddingShape:
    """Identify the shape of a raw provider payload or raise EmbeddingFormatError."""
    if _is_number_list(payload):
        return EmbeddingShape.FLAT
    if isinstance(payload, list) and payload and _is_number_list(payload[0]):
        return EmbeddingShape.NESTED
    raise EmbeddingFormatError(f"Unexpected embedding response format: {type(payload).__name__}")


def normalize_embedding(payload: Any, dimension: Optional[int] = None) -> np.ndarray:
    """Normalize any accepted payload shape into one float32 vector."""
    if isinstance(payload, np.ndarray):
        payload = payload.tolist()

    shape = classify_embedding(payload)
    values = payload if shape is EmbeddingShape.FLAT else payload[0]
    vector = np.asarray(values, dtype=np.float32)

    if dimension is not None and vector.shape[0] != dimension:
        raise EmbeddingFormatError(
            f"Embedding has {vector.shape[0]} dimensions, expected {dimension}"
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingFormatError("Embedding contains non-finite values")
    return vector


class HuggingFaceEmbeddingBackend:
    """Feature-extraction through the hosted Hugging Face inference API."""

    def __init__(self, settings: AISettings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.url = settings.embedding_endpoint.format(model=settings.embedding_model)
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self.session

    async def embed_raw(self, text: str) -> Any:
        session = await self._get_session()
        headers = {"Authorization": f"Bearer {self.settings.hf_token}"}
        payload = {"inputs": text, "options": {"wait_for_model": True}}
        async with session.post(self.url, json=payload, headers=headers) as response:
            response.raise_for_status()
            return await response.json()

    async def close(self):
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()


class LocalEmbeddingBackend:
    """In-process sentence-transformers model (``pip install repobrief[local]``)."""

    def __init__(self, model_name: str):
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {model_name}")
        self.model = SentenceTransformer(model_name)
        logger.info(f"Model loaded. Embedding dimension: {self.model.get_sentence_embedding_dimension()}")

    async def embed_raw(self, text: str) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.model.encode(text, convert_to_numpy=True)
        )

    async def close(self):
        return None


def create_embedding_backend(settings: AISettings):
    if settings.embedding_provider == "local":
        return LocalEmbeddingBackend(settings.embedding_model)
    if settings.embedding_provider == "huggingface":
        return HuggingFaceEmbeddingBackend(settings)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")


class AIClient:
    """Summaries, embeddings and streamed chat behind one retry and throttle policy."""

    def __init__(self, settings: AISettings, rate_limiter: RateLimiter,
                 chat_client: Optional[Any] = None,
                 embedding_backend: Optional[Any] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.chat_client = chat_client or AsyncGroq(api_key=settings.groq_api_key)
        self.embedding_backend = embedding_backend or create_embedding_backend(settings)
        self._sleep = sleep

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            await self.rate_limiter.wait()
            return await factory()

        try:
            result = await with_retry(
                attempt,
                max_retries=self.settings.max_retries,
                initial_delay=self.settings.initial_retry_delay,
                backoff_factor=self.settings.backoff_factor,
                operation=operation,
                sleep=self._sleep,
            )
        except Exception:
            record_ai_call(operation, "error")
            raise
        record_ai_call(operation, "success")
        return result

    async def _complete(self, operation: str, messages: List[Dict[str, str]], max_tokens: int) -> str:
        response = await self._call(operation, lambda: self.chat_client.chat.completions.create(
            model=self.settings.chat_model,
            messages=messages,
            temperature=0.2,
            max_tokens=max_tokens,
        ))
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def summarize(self, path: str, content: str) -> str:
        """Summarize a source file from a bounded prefix of its content."""
        code = content[:self.settings.summary_input_chars]
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": f"File: {path}\n\n```\n{code}\n```"},
        ]
        return await self._complete("summarize", messages, self.settings.summary_max_tokens)

    async def summarize_commit(self, diff: str) -> str:
        """Summarize a unified diff as short bullet points."""
        messages = [
            {"role": "system", "content": COMMIT_SYSTEM_PROMPT},
            {"role": "user", "content": diff[:self.settings.commit_diff_chars]},
        ]
        return await self._complete("summarize_commit", messages, self.settings.commit_summary_max_tokens)

    async def embed(self, text: str) -> np.ndarray:
        """Embed text into a fixed-length vector."""
        raw = await self._call("embed", lambda: self.embedding_backend.embed_raw(text))
        return normalize_embedding(raw, self.settings.embedding_dimension)

    async def open_chat_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Start a streamed completion and return an iterator of text chunks.

        Errors while opening the stream (including exhausted rate-limit retries)
        are raised here, before any chunk is produced.
        """
        stream = await self._call("chat_stream", lambda: self.chat_client.chat.completions.create(
            model=self.settings.chat_model,
            messages=messages,
            temperature=self.settings.answer_temperature,
            max_tokens=self.settings.answer_max_tokens,
            stream=True,
        ))
        return self._iter_stream(stream)

    async def _iter_stream(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await stream.close()

    async def close(self):
        await self.embedding_backend.close()
        await self.chat_client.close()
