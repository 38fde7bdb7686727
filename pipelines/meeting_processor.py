"""Meeting processing for RepoBrief.

Sends an uploaded meeting recording to AssemblyAI with auto-chapters enabled,
waits for the transcript, and stores each chapter as a meeting issue.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from config.settings import MeetingSettings
from indexer.errors import TranscriptionError
from indexer.postgres_adapter import PostgresAdapter

logger = logging.getLogger(__name__)


def ms_to_time(ms: int) -> str:
    """Format milliseconds as ``MM:SS``."""
    seconds = int(ms) // 1000
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes:02d}:{remaining:02d}"


def chapters_to_issues(chapters: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "start": ms_to_time(chapter.get("start", 0)),
            "end": ms_to_time(chapter.get("end", 0)),
            "gist": chapter.get("gist") or "",
            "headline": chapter.get("headline") or "",
            "summary": chapter.get("summary") or "",
        }
        for chapter in chapters
    ]


class MeetingProcessor:
    """Transcribe meetings and persist their chapters."""

    def __init__(self, settings: MeetingSettings, store: PostgresAdapter,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.settings = settings
        self.store = store
        self.session = session
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {"authorization": self.settings.assemblyai_api_key}

    async def _request(self, session: aiohttp.ClientSession, method: str, path: str,
                       payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.settings.api_url.rstrip('/')}{path}"
        try:
            async with session.request(method, url, json=payload, headers=self._headers()) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            raise TranscriptionError(f"Transcription service request failed: {e}") from e

    async def transcribe(self, meeting_url: str) -> List[Dict[str, Any]]:
        """Return the auto-chapters of a recording, polling until the transcript is ready."""
        if self.session is not None:
            return await self._transcribe(self.session, meeting_url)
        async with aiohttp.ClientSession() as session:
            return await self._transcribe(session, meeting_url)

    async def _transcribe(self, session: aiohttp.ClientSession, meeting_url: str) -> List[Dict[str, Any]]:
        job = await self._request(session, "POST", "/transcript",
                                  {"audio_url": meeting_url, "auto_chapters": True})
        transcript_id = job["id"]
        logger.info(f"Submitted transcript {transcript_id} for {meeting_url}")

        while True:
            transcript = await self._request(session, "GET", f"/transcript/{transcript_id}")
            status = transcript.get("status")
            if status == "completed":
                break
            if status == "error":
                raise TranscriptionError(transcript.get("error") or "Transcription failed")
            await self._sleep(self.settings.poll_interval)

        if not transcript.get("text"):
            raise TranscriptionError("Transcript is empty")
        return transcript.get("chapters") or []

    async def process_meeting(self, meeting_id: str, meeting_url: str) -> Dict[str, Any]:
        """Transcribe, store the issues and mark the meeting COMPLETED.

        Raises TranscriptionError on failure or when the processing ceiling
        is exceeded; the meeting then stays in PROCESSING.
        """
        try:
            chapters = await asyncio.wait_for(
                self.transcribe(meeting_url), timeout=self.settings.processing_timeout
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionError(
                f"Meeting processing exceeded {self.settings.processing_timeout:.0f}s"
            ) from e

        issues = chapters_to_issues(chapters)
        name = issues[0]["headline"] if issues else None
        await self.store.complete_meeting(meeting_id, name, issues)
        logger.info(f"Meeting {meeting_id} processed with {len(issues)} issues")
        return {"meeting_id": meeting_id, "name": name, "issues": len(issues)}
