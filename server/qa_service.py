"""Retrieval-augmented question answering over an indexed repository.

The question is embedded, the nearest file summaries of the project are
selected, and a bounded context built from them is sent to the chat model.
The answer is streamed back chunk by chunk while the selected files are
returned up front so callers can render citations before the text arrives.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence
from urllib.parse import quote

from config.settings import PipelineSettings
from indexer.ai_client import AIClient
from indexer.errors import InvalidRequest
from indexer.postgres_adapter import PostgresAdapter
from observability.prometheus_metrics import record_qa_metrics

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert software developer assistant helping users understand their codebase.
You have access to source code from the user's project. Answer questions based on the provided context.

Guidelines:
- Be concise and direct
- Reference specific files when relevant
- If the context doesn't contain enough information, say so
- Use code snippets when helpful
- Format responses with markdown"""

NO_CONTEXT = "No relevant code found in the project."

STREAM_ERROR_MARKER = "\n\n[stream error] "


@dataclass
class FileReference:
    """A stored file selected as answer context, with its similarity to the question."""
    file_name: str
    source_code: str
    summary: str
    similarity: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'FileReference':
        return cls(
            file_name=row["file_name"],
            source_code=row.get("source_code") or "",
            summary=row.get("summary") or "",
            similarity=float(row["similarity"]),
        )

    def to_dict(self, excerpt_chars: int = None) -> Dict[str, Any]:
        source = self.source_code if excerpt_chars is None else self.source_code[:excerpt_chars]
        return {
            "fileName": self.file_name,
            "sourceCode": source,
            "summary": self.summary,
            "similarity": self.similarity,
        }


def select_references(candidates: Sequence[FileReference], threshold: float,
                      fallback_top_n: int) -> List[FileReference]:
    """Keep candidates strictly above ``threshold``.

    When none pass but candidates exist, the first ``fallback_top_n`` are
    returned instead. ``candidates`` must already be ordered by descending
    similarity.
    """
    selected = [ref for ref in candidates if ref.similarity > threshold]
    if not selected and candidates:
        selected = list(candidates[:fallback_top_n])
        logger.info(f"No files above similarity {threshold}, using top {len(selected)}")
    return selected


def build_context(references: Sequence[FileReference], excerpt_chars: int) -> str:
    if not references:
        return NO_CONTEXT

    parts = []
    for ref in references:
        parts.append(
            f"### File: {ref.file_name}\n"
            f"**Summary:** {ref.summary}\n"
            f"**Code:**\n```\n{ref.source_code[:excerpt_chars]}\n```\n\n"
        )
    return "".join(parts)


def build_messages(question: str, context: str) -> List[Dict[str, str]]:
    user_prompt = (
        f"## Context (Relevant Source Code)\n{context}\n\n"
        f"## User Question\n{question}\n\n"
        "Please answer the question based on the context above."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def encode_references(references: Sequence[FileReference], excerpt_chars: int) -> str:
    """URL-encoded JSON array of the references, safe to send as a header value."""
    payload = json.dumps([ref.to_dict(excerpt_chars) for ref in references])
    return quote(payload, safe="!~*'()")


async def guard_stream(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Forward chunks in order; a provider failure ends the stream with an error marker."""
    try:
        async for chunk in chunks:
            yield chunk
    except Exception as e:
        logger.error(f"Answer stream failed: {e}")
        yield f"{STREAM_ERROR_MARKER}{e}"
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


@dataclass
class PreparedAnswer:
    """File references plus the not-yet-consumed answer stream."""
    references: List[FileReference]
    chunks: AsyncIterator[str]


class QuestionAnsweringService:
    """Answer questions about a project from its stored file embeddings."""

    def __init__(self, ai_client: AIClient, store: PostgresAdapter, settings: PipelineSettings):
        self.ai_client = ai_client
        self.store = store
        self.settings = settings

    @staticmethod
    def validate(question: Any, project_id: Any):
        if not isinstance(question, str) or not question.strip():
            raise InvalidRequest("Question is required")
        if not isinstance(project_id, str) or not project_id.strip():
            raise InvalidRequest("Project ID is required")

    async def find_references(self, project_id: str, question: str) -> List[FileReference]:
        """Embed the question and select the most relevant stored files."""
        vector = await self.ai_client.embed(question)
        rows = await self.store.search_similar(project_id, vector, limit=self.settings.top_k)
        candidates = [FileReference.from_row(row) for row in rows]
        logger.debug(
            "Similarity scores: " + ", ".join(f"{c.file_name}={c.similarity:.3f}" for c in candidates)
        )
        return select_references(candidates, self.settings.similarity_threshold, self.settings.fallback_top_n)

    async def answer(self, question: str, project_id: str) -> PreparedAnswer:
        """Retrieve context and open the answer stream.

        Validation errors raise InvalidRequest. Embedding, search and stream
        start-up failures raise before any chunk is produced.
        """
        self.validate(question, project_id)
        try:
            references = await self.find_references(project_id, question)
            context = build_context(references, self.settings.source_excerpt_chars)
            chunks = await self.ai_client.open_chat_stream(build_messages(question, context))
        except Exception as e:
            record_qa_metrics(0, error=str(e))
            raise

        record_qa_metrics(len(references))
        logger.info(f"Answering question for project {project_id} with {len(references)} file references")
        return PreparedAnswer(references=references, chunks=guard_stream(chunks))
