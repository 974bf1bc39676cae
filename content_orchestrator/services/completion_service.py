"""
Content completion capability (OpenAI): clean raw content, extract insights, write posts.
All GPT calls live in this module. Output is JSON only and validated with pydantic.
"""
import asyncio
import json
import time
from typing import Any, Dict, List, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from content_orchestrator.config import Settings
from content_orchestrator.errors import ExternalCapabilityError
from content_orchestrator.logging_config import get_logger
from content_orchestrator.schemas.completion import (
    CleanedContent,
    InsightDraft,
    InsightDraftList,
    PostDraft,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

PLATFORM_GUIDANCE = {
    "linkedin": "LinkedIn: professional tone, short paragraphs, 1300-2000 characters, 3-5 hashtags at the end.",
    "x": "X (Twitter): one punchy post under 260 characters including at most 2 hashtags.",
    "facebook": "Facebook: conversational, 80-250 words, ends with a question to drive comments.",
}


class ContentCompletion(Protocol):
    async def clean(self, raw_content: str) -> CleanedContent:
        ...

    async def extract_insights(self, content: str, max_count: int) -> List[InsightDraft]:
        ...

    async def generate_post(self, insight_content: str, platform: str) -> PostDraft:
        ...


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        content = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    return content


class OpenAICompletionService:
    """OpenAI-backed ContentCompletion. Raises ExternalCapabilityError; callers own retries."""

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model
        self.timeout_seconds = settings.openai_timeout_seconds
        self.max_retries = settings.openai_max_retries
        self.temperature = settings.openai_temperature
        self._client: Any = None

    def _get_client(self):  # noqa: ANN201
        """Lazy init OpenAI client."""
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise ExternalCapabilityError("completion", "openai_not_configured", retryable=False)
        from openai import OpenAI

        self._client = OpenAI(api_key=self.api_key, timeout=float(self.timeout_seconds), max_retries=self.max_retries)
        return self._client

    async def _complete_json(self, op: str, system: str, user: str, schema: Type[ModelT]) -> ModelT:
        client = self._get_client()
        start = time.perf_counter()
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(
                    client.chat.completions.create,
                    model=self.model,
                    messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
                    temperature=self.temperature,
                    response_format={"type": "json_object"},
                ),
                timeout=float(self.timeout_seconds) * (self.max_retries + 1),
            )
        except asyncio.TimeoutError as e:
            logger.warning("llm.timeout", op=op, model=self.model)
            raise ExternalCapabilityError("completion", f"{op}: timeout") from e
        except Exception as e:
            logger.warning("llm.call_failed", op=op, model=self.model, error=str(e))
            raise ExternalCapabilityError("completion", f"{op}: {e}") from e
        latency_ms = round((time.perf_counter() - start) * 1000)
        content = _strip_code_fence(resp.choices[0].message.content or "")
        try:
            data = json.loads(content)
            out = schema.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("llm.invalid_output", op=op, model=self.model, latency_ms=latency_ms, error=str(e)[:300])
            raise ExternalCapabilityError("completion", f"{op}: invalid_output") from e
        logger.info("llm.completed", op=op, model=self.model, latency_ms=latency_ms)
        return out

    async def clean(self, raw_content: str) -> CleanedContent:
        system = (
            "You clean transcripts and raw notes for content writers. Remove filler words, false starts, "
            "timestamps and speaker noise; fix punctuation; keep the speaker's meaning and voice. "
            'Return ONLY JSON: {"content": "...", "title": "...", "summary": "..."}.'
        )
        return await self._complete_json("clean", system, raw_content, CleanedContent)

    async def extract_insights(self, content: str, max_count: int) -> List[InsightDraft]:
        system = (
            "You extract standalone insights that can each become a social post. "
            f"Return ONLY JSON: {{\"insights\": [...]}} with at most {max_count} items. Each item: "
            '{"title": str, "content": str, "category": str, "urgency": 1-10, "relatability": 1-10, '
            '"specificity": 1-10, "authority": 1-10}. Prefer concrete, specific, non-obvious points.'
        )
        out = await self._complete_json("extract_insights", system, content, InsightDraftList)
        return out.insights[:max_count]

    async def generate_post(self, insight_content: str, platform: str) -> PostDraft:
        guidance = PLATFORM_GUIDANCE.get(platform, f"{platform}: concise social post.")
        system = (
            "You write social media posts from one insight. "
            f"{guidance} "
            'Return ONLY JSON: {"title": str, "content": str, "hashtags": [str]}.'
        )
        return await self._complete_json("generate_post", system, insight_content, PostDraft)


def drafts_summary(drafts: List[InsightDraft]) -> Dict[str, Any]:
    return {"count": len(drafts), "titles": [d.title for d in drafts]}
