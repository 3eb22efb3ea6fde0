"""
Content generation interface: transcript cleaning, insight extraction and
post drafting.

Swap the concrete implementation to connect a real model. The OpenAI
compatible client raises ExternalFailure on any upstream problem so callers
can route it into job retries.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from postflow.errors import ExternalFailure
from postflow.services.domain import MAX_SUB_SCORE, InsightDraft, Platform
from postflow.settings import get_settings

logger = logging.getLogger(__name__)

_FILLERS = re.compile(r"\b(um+|uh+|erm|you know|i mean|like,)[ \t]*", re.IGNORECASE)
_TIMESTAMPS = re.compile(r"\[?\(?\b\d{1,2}:\d{2}(?::\d{2})?\b\)?\]?")
_SPEAKER = re.compile(r"^[ \t]*[A-Z][\w .'-]{0,40}:[ \t]+", re.MULTILINE)


@dataclass(frozen=True)
class GeneratedPost:
    content: str
    hashtags: tuple[str, ...] = ()


class ContentGenerator(ABC):
    @abstractmethod
    async def clean_transcript(self, raw: str) -> str:
        ...

    @abstractmethod
    async def extract_insights(self, cleaned: str, max_count: int) -> list[InsightDraft]:
        ...

    @abstractmethod
    async def generate_post(self, insight_content: str, platform: Platform, style: str) -> GeneratedPost:
        ...


class StubContentGenerator(ContentGenerator):
    """Deterministic generator: regex cleanup, one insight per paragraph."""

    async def clean_transcript(self, raw: str) -> str:
        text = _TIMESTAMPS.sub("", raw)
        text = _SPEAKER.sub("", text)
        text = _FILLERS.sub("", text)
        paragraphs = [" ".join(p.split()) for p in re.split(r"\n\s*\n", text)]
        return "\n\n".join(p for p in paragraphs if p)

    async def extract_insights(self, cleaned: str, max_count: int) -> list[InsightDraft]:
        paragraphs = [p.strip() for p in cleaned.split("\n\n") if p.strip()]
        drafts = []
        for index, paragraph in enumerate(paragraphs[:max_count]):
            words = paragraph.split()
            base = min(len(words), MAX_SUB_SCORE)
            drafts.append(InsightDraft(
                title=" ".join(words[:8]),
                content=paragraph,
                category="general",
                urgency=min(base, MAX_SUB_SCORE),
                relatability=min(base + index % 3, MAX_SUB_SCORE),
                specificity=min(sum(c.isdigit() for c in paragraph) * 5 + 10, MAX_SUB_SCORE),
                authority=min(base // 2 + 10, MAX_SUB_SCORE),
            ))
        return drafts

    async def generate_post(self, insight_content: str, platform: Platform, style: str) -> GeneratedPost:
        lead = insight_content.strip()
        if platform is Platform.x:
            return GeneratedPost(content=lead, hashtags=("insights",))
        content = f"{lead}\n\nWhat's your take on this?"
        return GeneratedPost(content=content, hashtags=("insights", style))


_EXTRACT_PROMPT = (
    "Extract up to {max_count} distinct, self-contained insights from the transcript below. "
    "Respond with JSON: {{\"insights\": [{{\"title\": str, \"content\": str, \"category\": str, "
    "\"urgency\": int, \"relatability\": int, \"specificity\": int, \"authority\": int}}]}}. "
    "Each score is an integer from 0 to {max_score}.\n\nTranscript:\n{text}"
)
_POST_PROMPT = (
    "Write a {style} {platform} post based on this insight. "
    "Respond with JSON: {{\"content\": str, \"hashtags\": [str]}}.\n\nInsight:\n{text}"
)
_CLEAN_PROMPT = (
    "Clean this transcript: remove filler words, timestamps and speaker labels, fix punctuation, "
    "keep the meaning and wording otherwise intact. Separate paragraphs with blank lines. "
    "Return only the cleaned text.\n\n{text}"
)


def _clamp_score(value) -> int:
    try:
        return max(0, min(int(value), MAX_SUB_SCORE))
    except (TypeError, ValueError):
        return 0


class OpenAIContentGenerator(ContentGenerator):
    """Chat-completions client for any OpenAI compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.api_key = api_key or settings.llm_api_key
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.llm_timeout_sec
        self._transport = transport

    async def _complete(self, prompt: str, *, json_mode: bool) -> str:
        if not self.api_key:
            raise ExternalFailure("LLM API key is not configured", retryable=False)

        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.4,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=body,
                )
        except httpx.HTTPError as exc:
            raise ExternalFailure(f"LLM request failed: {type(exc).__name__}: {exc}") from exc

        if resp.status_code != 200:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise ExternalFailure(f"LLM returned {resp.status_code}: {resp.text[:300]}", retryable=retryable)

        try:
            return resp.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, ValueError) as exc:
            raise ExternalFailure(f"Unexpected LLM response shape: {exc}") from exc

    async def _complete_json(self, prompt: str) -> dict:
        raw = await self._complete(prompt, json_mode=True)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ExternalFailure(f"LLM returned invalid JSON: {exc}") from exc

    async def clean_transcript(self, raw: str) -> str:
        cleaned = (await self._complete(_CLEAN_PROMPT.format(text=raw), json_mode=False)).strip()
        if not cleaned:
            raise ExternalFailure("LLM returned an empty transcript")
        return cleaned

    async def extract_insights(self, cleaned: str, max_count: int) -> list[InsightDraft]:
        data = await self._complete_json(
            _EXTRACT_PROMPT.format(max_count=max_count, max_score=MAX_SUB_SCORE, text=cleaned)
        )
        drafts = []
        for item in (data.get("insights") or [])[:max_count]:
            content = str(item.get("content") or "").strip()
            if not content:
                continue
            drafts.append(InsightDraft(
                title=str(item.get("title") or content[:80]).strip(),
                content=content,
                category=str(item.get("category") or "general"),
                urgency=_clamp_score(item.get("urgency")),
                relatability=_clamp_score(item.get("relatability")),
                specificity=_clamp_score(item.get("specificity")),
                authority=_clamp_score(item.get("authority")),
            ))
        logger.info("[llm] Extracted %d insights with %s", len(drafts), self.model)
        return drafts

    async def generate_post(self, insight_content: str, platform: Platform, style: str) -> GeneratedPost:
        data = await self._complete_json(
            _POST_PROMPT.format(style=style, platform=platform.value, text=insight_content)
        )
        content = str(data.get("content") or "").strip()
        if not content:
            raise ExternalFailure("LLM returned an empty post")
        hashtags = tuple(str(h).lstrip("#") for h in (data.get("hashtags") or []) if str(h).strip())
        return GeneratedPost(content=content, hashtags=hashtags)


# Default provider: stub unless LLM_PROVIDER=openai
_provider: ContentGenerator | None = None


def get_content_generator() -> ContentGenerator:
    global _provider
    if _provider is None:
        if get_settings().llm_provider.lower() == "openai":
            _provider = OpenAIContentGenerator()
        else:
            _provider = StubContentGenerator()
    return _provider


def set_content_generator(provider: ContentGenerator) -> None:
    global _provider
    _provider = provider
