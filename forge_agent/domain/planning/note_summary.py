"""Safe, non-verbatim summaries of private verse notes."""
from typing import List, Optional
import json
import structlog
from pydantic import BaseModel, Field

from forge_agent.domain.errors import ModelProviderError
from forge_agent.domain.redaction import strip_pii
from forge_agent.infrastructure.llm.completion_client import CompletionClient


logger = structlog.get_logger(__name__)

FALLBACK_SUMMARY = "Personal note on this verse"
MAX_NOTE_INPUT_LENGTH = 1200
MAX_TAGS = 5

NOTE_SUMMARY_SYSTEM_PROMPT = (
    "You are summarizing a private Bible note. Return a short, non-verbatim theme (<=30 words). "
    "Remove PII. Do NOT quote text. "
    'Output JSON: {"summary": "...", "tags": ["tag1","tag2"]?}'
)


class NoteSummary(BaseModel):
    summary: str
    tags: Optional[List[str]] = Field(None, description="At most 5 sanitized tags")


def _sanitize(text: str) -> str:
    return strip_pii(text).strip()


def fallback_summary(content: str) -> NoteSummary:
    cleaned = _sanitize(content)
    preview = f"{cleaned[:150]}..." if len(cleaned) > 150 else cleaned
    return NoteSummary(summary=preview or FALLBACK_SUMMARY)


async def summarize_note(
    content: str,
    client: Optional[CompletionClient],
    model: str = "gpt-5-nano",
) -> NoteSummary:
    """Summarize a note into a short theme; falls back to a sanitized preview, never raises"""
    cleaned = _sanitize(content or "")[:MAX_NOTE_INPUT_LENGTH]
    if not cleaned.strip():
        return NoteSummary(summary=FALLBACK_SUMMARY)
    if client is None:
        return fallback_summary(cleaned)

    try:
        data = await client.complete({
            "model": model,
            "messages": [
                {"role": "system", "content": NOTE_SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": f'Note: """{cleaned}"""'},
            ],
            "max_completion_tokens": 120,
            "temperature": 1,
            "reasoning_effort": "minimal",
            "response_format": {"type": "json_object"},
        })
    except ModelProviderError as e:
        logger.error("Note summary request failed", status_code=e.status_code, error=str(e)[:500])
        return fallback_summary(cleaned)

    choice = (data.get("choices") or [{}])[0]
    raw = (choice.get("message") or {}).get("content")
    if not raw or not str(raw).strip():
        logger.warning(
            "Empty note summary response, using fallback",
            input_length=len(cleaned),
            finish_reason=choice.get("finish_reason"),
        )
        return fallback_summary(cleaned)

    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning("Unparsable note summary response", error=str(e))
        return fallback_summary(cleaned)

    summary = parsed.get("summary") if isinstance(parsed, dict) else None
    if not isinstance(summary, str) or not summary.strip():
        logger.warning("Missing summary in response, using fallback")
        return fallback_summary(cleaned)

    tags = parsed.get("tags")
    clean_tags = None
    if isinstance(tags, list):
        clean_tags = [t for t in (_sanitize(str(tag)) for tag in tags[:MAX_TAGS]) if t]

    return NoteSummary(summary=_sanitize(summary), tags=clean_tags)
