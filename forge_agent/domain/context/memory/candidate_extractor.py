from typing import Any, Dict, List, Literal, Optional
import json
import structlog
from pydantic import BaseModel, Field

from forge_agent.domain.context.memory.vocabularies import (
    FAITH_STAGES,
    MAX_CANDIDATES_PER_TURN,
    MIN_EXTRACTION_CONFIDENCE,
    STRUGGLE_THEMES,
    is_valid_faith_stage,
    is_valid_struggle_theme,
)
from forge_agent.infrastructure.llm.completion_client import CompletionClient

logger = structlog.get_logger(__name__)


EXTRACTION_SYSTEM_PROMPT = f"""You are analyzing a Bible study conversation to identify stable or recurring user characteristics.

## Your Task
Analyze the USER's message (not the assistant's response) to identify potential durable facts about them.

## IMPORTANT RULES
1. Only output values from the CLOSED LISTS below. Do NOT invent new values.
2. Only extract if there's CLEAR EVIDENCE in what the USER said.
3. Look for explicit statements ("I'm struggling with...", "I've been feeling...", "I always...")
4. Do NOT infer from the Bible passage being discussed - only from what the USER reveals about themselves.
5. Maximum {MAX_CANDIDATES_PER_TURN} candidates per extraction.
6. If nothing qualifies, return empty candidates array.

## Confidence Guidelines
- 0.8-1.0: Explicit identity statement ("I struggle with fear of failure", "I'm in a season of rebuilding")
- 0.7-0.8: Strong implication with recurring language ("again", "always", "I keep...")
- Below 0.7: Do not include (too weak)

## CLOSED VOCABULARY - STRUGGLE THEMES
{chr(10).join(f"- {t}" for t in STRUGGLE_THEMES)}

## CLOSED VOCABULARY - FAITH STAGES
{chr(10).join(f"- {s}" for s in FAITH_STAGES)}

## Output Format (JSON only)
{{
  "candidates": [
    {{
      "type": "struggle_theme" | "faith_stage",
      "value": "<value from closed list above>",
      "confidence": 0.7-1.0,
      "evidence": "<direct quote or paraphrase from user message>"
    }}
  ]
}}

If no candidates meet the criteria, output:
{{ "candidates": [] }}"""


class ExtractedMemoryCandidate(BaseModel):
    """Candidate durable fact, ephemeral until the signal evaluator promotes it"""
    type: Literal["struggle_theme", "faith_stage"]
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = ""


def build_extraction_prompt(message: str, conversation_summary: Optional[str] = None) -> str:
    parts = [f'## User Message\n"{message}"']
    if conversation_summary:
        parts.append(f"\n## Conversation Context\n{conversation_summary}")
    parts.append("\n## Task\nExtract memory candidates from the user message:")
    return "\n".join(parts)


def validate_candidates(raw_candidates: List[Dict[str, Any]]) -> List[ExtractedMemoryCandidate]:
    """Keep confident, in-vocabulary candidates, at most two"""
    validated = []
    for raw in raw_candidates:
        if not isinstance(raw, dict):
            continue
        confidence = raw.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            continue
        if confidence < MIN_EXTRACTION_CONFIDENCE or confidence > 1:
            continue

        kind, value = raw.get("type"), str(raw.get("value", ""))
        if kind == "struggle_theme" and not is_valid_struggle_theme(value):
            logger.warning("Invalid struggle theme", value=value)
            continue
        if kind == "faith_stage" and not is_valid_faith_stage(value):
            logger.warning("Invalid faith stage", value=value)
            continue
        if kind not in ("struggle_theme", "faith_stage"):
            logger.warning("Unknown candidate type", candidate_type=kind)
            continue

        validated.append(ExtractedMemoryCandidate(
            type=kind,
            value=value,
            confidence=float(confidence),
            evidence=str(raw.get("evidence") or ""),
        ))

    return validated[:MAX_CANDIDATES_PER_TURN]


class CandidateExtractor:
    """Extracts memory candidates from a conversation turn with a small model"""

    def __init__(
        self,
        completion_client: CompletionClient,
        model: str = "gpt-5-nano",
        timeout_seconds: Optional[float] = 30.0,
    ):
        self.completion_client = completion_client
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def extract(
        self,
        message: str,
        conversation_summary: Optional[str] = None,
    ) -> List[ExtractedMemoryCandidate]:
        """Provider errors propagate; an empty or unusable response yields no candidates"""
        data = await self.completion_client.complete(
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": build_extraction_prompt(message, conversation_summary)},
                ],
                "max_completion_tokens": 300,
                "reasoning_effort": "minimal",
                "response_format": {"type": "json_object"},
            },
            timeout=self.timeout_seconds,
        )

        content = ((data.get("choices") or [{}])[0].get("message") or {}).get("content")
        if not content:
            logger.warning("No content in extraction response")
            return []

        try:
            parsed = json.loads(content)
        except ValueError as e:
            logger.warning("Unparsable extraction response", error=str(e))
            return []

        raw_candidates = parsed.get("candidates") if isinstance(parsed, dict) else None
        return validate_candidates(raw_candidates if isinstance(raw_candidates, list) else [])
