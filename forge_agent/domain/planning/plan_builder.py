"""Unified planner: rules tier, then LLM tier, then a safe hard fallback.

Tiers are an ordered list of (name, attempt) callables. Each returns a Plan
or None; the first non-None result wins. `build_plan` never raises.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import json
import math
import re
import structlog
from pydantic import BaseModel, Field

from forge_agent.domain.models.plan import (
    ARTIFACT_TYPES,
    Plan,
    ResponseFlags,
    ResponseMode,
    ResponsePlan,
    RetrievalFilters,
    RetrievalNeed,
    RetrievalPlan,
    SafetyFlags,
    ScriptureScope,
    TemporalDirection,
    TemporalFilter,
    TemporalRange,
)
from forge_agent.domain.models.run_context import ConversationMessage
from forge_agent.domain.planning import detectors
from forge_agent.infrastructure.llm.completion_client import CompletionClient


logger = structlog.get_logger(__name__)

DEFAULT_LIMITS: Dict[RetrievalNeed, int] = {
    RetrievalNeed.USER_MEMORY: 10,
    RetrievalNeed.VERSE_HIGHLIGHTS: 20,
    RetrievalNeed.VERSE_NOTES: 20,
    RetrievalNeed.ARTIFACT_SEMANTIC: 10,
    RetrievalNeed.CONVERSATION_SESSION_SUMMARIES: 5,
    RetrievalNeed.BIBLE_READING_SESSIONS: 10,
}

CANONICAL_BOOK_ID = re.compile(r"^[A-Z0-9]{3}$")

PLANNER_SYSTEM_PROMPT = (
    "You are a planning module for a Bible study app.\n\n"
    "Return JSON only. Produce a Plan with:\n"
    "- response: { responseMode, lengthTarget, safetyFlags, flags, signals, source, confidence }\n"
    "- retrieval: { needs, filters, query, artifactTypes, limits }\n\n"
    f"Allowed responseMode: {', '.join(m.value for m in ResponseMode)}\n"
    f"Allowed retrieval.needs: {', '.join(n.value for n in RetrievalNeed)}\n"
    "Temporal ranges: last_day,last_week,last_month,last_3_months,last_year,this_year,all_time\n"
    'Scope: { kind: "book"|"chapter", bookId: string, chapter?: number }\n\n'
    "Use these rules:\n"
    "- For questions about what/where the user has been reading recently (e.g. \"Where have I been "
    "reading in the Bible recently?\"), include retrieval.needs: [bible_reading_sessions]. Prefer this "
    "over artifact_semantic.\n"
    "- For \"resume/continue reading\" in the Bible, include bible_reading_sessions (and set "
    "filters.temporal/scope when implied).\n"
    "- For topical queries like \"reflections about marriage\", include artifact_semantic and "
    f"artifactTypes should include: {', '.join(ARTIFACT_TYPES)}.\n"
    "- For conversation resume queries, include conversation_session_summaries.\n"
    "- For learnings summaries scoped to a book/chapter, include verse_highlights and verse_notes "
    "and set filters.scope.\n\n"
    "Do not include any keys beyond the schema.\n"
)


class PlanInput(BaseModel):
    message: str
    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    is_first_message: bool = True


PlanTier = Callable[[PlanInput], Awaitable[Optional[Plan]]]


# ----------------------------------------------------------------------------
# Tier 1: rules

def build_plan_rules(plan_input: PlanInput) -> Optional[Plan]:
    message = plan_input.message.strip()
    if not message:
        return None

    temporal = detectors.detect_temporal_filter(message)
    scope = detectors.detect_scripture_scope(message)

    has_history = len(plan_input.conversation_history) >= 1 and not plan_input.is_first_message
    resume_phrase = detectors.is_resume_phrase(message)
    reading_resume = detectors.is_bible_reading_resume_query(message, scope)
    conversation_resume = (
        resume_phrase
        and not plan_input.is_first_message
        and not reading_resume
        and (has_history or detectors.mentions_conversation(message))
    )
    reading_history = detectors.is_reading_history_query(message)
    highlights = detectors.is_highlights_query(message)
    notes = detectors.is_notes_query(message)
    learnings = detectors.is_learnings_summary(message)
    reflections = detectors.is_topic_reflections(message)
    self_disclosure = detectors.detect_self_disclosure(message)

    needs: List[RetrievalNeed] = []
    if conversation_resume:
        needs.append(RetrievalNeed.CONVERSATION_SESSION_SUMMARIES)
    if reading_resume or reading_history:
        needs.append(RetrievalNeed.BIBLE_READING_SESSIONS)
    if highlights:
        needs.append(RetrievalNeed.VERSE_HIGHLIGHTS)
    if notes:
        needs.append(RetrievalNeed.VERSE_NOTES)
    if learnings:
        needs.extend([RetrievalNeed.VERSE_HIGHLIGHTS, RetrievalNeed.VERSE_NOTES, RetrievalNeed.ARTIFACT_SEMANTIC])
    if reflections:
        needs.append(RetrievalNeed.ARTIFACT_SEMANTIC)
    if self_disclosure or detectors.mentions_distress(message):
        needs.append(RetrievalNeed.USER_MEMORY)

    if not needs:
        return None

    signal_flags = [
        (conversation_resume, "conversation_resume_detected"),
        (reading_resume, "bible_reading_resume_detected"),
        (reading_history, "reading_history_query"),
        (highlights, "highlights_query"),
        (notes, "notes_query"),
        (learnings, "learning_summary_query"),
        (reflections, "topic_reflections_query"),
    ]

    return Plan(
        response=ResponsePlan(
            response_mode=detectors.detect_response_mode(message),
            length_target="medium" if learnings else "short",
            safety_flags=detectors.detect_safety_flags(message),
            flags=ResponseFlags(
                self_disclosure=self_disclosure,
                situational=detectors.detect_situational(message),
            ),
            signals=[signal for matched, signal in signal_flags if matched],
            source="rules",
            confidence=0.75,
        ),
        retrieval=RetrievalPlan(
            needs=list(dict.fromkeys(needs)),
            filters=RetrievalFilters(temporal=temporal, scope=scope),
            query=message.lower(),
            artifact_types=list(ARTIFACT_TYPES),
            limits=dict(DEFAULT_LIMITS),
        ),
    )


# ----------------------------------------------------------------------------
# Tier 2: LLM

def sanitize_scripture_scope(raw: Any) -> Optional[ScriptureScope]:
    """Validate an untrusted scope; anything malformed becomes None"""
    if not isinstance(raw, dict):
        return None

    kind = raw.get("kind")
    book_id = raw.get("bookId", raw.get("book_id"))
    book_name = raw.get("bookName", raw.get("book_name"))
    chapter = raw.get("chapter")

    if kind not in ("book", "chapter"):
        return None
    if not isinstance(book_id, str) or not book_id.strip():
        return None
    cleaned_name = book_name.strip() if isinstance(book_name, str) and book_name.strip() else None

    if kind == "book":
        return ScriptureScope(kind="book", book_id=book_id.strip(), book_name=cleaned_name)

    if isinstance(chapter, bool) or not isinstance(chapter, (int, float)):
        return None
    if not math.isfinite(chapter) or chapter <= 0:
        return None
    return ScriptureScope(kind="chapter", book_id=book_id.strip(), book_name=cleaned_name, chapter=int(chapter))


def _sanitize_temporal(raw: Any) -> Optional[TemporalFilter]:
    if not isinstance(raw, dict):
        return None
    values = {item.value for item in TemporalRange}
    directions = {item.value for item in TemporalDirection}
    temporal_range = raw.get("range") if raw.get("range") in values else None
    direction = raw.get("direction") if raw.get("direction") in directions else None
    if temporal_range is None and direction is None:
        return None
    return TemporalFilter(range=temporal_range, direction=direction)


def _sanitize_limits(raw: Any) -> Dict[RetrievalNeed, int]:
    if not isinstance(raw, dict):
        return {}
    known = {need.value for need in RetrievalNeed}
    limits = {}
    for key, value in raw.items():
        if key in known and isinstance(value, int) and not isinstance(value, bool) and value > 0:
            limits[RetrievalNeed(key)] = value
    return limits


def normalize_llm_plan(raw: Dict[str, Any], message: str) -> Optional[Plan]:
    """Turn raw LLM JSON into a Plan, patching known gaps from the rule detectors"""
    response = raw.get("response")
    retrieval = raw.get("retrieval")
    if not isinstance(response, dict) or not isinstance(retrieval, dict):
        return None

    mode = response.get("responseMode")
    if mode not in {m.value for m in ResponseMode}:
        return None
    raw_needs = retrieval.get("needs")
    if not isinstance(raw_needs, list):
        return None

    detected_scope = detectors.detect_scripture_scope(message)
    detected_temporal = detectors.detect_temporal_filter(message)
    reading_history = detectors.is_reading_history_query(message)
    reading_resume = detectors.is_bible_reading_resume_query(message, detected_scope)

    raw_filters = retrieval.get("filters") if isinstance(retrieval.get("filters"), dict) else {}
    llm_scope = sanitize_scripture_scope(raw_filters.get("scope"))
    has_canonical_id = bool(llm_scope and CANONICAL_BOOK_ID.match(llm_scope.book_id))
    scope = detected_scope if detected_scope and not has_canonical_id else llm_scope

    known_needs = {need.value for need in RetrievalNeed}
    needs = list(dict.fromkeys(RetrievalNeed(n) for n in raw_needs if n in known_needs))

    if reading_history or reading_resume:
        if RetrievalNeed.BIBLE_READING_SESSIONS not in needs:
            needs.append(RetrievalNeed.BIBLE_READING_SESSIONS)
        drop_semantic = reading_history and not (
            detectors.is_learnings_summary(message)
            or detectors.is_topic_reflections(message)
            or detectors.is_highlights_query(message)
            or detectors.is_notes_query(message)
        )
        if drop_semantic and RetrievalNeed.ARTIFACT_SEMANTIC in needs:
            needs.remove(RetrievalNeed.ARTIFACT_SEMANTIC)

    raw_types = retrieval.get("artifactTypes")
    artifact_types = [t for t in raw_types if t in ARTIFACT_TYPES] if isinstance(raw_types, list) else None

    limits = _sanitize_limits(retrieval.get("limits"))
    if RetrievalNeed.BIBLE_READING_SESSIONS in needs and RetrievalNeed.BIBLE_READING_SESSIONS not in limits:
        limits[RetrievalNeed.BIBLE_READING_SESSIONS] = 10

    raw_safety = response.get("safetyFlags") if isinstance(response.get("safetyFlags"), dict) else {}
    rule_safety = detectors.detect_safety_flags(message)
    raw_flags = response.get("flags") if isinstance(response.get("flags"), dict) else {}

    confidence = response.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    signals = response.get("signals")

    return Plan(
        response=ResponsePlan(
            response_mode=ResponseMode(mode),
            length_target=response.get("lengthTarget") if response.get("lengthTarget") in ("short", "medium") else "short",
            safety_flags=SafetyFlags(
                self_harm=bool(raw_safety.get("selfHarm")) or rule_safety.self_harm,
                violence=bool(raw_safety.get("violence")) or rule_safety.violence,
            ),
            flags=ResponseFlags(
                self_disclosure=bool(raw_flags.get("selfDisclosure")),
                situational=bool(raw_flags.get("situational")),
            ),
            signals=[str(s) for s in signals] if isinstance(signals, list) else [],
            source="llm",
            confidence=min(1.0, max(0.0, float(confidence))),
        ),
        retrieval=RetrievalPlan(
            needs=needs,
            filters=RetrievalFilters(
                temporal=detected_temporal or _sanitize_temporal(raw_filters.get("temporal")),
                scope=scope,
            ),
            query=message.lower(),
            artifact_types=artifact_types,
            limits=limits,
        ),
    )


# ----------------------------------------------------------------------------
# Tier 3: hard fallback

def build_hard_fallback_plan(message: str) -> Plan:
    return Plan(
        response=ResponsePlan(
            response_mode=ResponseMode.EXPLAIN,
            length_target="short",
            safety_flags=detectors.detect_safety_flags(message),
            flags=ResponseFlags(
                self_disclosure=detectors.detect_self_disclosure(message),
                situational=detectors.detect_situational(message),
            ),
            signals=["hard_fallback"],
            source="rules",
            confidence=0.3,
        ),
        retrieval=RetrievalPlan(
            needs=[],
            filters=RetrievalFilters(
                temporal=detectors.detect_temporal_filter(message),
                scope=detectors.detect_scripture_scope(message),
            ),
            query=message,
            artifact_types=list(ARTIFACT_TYPES),
            limits={},
        ),
    )


class PlanBuilder:
    """Runs the planning cascade"""

    def __init__(
        self,
        completion_client: Optional[CompletionClient] = None,
        model: str = "gpt-5-nano",
        timeout_seconds: Optional[float] = None,
    ):
        self.completion_client = completion_client
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.tiers: List[Tuple[str, PlanTier]] = [
            ("rules", self._rules_tier),
            ("llm", self._llm_tier),
        ]

    async def build_plan(self, plan_input: PlanInput) -> Plan:
        for name, attempt in self.tiers:
            try:
                plan = await attempt(plan_input)
            except Exception as e:
                logger.warning("Plan tier failed", tier=name, error=str(e))
                plan = None
            if plan is not None:
                logger.debug(
                    "Plan built",
                    tier=name,
                    response_mode=plan.response.response_mode.value,
                    needs=[n.value for n in plan.retrieval.needs],
                )
                return plan

        logger.info("Using hard fallback plan")
        return build_hard_fallback_plan(plan_input.message)

    async def _rules_tier(self, plan_input: PlanInput) -> Optional[Plan]:
        return build_plan_rules(plan_input)

    async def _llm_tier(self, plan_input: PlanInput) -> Optional[Plan]:
        if self.completion_client is None or not plan_input.message.strip():
            return None

        user = (
            f"Message:\n{plan_input.message}\n\n"
            f"ConversationHistoryLength: {len(plan_input.conversation_history)}\n"
            f"IsFirstMessage: {'true' if plan_input.is_first_message else 'false'}\n"
        )
        data = await self.completion_client.complete(
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
                    {"role": "user", "content": user},
                ],
                "max_completion_tokens": 450,
                "reasoning_effort": "minimal",
                "response_format": {"type": "json_object"},
            },
            timeout=self.timeout_seconds,
        )

        content = (data.get("choices") or [{}])[0].get("message", {}).get("content")
        if not content:
            return None
        raw = json.loads(content)
        if not isinstance(raw, dict):
            return None
        return normalize_llm_plan(raw, plan_input.message)


def build_chat_start_plan() -> Plan:
    """Deterministic plan for session start: recent context bundle, no intent detection"""
    return Plan(
        response=ResponsePlan(
            response_mode=ResponseMode.COACH,
            length_target="short",
            signals=["chat_start_forced_plan"],
            source="rules",
            confidence=0.99,
        ),
        retrieval=RetrievalPlan(
            needs=[
                RetrievalNeed.BIBLE_READING_SESSIONS,
                RetrievalNeed.VERSE_NOTES,
                RetrievalNeed.VERSE_HIGHLIGHTS,
                RetrievalNeed.CONVERSATION_SESSION_SUMMARIES,
                RetrievalNeed.ARTIFACT_SEMANTIC,
                RetrievalNeed.USER_MEMORY,
            ],
            filters=RetrievalFilters(temporal=TemporalFilter(range=TemporalRange.LAST_MONTH)),
            limits=dict(DEFAULT_LIMITS),
        ),
    )
