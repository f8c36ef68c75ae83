from typing import Any, Dict, List, Optional
from datetime import datetime
import structlog

from forge_agent.domain.context.context_ranker import estimate_tokens
from forge_agent.domain.models.artifacts import (
    ChatMessage,
    FullPromptData,
    MessagePreview,
    ModelRequestRedacted,
    PromptAssemblyPayload,
    RankAndBudgetPayload,
    StageOutput,
    TokenBreakdown,
)
from forge_agent.domain.models.candidate import (
    ArtifactCandidate,
    BibleCandidate,
    LifeContextCandidate,
    MemoryCandidate,
    ReadingSessionCandidate,
)
from forge_agent.domain.models.run_context import LifeContext, RunContext, WeeklyIntention
from forge_agent.domain.prompt.templates import (
    BASE_SYSTEM_PROMPT,
    CHAT_START_SYSTEM_PROMPT,
    NO_TOOLS_INSTRUCTION,
    PROMPT_VERSION,
    TOOLS_INSTRUCTION,
    build_first_turn_greeting_instruction,
    get_response_mode_instruction,
)

logger = structlog.get_logger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 500
MAX_ARTIFACT_CONTENT_LENGTH = 200
MAX_MESSAGE_PREVIEW_LENGTH = 200

PROMPT_TYPE_LABELS = {
    "conversation_session_summary": "Session",
    "journal_entry": "Journal",
    "prayer_request": "Prayer",
    "prayer_update": "Prayer Update",
    "testimony": "Testimony",
    "verse_highlight": "Highlight",
    "verse_note": "Note",
    "group_meeting_notes": "Meeting Notes",
    "bible_reading_session": "Reading",
}

# Artifact sections in prompt order: (artifact types or None for the rest, header, include content)
ARTIFACT_SECTIONS = (
    (("conversation_session_summary",), "SESSION SUMMARIES (recent conversation context):", True),
    (("verse_highlight",), "HIGHLIGHTS (verses you highlighted):", False),
    (("verse_note",), "VERSE NOTES (your notes on verses):", False),
    (None, "OTHER PAST CONTEXT (your prior artifacts, use with discernment):", True),
)


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def short_date(iso: Optional[str]) -> str:
    """ISO timestamp -> 'Dec 25'"""
    if not iso:
        return "—"
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return "—"
    return f"{parsed:%b} {parsed.day}"


def format_memory_for_prompt(memory_type: str, value: Dict[str, Any], preview: str) -> str:
    if memory_type == "struggle_theme":
        return f"[Internal: User has expressed wrestling with {value.get('theme') or preview}]"
    if memory_type == "faith_stage":
        return f"[Internal: User appears to be in a {value.get('stage') or preview} stage of faith]"
    if memory_type == "scripture_affinity":
        return f"[Internal: User has shown interest in {value.get('book') or value.get('theme') or preview}]"
    if memory_type == "tone_preference":
        return f"[Internal: User prefers {value.get('tone') or preview} style responses]"
    return f"[Internal: {preview}]"


def format_artifact_for_prompt(candidate: ArtifactCandidate, include_content: bool = True) -> str:
    """[Journal: Title - Dec 25] (Romans 8:1) "Content preview..."

    Highlights and notes are rendered without content; notes carry their
    theme summary instead, falling back to the redacted preview.
    """
    type_label = PROMPT_TYPE_LABELS.get(candidate.artifact_type, "Note")
    title = f": {candidate.title}" if candidate.title else ""
    label = f"[{type_label}{title} - {short_date(candidate.created_at)}]"
    scripture = f" ({', '.join(candidate.scripture_refs)})" if candidate.scripture_refs else ""

    if not include_content:
        note_summary = candidate.note_summary
        if candidate.artifact_type == "verse_note":
            note_summary = note_summary or candidate.preview
        if note_summary:
            return f"{label}{scripture} — {note_summary}"
        return f"{label}{scripture}"

    content = (candidate.full_content or candidate.preview).strip()
    if not content:
        return f"{label}{scripture}"
    if len(content) > MAX_ARTIFACT_CONTENT_LENGTH:
        content = content[:MAX_ARTIFACT_CONTENT_LENGTH] + "..."
    return f'{label}{scripture} "{content}"'


def format_reading_session_for_prompt(candidate: ReadingSessionCandidate) -> str:
    label = f"[Reading - {short_date(candidate.ended_at)}]"

    start, end = candidate.start_ref, candidate.end_ref
    reference = None
    if end.verse is not None:
        if start.verse is None:
            reference = f"{start.book} {start.chapter}:{end.verse}"
        elif start.verse == end.verse:
            reference = f"{start.book} {start.chapter}:{start.verse}"
        else:
            reference = f"{start.book} {start.chapter}:{start.verse}-{end.verse}"

    bits = []
    if candidate.translation:
        bits.append(candidate.translation)
    duration = candidate.duration_seconds
    if duration is not None and duration >= 0:
        mins, secs = int(duration // 60), int(duration % 60)
        if mins <= 0:
            bits.append(f"{secs}s")
        else:
            bits.append(f"{mins}m {secs}s" if secs > 0 else f"{mins}m")
    status = (candidate.completion_status or {}).get("status")
    if status:
        bits.append(str(status))
    verses_visible = (candidate.completion_status or {}).get("verses_visible_count")
    if isinstance(verses_visible, int):
        bits.append(f"{verses_visible} verses")

    text = label
    if reference:
        text += f" ({reference})"
    if bits:
        text += " — " + " · ".join(bits)
    if not reference and not bits and candidate.preview:
        text += f"\n{candidate.preview}"
    return text


def resolve_life_context(ctx: RunContext, selected: List[LifeContextCandidate]) -> Optional[LifeContext]:
    """Life context from the selected items, else from the caller's user context"""
    by_type = {c.context_type: c.value for c in selected}
    if by_type:
        intention = None
        if "carrying" in by_type or "hoping" in by_type:
            intention = WeeklyIntention(carrying=by_type.get("carrying"), hoping=by_type.get("hoping"))
        return LifeContext(current_season=by_type.get("season"), weekly_intention=intention)

    user_context = ctx.user_context
    return user_context.life_context if user_context else None


def _life_context_section(life: LifeContext) -> Optional[str]:
    lines = ["LIFE CONTEXT (use with discernment, do not mention explicitly):"]
    if life.current_season:
        lines.append(f"[Internal: User is in a season of {life.current_season}]")
    if life.season_note:
        lines.append(f'[Internal: They shared: "{life.season_note}"]')
    intention = life.weekly_intention
    if intention and intention.carrying:
        lines.append(f'[Internal: This week user is carrying: "{intention.carrying}"]')
    if intention and intention.hoping:
        lines.append(f'[Internal: This week user is hoping for: "{intention.hoping}"]')
    if life.session_preference:
        lines.append(f"[Internal: User prefers {life.session_preference} responses this session]")
    return "\n".join(lines) if len(lines) > 1 else None


class PromptAssembler:
    """Turns the ranked selection into the chat model request"""

    def __init__(
        self,
        model: str = "gpt-5.1-chat-latest",
        tools_enabled: bool = False,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.model = model
        self.tools_enabled = tools_enabled
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_system_prompt(self, ctx: RunContext, selection: RankAndBudgetPayload) -> str:
        is_chat_start = ctx.entrypoint == "chat_start"
        parts = [CHAT_START_SYSTEM_PROMPT if is_chat_start else BASE_SYSTEM_PROMPT]

        if is_chat_start:
            if ctx.initial_context:
                parts.append(f"GREETING CONTEXT:\n{ctx.initial_context}")
        else:
            parts.append(TOOLS_INSTRUCTION if self.tools_enabled else NO_TOOLS_INSTRUCTION)
            parts.append(get_response_mode_instruction(selection.plan.response.response_mode))

            user_context = ctx.user_context
            first_name = user_context.user_profile.first_name if user_context else None
            greeting = build_first_turn_greeting_instruction(
                is_first_turn=not ctx.conversation_history,
                first_name=first_name.strip() if first_name and first_name.strip() else None,
            )
            if greeting:
                parts.append(greeting)

        candidates = [s.candidate for s in selection.selected]
        memories = [c for c in candidates if isinstance(c, MemoryCandidate)]
        bible = [c for c in candidates if isinstance(c, BibleCandidate)]
        life_items = [c for c in candidates if isinstance(c, LifeContextCandidate)]
        readings = [c for c in candidates if isinstance(c, ReadingSessionCandidate)]
        artifacts = [c for c in candidates if isinstance(c, ArtifactCandidate)]

        logger.debug(
            "Selected context for prompt",
            run_id=ctx.run_id,
            total=len(candidates),
            memories=len(memories),
            bible=len(bible),
            life_context=len(life_items),
            readings=len(readings),
            artifacts=len(artifacts),
        )

        # Durable memories take precedence over life context
        if memories:
            lines = ["USER CONTEXT (use with discernment, do not mention explicitly):"]
            lines.extend(format_memory_for_prompt(m.memory_type, m.value, m.preview) for m in memories)
            parts.append("\n".join(lines))
        else:
            life = resolve_life_context(ctx, life_items)
            if life and (life.current_season or life.weekly_intention):
                section = _life_context_section(life)
                if section:
                    parts.append(section)

        claimed = set()
        for types, header, include_content in ARTIFACT_SECTIONS:
            if types is None:
                items = [a for a in artifacts if a.artifact_type not in claimed]
            else:
                items = [a for a in artifacts if a.artifact_type in types]
                claimed.update(types)
            if items:
                lines = [header]
                lines.extend(format_artifact_for_prompt(a, include_content=include_content) for a in items)
                parts.append("\n".join(lines))

        if readings:
            lines = ["READING SESSIONS (recent standalone Bible reading):"]
            lines.extend(format_reading_session_for_prompt(r) for r in readings)
            parts.append("\n".join(lines))

        if bible:
            lines = ["SCRIPTURE CONTEXT:"]
            for b in bible:
                lines.append(f"\n{b.label}:")
                if b.full_text:
                    lines.append(f'"{b.full_text}"')
                elif b.preview and b.preview != f"Reference: {b.label}":
                    lines.append(f'"{b.preview}"')
            parts.append("\n".join(lines))
        elif ctx.entity_refs:
            entity = ctx.entity_refs[0]
            passage = f"Current passage: {entity.reference}"
            if entity.text:
                passage += f'\n"{entity.text}"'
            parts.append(passage)

        return "\n\n".join(parts)

    def build_messages(self, ctx: RunContext, system_prompt: str) -> List[ChatMessage]:
        messages = [ChatMessage(role="system", content=system_prompt)]
        messages.extend(ChatMessage(role=m.role, content=m.content) for m in ctx.conversation_history)
        messages.append(ChatMessage(role="user", content=ctx.message))
        return messages

    def assemble(self, ctx: RunContext, selection: RankAndBudgetPayload) -> StageOutput:
        """Redacted request preview for the trail plus the full prompt for the model call"""
        system_prompt = self.build_system_prompt(ctx, selection)
        messages = self.build_messages(ctx, system_prompt)

        system_tokens = estimate_tokens(system_prompt)
        history_tokens = estimate_tokens(" ".join(m.content for m in ctx.conversation_history))
        user_tokens = estimate_tokens(ctx.message)
        total_tokens = system_tokens + history_tokens + user_tokens

        payload = PromptAssemblyPayload(
            model_request_redacted=ModelRequestRedacted(
                model=self.model,
                messages_preview=[
                    MessagePreview(
                        role=m.role,
                        content_preview=truncate(m.content or "", MAX_MESSAGE_PREVIEW_LENGTH),
                        content_length=len(m.content or ""),
                    )
                    for m in messages
                ],
                messages_count=len(messages),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            token_breakdown=TokenBreakdown(
                system_prompt=system_tokens,
                context=selection.budget.used,
                conversation_history=history_tokens,
                user_message=user_tokens,
                total=total_tokens + selection.budget.used,
            ),
            prompt_version=PROMPT_VERSION,
        )

        return StageOutput(
            payload=payload,
            summary=f"{len(messages)} messages, ~{total_tokens} tokens",
            stats={
                "messages_count": len(messages),
                "system_prompt_tokens": system_tokens,
                "history_tokens": history_tokens,
                "user_tokens": user_tokens,
                "total_tokens": total_tokens,
            },
            raw_content=FullPromptData(system_prompt=system_prompt, messages=messages),
        )
