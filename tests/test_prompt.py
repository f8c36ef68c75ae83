from forge_agent.domain.models.artifacts import BudgetSummary, FullPromptData, RankAndBudgetPayload, SelectedCandidate
from forge_agent.domain.models.candidate import (
    ArtifactCandidate,
    BibleCandidate,
    LifeContextCandidate,
    MemoryCandidate,
    ReadingRef,
    ReadingSessionCandidate,
)
from forge_agent.domain.models.plan import Plan, ResponseMode, ResponsePlan, RetrievalPlan
from forge_agent.domain.models.run_context import (
    AIContext,
    ConversationMessage,
    EntityRef,
    LifeContext,
    UserContext,
    UserProfile,
)
from forge_agent.domain.prompt.prompt_assembler import (
    PromptAssembler,
    format_artifact_for_prompt,
    format_reading_session_for_prompt,
    short_date,
    truncate,
)
from forge_agent.domain.prompt.templates import NO_TOOLS_INSTRUCTION, PROMPT_VERSION, TOOLS_INSTRUCTION


def selection(candidates=(), mode=ResponseMode.EXPLAIN, used=0):
    return RankAndBudgetPayload(
        plan=Plan(response=ResponsePlan(response_mode=mode), retrieval=RetrievalPlan()),
        selected=[
            SelectedCandidate(id=c.id, candidate=c, final_score=1.0, token_estimate=5, reason=c.source)
            for c in candidates
        ],
        budget=BudgetSummary(max=2000, used=used),
    )


def note(id="artifact:note", summary=None, preview="private words"):
    return ArtifactCandidate(
        id=id,
        label="Note",
        preview=preview,
        artifact_type="verse_note",
        scripture_refs=["Romans 8:28"],
        created_at="2024-12-25T10:00:00+00:00",
        full_content="the full private note text",
        note_summary=summary,
    )


class TestFormatting:

    def test_truncate_and_short_date(self):
        assert truncate("abcdefghij", 6) == "abc..."
        assert truncate("abc", 6) == "abc"
        assert short_date("2024-12-25T10:00:00+00:00") == "Dec 25"
        assert short_date(None) == "—"

    def test_note_renders_summary_not_content(self):
        line = format_artifact_for_prompt(note(summary="Trusting God in hardship"), include_content=False)

        assert line == "[Note - Dec 25] (Romans 8:28) — Trusting God in hardship"
        assert "full private note" not in line

    def test_note_without_summary_falls_back_to_preview(self):
        line = format_artifact_for_prompt(note(), include_content=False)
        assert line.endswith("— private words")

    def test_long_content_is_cut(self):
        journal = ArtifactCandidate(
            id="artifact:j", label="Journal", preview="p", artifact_type="journal_entry",
            title="Morning", full_content="x" * 300,
        )
        line = format_artifact_for_prompt(journal)

        assert line.startswith("[Journal: Morning - —]")
        assert line.endswith('x..."')

    def test_reading_session_line(self):
        session = ReadingSessionCandidate(
            id="reading:1",
            label="Reading",
            preview="Read John 3",
            translation="ESV",
            start_ref=ReadingRef(book_id="JHN", book="John", chapter=3, verse=1),
            end_ref=ReadingRef(book_id="JHN", book="John", chapter=3, verse=21),
            duration_seconds=125,
            completion_status={"status": "completed", "verses_visible_count": 21},
            local_date="2024-12-25",
            ended_at="2024-12-25T08:00:00+00:00",
        )

        assert format_reading_session_for_prompt(session) == (
            "[Reading - Dec 25] (John 3:1-21) — ESV · 2m 5s · completed · 21 verses"
        )


class TestPromptAssembler:

    def test_tools_instruction_follows_setting(self, make_ctx):
        ctx = make_ctx()
        without = PromptAssembler().build_system_prompt(ctx, selection())
        with_tools = PromptAssembler(tools_enabled=True).build_system_prompt(ctx, selection())

        assert NO_TOOLS_INSTRUCTION in without
        assert TOOLS_INSTRUCTION in with_tools
        assert NO_TOOLS_INSTRUCTION not in with_tools

    def test_response_mode_section(self, make_ctx):
        prompt = PromptAssembler().build_system_prompt(make_ctx(), selection(mode=ResponseMode.PASTORAL))
        assert "RESPONSE MODE: PASTORAL" in prompt

    def test_greeting_only_on_first_turn_with_name(self, make_ctx):
        ai_context = AIContext(user_context=UserContext(user_profile=UserProfile(first_name="Sam")))
        first = make_ctx(ai_context=ai_context)
        later = make_ctx(
            ai_context=ai_context,
            conversation_history=[ConversationMessage(role="user", content="hi")],
        )

        assert "OPTIONAL FIRST-TURN GREETING" in PromptAssembler().build_system_prompt(first, selection())
        assert "OPTIONAL FIRST-TURN GREETING" not in PromptAssembler().build_system_prompt(later, selection())

    def test_memories_take_precedence_over_life_context(self, make_ctx):
        memory = MemoryCandidate(
            id="memory:m1", label="Memory", preview="theme: work_anxiety",
            memory_id="m1", memory_type="struggle_theme", value={"theme": "work_anxiety"},
        )
        life = LifeContextCandidate(id="life:u:season", label="Season", preview="rebuilding", context_type="season", value="rebuilding")

        prompt = PromptAssembler().build_system_prompt(make_ctx(), selection([memory, life]))

        assert "USER CONTEXT (use with discernment" in prompt
        assert "wrestling with work_anxiety" in prompt
        assert "LIFE CONTEXT" not in prompt

    def test_life_context_from_user_context(self, make_ctx):
        ctx = make_ctx(ai_context=AIContext(user_context=UserContext(
            life_context=LifeContext(current_season="waiting", season_note="new job search"),
        )))

        prompt = PromptAssembler().build_system_prompt(ctx, selection())

        assert "[Internal: User is in a season of waiting]" in prompt
        assert 'They shared: "new job search"' in prompt

    def test_sections_in_order(self, make_ctx):
        summary = ArtifactCandidate(
            id="artifact:s", label="Session", preview="talked about Ruth",
            artifact_type="conversation_session_summary",
        )
        journal = ArtifactCandidate(id="artifact:j", label="Journal", preview="grateful today", artifact_type="journal_entry")
        verse = BibleCandidate(
            id="bible:John 3:16", label="John 3:16", preview="Reference: John 3:16",
            reference="John 3:16", full_text="For God so loved the world",
        )

        prompt = PromptAssembler().build_system_prompt(make_ctx(), selection([verse, journal, note(), summary]))

        order = [
            prompt.index("SESSION SUMMARIES"),
            prompt.index("VERSE NOTES"),
            prompt.index("OTHER PAST CONTEXT"),
            prompt.index("SCRIPTURE CONTEXT"),
        ]
        assert order == sorted(order)
        assert '"For God so loved the world"' in prompt

    def test_current_passage_fallback(self, make_ctx):
        ctx = make_ctx(entity_refs=[EntityRef(type="verse", reference="Psalms 23:1", text="The Lord is my shepherd")])

        prompt = PromptAssembler().build_system_prompt(ctx, selection())

        assert 'Current passage: Psalms 23:1\n"The Lord is my shepherd"' in prompt

    def test_chat_start_uses_greeting_context(self, make_ctx):
        ctx = make_ctx(entrypoint="chat_start", initial_context="Good morning")

        prompt = PromptAssembler().build_system_prompt(ctx, selection())

        assert "GREETING CONTEXT:\nGood morning" in prompt
        assert "RESPONSE MODE" not in prompt

    def test_assemble_output(self, make_ctx):
        ctx = make_ctx(
            "Tell me more",
            conversation_history=[
                ConversationMessage(role="user", content="Who was Ruth?"),
                ConversationMessage(role="assistant", content="A Moabite woman."),
            ],
        )

        output = PromptAssembler(model="chat-model").assemble(ctx, selection(used=40))
        payload = output.payload

        assert isinstance(output.raw_content, FullPromptData)
        assert [m.role for m in output.raw_content.messages] == ["system", "user", "assistant", "user"]
        assert payload.model_request_redacted.messages_count == 4
        assert payload.model_request_redacted.model == "chat-model"
        assert payload.prompt_version == PROMPT_VERSION
        assert payload.token_breakdown.context == 40
        assert output.summary.startswith("4 messages, ~")
