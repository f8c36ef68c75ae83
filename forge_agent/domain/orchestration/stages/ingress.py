from typing import List
import re
import structlog

from forge_agent.domain.models.artifacts import INGRESS_SCHEMA_VERSION, IngressPayload, StageOutput
from forge_agent.domain.models.run_context import EntityRef, PipelineStage, RunContext
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs
from forge_agent.domain.planning.bible_reference import parse_reference
from forge_agent.domain.planning.plan_builder import PlanBuilder, PlanInput, build_chat_start_plan

logger = structlog.get_logger(__name__)

VERSE_PATTERN = re.compile(r"\b(\d?\s*[A-Za-z]+)\s+(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?\b")
ZERO_WIDTH_PATTERN = re.compile("[\u200b-\u200d\ufeff]")


def normalize_message(message: str) -> str:
    """Trim, collapse whitespace, drop zero-width characters"""
    collapsed = re.sub(r"\s+", " ", message.strip())
    return ZERO_WIDTH_PATTERN.sub("", collapsed)


def extract_bible_references(text: str) -> List[EntityRef]:
    """Reference-shaped spans whose book resolves through the alias table"""
    refs = []
    for match in VERSE_PATTERN.finditer(text):
        book, chapter, verse_start, verse_end = match.groups()
        reference = f"{book.strip()} {chapter}"
        if verse_start:
            reference += f":{verse_start}"
            if verse_end:
                reference += f"-{verse_end}"

        if parse_reference(reference) is None:
            continue
        refs.append(EntityRef(type="verse" if verse_start else "chapter", reference=reference))
    return refs


def merge_entities(provided: List[EntityRef], detected: List[EntityRef]) -> List[EntityRef]:
    """Caller-supplied refs first, then detected refs not already present (case-insensitive)"""
    merged = list(provided)
    for entity in detected:
        exists = any(
            e.type == entity.type and e.reference.lower() == entity.reference.lower()
            for e in merged
        )
        if not exists:
            merged.append(entity)
    return merged


class IngressStage(BaseStage):
    stage = PipelineStage.INGRESS
    schema_version = INGRESS_SCHEMA_VERSION

    def __init__(self, plan_builder: PlanBuilder):
        super().__init__("Normalizes input, detects references and builds the plan")
        self.plan_builder = plan_builder

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        normalized = normalize_message(ctx.message)

        if ctx.entrypoint == "chat_start":
            plan = build_chat_start_plan()
        else:
            plan = await self.plan_builder.build_plan(PlanInput(
                message=normalized,
                conversation_history=ctx.conversation_history,
                is_first_message=not ctx.conversation_history,
            ))

        detected = extract_bible_references(normalized)
        entities = merge_entities(ctx.entity_refs, detected)
        response = plan.response
        logger.debug("Detected references", run_id=ctx.run_id, detected=[e.reference for e in detected])

        payload = IngressPayload(
            normalized_input=normalized,
            detected_entities=entities,
            plan=plan,
        )
        return StageOutput(
            payload=payload,
            summary=(
                f"Plan: {response.response_mode.value} ({round(response.confidence * 100)}%, "
                f"{response.source}), Needs: {len(plan.retrieval.needs)}"
            ),
            stats={
                "input_length": len(normalized),
                "entity_count": len(entities),
                "plan_confidence": response.confidence,
                "used_llm": 1 if response.source == "llm" else 0,
            },
        )
