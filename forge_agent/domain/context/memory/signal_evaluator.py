"""Signal -> durable memory promotion.

Signals are short-lived counters for recurring patterns. A signal seen
twice within its TTL is promoted to a durable memory; a pattern that is
already a memory gets reinforced instead. Reads go to storage directly,
every write goes through the side-effect gateway.
"""
from typing import Dict, List, Literal
from datetime import datetime, timedelta, timezone
import structlog
from pydantic import BaseModel, Field

from forge_agent.domain.context.memory.candidate_extractor import ExtractedMemoryCandidate
from forge_agent.domain.context.memory.vocabularies import (
    PROMOTION_THRESHOLD,
    SIGNAL_TTL_DAYS,
    strength_from_occurrences,
)
from forge_agent.domain.context.state.side_effects import MemoryWrite, SideEffects
from forge_agent.domain.models.records import UserSignal
from forge_agent.infrastructure.persistence.storage import PipelineStorage

logger = structlog.get_logger(__name__)

EvaluationAction = Literal[
    "created_signal",
    "incremented_signal",
    "promoted_to_memory",
    "reinforced_memory",
    "skipped_double_count",
]


class EvaluationDetail(BaseModel):
    candidate_type: str
    candidate_value: str
    action: EvaluationAction


class EvaluationResult(BaseModel):
    signals_created: int = 0
    signals_incremented: int = 0
    memories_promoted: int = 0
    memories_reinforced: int = 0
    details: List[EvaluationDetail] = Field(default_factory=list)


def build_value(candidate: ExtractedMemoryCandidate) -> Dict[str, str]:
    if candidate.type == "struggle_theme":
        return {"theme": candidate.value}
    return {"stage": candidate.value}


class SignalEvaluator:
    """Updates signals and memories for extracted candidates"""

    def __init__(self, storage: PipelineStorage, side_effects: SideEffects):
        self.storage = storage
        self.side_effects = side_effects

    async def evaluate_and_promote(
        self,
        user_id: str,
        conversation_id: str,
        candidates: List[ExtractedMemoryCandidate],
        dry_run: bool = False,
    ) -> EvaluationResult:
        result = EvaluationResult()
        counters = {
            "created_signal": "signals_created",
            "incremented_signal": "signals_incremented",
            "promoted_to_memory": "memories_promoted",
            "reinforced_memory": "memories_reinforced",
        }

        for candidate in candidates:
            action = await self._process(user_id, conversation_id, candidate, dry_run)
            result.details.append(EvaluationDetail(
                candidate_type=candidate.type,
                candidate_value=candidate.value,
                action=action,
            ))
            if action in counters:
                field = counters[action]
                setattr(result, field, getattr(result, field) + 1)

        return result

    async def _process(
        self,
        user_id: str,
        conversation_id: str,
        candidate: ExtractedMemoryCandidate,
        dry_run: bool,
    ) -> EvaluationAction:
        value = build_value(candidate)
        signal_type = f"{candidate.type}_signal"

        memory = await self.storage.find_memory(user_id, candidate.type, value)
        if memory is not None:
            if not dry_run:
                occurrences = memory.occurrences + 1
                await self.side_effects.reinforce_memory(
                    memory.id, occurrences, strength_from_occurrences(occurrences)
                )
            return "reinforced_memory"

        signal = await self.storage.find_signal(user_id, signal_type, value)
        if signal is not None and signal.last_counted_conversation_id == conversation_id:
            return "skipped_double_count"

        expires_at = datetime.now(timezone.utc) + timedelta(days=SIGNAL_TTL_DAYS)

        if signal is not None:
            new_count = signal.count + 1
            if not dry_run:
                await self.side_effects.update_signal(signal.id, {
                    "count": new_count,
                    "expires_at": expires_at,
                    "last_counted_conversation_id": conversation_id,
                })

            if new_count < PROMOTION_THRESHOLD:
                return "incremented_signal"

            if not dry_run:
                await self.side_effects.write_memory(user_id, MemoryWrite(
                    memory_type=candidate.type,
                    value=value,
                    strength=strength_from_occurrences(new_count),
                    occurrences=new_count,
                    source="signal_promotion",
                ))
                await self.side_effects.delete_signal(signal.id)
                logger.info("Promoted signal to memory", user_id=user_id, memory_type=candidate.type, value=candidate.value)
            return "promoted_to_memory"

        if not dry_run:
            await self.side_effects.record_signal(UserSignal(
                user_id=user_id,
                signal_type=signal_type,
                value=value,
                count=1,
                expires_at=expires_at,
                last_counted_conversation_id=conversation_id,
            ))
        return "created_signal"
