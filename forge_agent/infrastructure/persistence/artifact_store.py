from typing import List, Optional
from datetime import datetime, timedelta, timezone
import structlog

from forge_agent.domain.models.artifacts import StageArtifact
from forge_agent.domain.models.run_context import RunContext, PipelineStage, is_debug_mode
from forge_agent.infrastructure.persistence.storage import PipelineStorage


logger = structlog.get_logger(__name__)

DEBUG_TTL_DAYS = 7
PROD_TTL_DAYS = 30


class ArtifactStore:
    """Persists one redacted artifact per (run, stage)"""

    def __init__(self, storage: PipelineStorage):
        self.storage = storage

    async def persist(self, ctx: RunContext, artifact: StageArtifact) -> bool:
        """Upsert an artifact with its expiry. Failures are logged, never raised."""

        ttl_days = DEBUG_TTL_DAYS if is_debug_mode(ctx) else PROD_TTL_DAYS
        record = artifact.model_copy(update={
            "expires_at": datetime.now(timezone.utc) + timedelta(days=ttl_days)
        })

        try:
            await self.storage.upsert_stage_artifact(record)
            return True
        except Exception as e:
            logger.error(
                "Failed to persist artifact",
                run_id=ctx.run_id,
                stage=artifact.stage.value,
                error=str(e)
            )
            return False

    async def get_artifacts(self, run_id: str) -> List[StageArtifact]:
        """All artifacts of a run ordered by creation time"""
        return await self.storage.list_stage_artifacts(run_id)

    async def get_artifact(self, run_id: str, stage: PipelineStage) -> Optional[StageArtifact]:
        return await self.storage.get_stage_artifact(run_id, PipelineStage(stage).value)

    async def delete_artifacts(self, run_id: str) -> int:
        return await self.storage.delete_stage_artifacts(run_id)

    async def cleanup_expired(self) -> int:
        count = await self.storage.delete_expired_stage_artifacts(datetime.now(timezone.utc))
        if count:
            logger.info("Cleaned up expired artifacts", count=count)
        return count
