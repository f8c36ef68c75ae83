from abc import ABC, abstractmethod
from typing import Dict, Any, Mapping, Optional, Tuple
from datetime import datetime, timezone

from forge_agent.domain.models.artifacts import StageOutput
from forge_agent.domain.models.run_context import PipelineStage, RunContext


StageOutputs = Mapping[PipelineStage, StageOutput]


class BaseStage(ABC):
    """Base class for pipeline stage executors"""

    stage: PipelineStage
    schema_version: str
    requires: Tuple[PipelineStage, ...] = ()

    def __init__(self, description: str):
        self.description = description
        self.last_run_at: Optional[datetime] = None

    @abstractmethod
    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        """Run the stage given the outputs of the stages before it"""
        pass

    def validate_input(self, outputs: StageOutputs) -> bool:
        """True when every stage this one depends on has produced output"""
        return all(stage in outputs for stage in self.requires)

    def update_activity(self):
        self.last_run_at = datetime.now(timezone.utc)
