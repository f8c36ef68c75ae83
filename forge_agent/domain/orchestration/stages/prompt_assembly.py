from forge_agent.domain.models.artifacts import PROMPT_ASSEMBLY_SCHEMA_VERSION, StageOutput
from forge_agent.domain.models.run_context import PipelineStage, RunContext
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs
from forge_agent.domain.prompt.prompt_assembler import PromptAssembler


class PromptAssemblyStage(BaseStage):
    stage = PipelineStage.PROMPT_ASSEMBLY
    schema_version = PROMPT_ASSEMBLY_SCHEMA_VERSION
    requires = (PipelineStage.RANK_AND_BUDGET,)

    def __init__(self, assembler: PromptAssembler):
        super().__init__("Builds the system prompt and message list")
        self.assembler = assembler

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        return self.assembler.assemble(ctx, outputs[PipelineStage.RANK_AND_BUDGET].payload)
