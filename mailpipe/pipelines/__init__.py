from mailpipe.pipelines.base import (
    AiGeneratedPipeline,
    GenerationOutcome,
    Pipeline,
    PipelineResult,
    QueueItemDraft,
    Recipient,
)
from mailpipe.pipelines.registry import PipelineName, PipelineDefinition
