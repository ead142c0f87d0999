from orchestrator.pipelines.definitions import PipelineDefinition, TaskSpec, load_definitions
from orchestrator.pipelines.registry import PipelineRegistry, registry

__all__ = [
    "PipelineDefinition",
    "TaskSpec",
    "load_definitions",
    "PipelineRegistry",
    "registry",
]
