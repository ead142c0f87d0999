import logging
from typing import Iterable

from orchestrator.domain.errors import PipelineNotFoundError
from orchestrator.pipelines.definitions import PipelineDefinition

logger = logging.getLogger(__name__)


class PipelineRegistry:
    """Read-only after startup: definitions are loaded once, then only looked up."""

    def __init__(self, definitions: Iterable[PipelineDefinition] = ()):
        self._definitions: dict[str, PipelineDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: PipelineDefinition) -> None:
        if definition.name in self._definitions:
            logger.info("Replacing pipeline definition %r", definition.name)
        self._definitions[definition.name] = definition

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise PipelineNotFoundError(name) from None

    def list(self) -> list[PipelineDefinition]:
        return sorted(self._definitions.values(), key=lambda d: d.name)


registry = PipelineRegistry()
