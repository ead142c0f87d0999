"""
Pipeline definitions: a named, acyclic graph of task specs.

Dependencies are declared by task name and resolved once, at definition time,
into integer indices. Runs only ever see the index form.
"""
import json
from collections import deque
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from orchestrator.domain.errors import PipelineDefinitionError
from orchestrator.domain.states import BackoffStrategy, PipelineFailurePolicy


class TaskSpec(BaseModel):
    name: str
    depends_on: list[str] = Field(default_factory=list)
    optional: bool = False
    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff_strategy: Optional[BackoffStrategy] = None
    base_delay_seconds: Optional[float] = Field(default=None, ge=0)
    max_delay_seconds: Optional[float] = Field(default=None, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)


class PipelineDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    failure_policy: PipelineFailurePolicy = PipelineFailurePolicy.CONTINUE
    tasks: list[TaskSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self) -> "PipelineDefinition":
        names = [spec.name for spec in self.tasks]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate task names: {', '.join(duplicates)}")

        known = set(names)
        for spec in self.tasks:
            missing = [dep for dep in spec.depends_on if dep not in known]
            if missing:
                raise ValueError(f"task {spec.name!r} depends on unknown tasks: {', '.join(missing)}")

        if topological_order(self.graph()) is None:
            raise ValueError(f"pipeline {self.name!r} has a dependency cycle")
        return self

    def graph(self) -> list[list[int]]:
        """Dependencies of each task as indices into `tasks`."""
        index = {spec.name: i for i, spec in enumerate(self.tasks)}
        return [[index[dep] for dep in spec.depends_on] for spec in self.tasks]

    def warnings(self) -> list[str]:
        upstream = {dep for spec in self.tasks for dep in spec.depends_on}
        return [
            f"optional task {spec.name!r} has dependents; they are cancelled if it does not succeed"
            for spec in self.tasks
            if spec.optional and spec.name in upstream
        ]


def topological_order(graph: list[list[int]]) -> Optional[list[int]]:
    """Kahn's algorithm. Returns None when the graph has a cycle."""
    dependents: list[list[int]] = [[] for _ in graph]
    indegree = [len(deps) for deps in graph]
    for node, deps in enumerate(graph):
        for dep in deps:
            dependents[dep].append(node)

    ready = deque(node for node, degree in enumerate(indegree) if degree == 0)
    order = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for child in dependents[node]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(order) != len(graph):
        return None
    return order


def execution_steps(graph: list[list[int]]) -> Optional[list[list[int]]]:
    """
    Groups tasks into steps by dependency depth: a step only depends on earlier
    steps, so its tasks can run in parallel. None when the graph has a cycle.
    """
    order = topological_order(graph)
    if order is None:
        return None

    depth = [0] * len(graph)
    for node in order:
        depth[node] = max((depth[dep] + 1 for dep in graph[node]), default=0)

    steps: list[list[int]] = [[] for _ in range(max(depth, default=-1) + 1)]
    for node in range(len(graph)):
        steps[depth[node]].append(node)
    return steps


def parse_definition(data: dict[str, Any]) -> PipelineDefinition:
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError(str(e)) from e


def load_definitions(path: str | Path) -> list[PipelineDefinition]:
    """
    Reads a JSON file holding either a list of definitions
    or an object with a "pipelines" list.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("pipelines", [])
    if not isinstance(raw, list):
        raise PipelineDefinitionError(f"{path}: expected a list of pipeline definitions")
    return [parse_definition(item) for item in raw]
