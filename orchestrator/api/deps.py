from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.session import get_db_session
from orchestrator.engine import Engine
from orchestrator.pipelines.registry import PipelineRegistry, registry

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

def get_registry() -> PipelineRegistry:
    return registry

Registry = Annotated[PipelineRegistry, Depends(get_registry)]

def get_engine(session: DbSession, pipelines: Registry) -> Engine:
    return Engine(session, registry=pipelines)

# Per-request component graph, bound to the request's session
EngineDep = Annotated[Engine, Depends(get_engine)]
