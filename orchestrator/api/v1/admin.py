from fastapi import APIRouter, Query

from orchestrator.api.deps import EngineDep

router = APIRouter()

@router.post("/reap_expired")
async def trigger_reap_expired(engine: EngineDep, limit: int = Query(default=100, ge=1)):
    count = await engine.queue.reap_expired(limit)
    await engine.session.commit()
    return {"dead_lettered_count": count}
