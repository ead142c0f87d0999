import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import QUEUE_DEPTH, TASKS_INFLIGHT
from orchestrator.engine import Engine
from orchestrator.settings import settings
from orchestrator.store import TaskStore
from orchestrator.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

async def run_leader_tasks(session: AsyncSession, clock: Clock = utc_now) -> dict[str, int]:
    """
    Periodic maintenance, run by the leader only:
    1. Dead-letter expired leases that have no attempts left (reaper)
    2. Purge DLQ items past the retention window
    """
    engine = Engine(session, clock=clock)

    reaped = await engine.queue.reap_expired()

    purged = 0
    if settings.DLQ_RETENTION_DAYS > 0:
        cutoff = clock() - timedelta(days=settings.DLQ_RETENTION_DAYS)
        purged = await engine.dlq.purge(cutoff)

    await session.commit()
    return {"reaped": reaped, "purged": purged}

async def run_metrics_tasks(session: AsyncSession, clock: Clock = utc_now) -> None:
    """Refreshes gauges on every instance so each /metrics endpoint is current."""
    store = TaskStore(session, clock)

    TASKS_INFLIGHT.set(await store.count_inflight())
    # Every status is reported, including the ones that dropped to zero
    for status, count in (await store.count_by_status()).items():
        QUEUE_DEPTH.labels(status=str(status)).set(count)

    await session.commit()
