import asyncio
import logging
from typing import Optional

from orchestrator.api.v1.metrics import LEADER_STATUS
from orchestrator.db.session import AsyncSessionLocal
from orchestrator.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from orchestrator.settings import settings
from orchestrator.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(self, interval: Optional[int] = None, session_factory=AsyncSessionLocal):
        self.interval = interval if interval is not None else settings.SCHEDULER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self._running = False
        self._task = None
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started (interval=%ss).", self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler service stopped.")

    async def tick(self, session) -> None:
        # Session-level lock: re-acquiring while held just returns True
        is_leader = await try_advisory_lock(session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Running maintenance.")
                self._is_leader = True
            outcome = await run_leader_tasks(session)
            if outcome["reaped"] or outcome["purged"]:
                logger.info("Maintenance: reaped=%s purged=%s", outcome["reaped"], outcome["purged"])
        elif self._is_leader:
            logger.info("Lost leadership. Stopping maintenance.")
            self._is_leader = False

        LEADER_STATUS.set(1 if self._is_leader else 0)
        await run_metrics_tasks(session)

    async def _loop(self):
        session = None
        while self._running:
            try:
                if not session:
                    session = self.session_factory()
                await self.tick(session)
            except Exception as e:
                logger.error("Error in scheduler ticker: %s", e, exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # Drop the session (and with it the advisory lock) and reconnect next tick
                if session:
                    await session.close()
                    session = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
