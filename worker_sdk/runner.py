import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, Optional
from uuid import UUID

from worker_sdk.client import WorkerClient
from worker_sdk.errors import LeaseLost, TaskError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Coroutine[Any, Any, Any]]

class WorkerRunner:
    def __init__(
        self,
        client: WorkerClient,
        handler: Handler,
        heartbeat_interval: float = 10.0,
        poll_interval: float = 1.0,
        batch_size: int = 1,
    ):
        self.client = client
        self.handler = handler
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def run(self):
        self.running = True
        self._shutdown_event.clear()
        logger.info("Worker %s started", self.client.worker_id)

        try:
            while self.running:
                try:
                    processed = await self.run_once()
                    if not processed:
                        await self._idle(self.poll_interval)
                except Exception as e:
                    logger.exception("Error in runner loop for worker %s: %s", self.client.worker_id, e)
                    await self._idle(5.0)
        finally:
            logger.info("Worker runner stopped")

    def stop(self):
        self.running = False
        self._shutdown_event.set()

    async def run_once(self) -> int:
        """Leases one batch and processes it. Returns the number of tasks leased."""
        tasks = await self.client.lease(self.batch_size)
        for task in tasks:
            await self.process_task(task)
        return len(tasks)

    async def process_task(self, task: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            task_id = UUID(task["id"])
            attempt_number = task["attempt"]
            payload = task.get("payload")
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Received malformed task in runner: %s", e)
            return None

        logger.info("Leased task %s (attempt %s)", task_id, attempt_number)
        started_at = _now()

        try:
            await self.client.start(task_id)
        except LeaseLost as e:
            logger.warning("Task %s lost before start: %s", task_id, e)
            return None

        work = asyncio.create_task(self.handler(payload))
        lease_lost = asyncio.Event()
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(task_id, work, lease_lost))

        try:
            output = await work
            result = {"success": True, "output": output}
        except asyncio.CancelledError:
            if not lease_lost.is_set():
                raise
            # Someone else owns the task now; whatever we computed is discarded
            logger.warning("Task %s abandoned: lease lost", task_id)
            return None
        except TaskError as e:
            logger.error("Task %s failed: %s", task_id, e.message)
            result = {
                "success": False,
                "error": e.to_dict(),
                "failure_mode": "retryable" if e.retryable else "non_retryable",
            }
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.error("Task %s failed: %s", task_id, error_msg)
            result = {
                "success": False,
                "error": {"message": error_msg, "code": type(e).__name__},
                "failure_mode": "retryable",
            }
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

        attempt = {
            "attempt_number": attempt_number,
            "started_at": started_at.isoformat(),
            "finished_at": _now().isoformat(),
            "worker_id": self.client.worker_id,
        }
        try:
            state = await self.client.report(task_id, result, attempt)
        except LeaseLost as e:
            logger.warning("Report for task %s rejected, lease lost: %s", task_id, e)
            return None

        if state is None:
            logger.error("Task %s finished but the report failed; the lease will expire and be retried", task_id)
        else:
            logger.info("Task %s reported, now %s", task_id, state.get("status"))
        return state

    async def _heartbeat_loop(self, task_id: UUID, work: asyncio.Task, lease_lost: asyncio.Event):
        try:
            while not work.done():
                await asyncio.sleep(self.heartbeat_interval)
                logger.debug("Renewing lease for %s", task_id)
                try:
                    await self.client.renew(task_id)
                except LeaseLost as e:
                    logger.warning("Lease for %s lost (%s), cancelling handler", task_id, e)
                    lease_lost.set()
                    work.cancel()
                    return
        except asyncio.CancelledError:
            pass

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

def _now() -> datetime:
    return datetime.now(timezone.utc)
