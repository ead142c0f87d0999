import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx

from worker_sdk.errors import LeaseLost

logger = logging.getLogger(__name__)

class WorkerClient:
    """
    Thin client for the worker protocol: lease, start, renew, report.

    Transport failures are logged and reported as "nothing happened"
    (empty lease, False, None) so the runner can simply try again later.
    A 404/409 on an owned task means the lease is gone and raises LeaseLost.
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        lease_ttl_seconds: Optional[int] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def _post(self, path: str, json_body: Dict[str, Any]) -> httpx.Response:
        return await self.client.post(path, json=json_body)

    def _check_lease(self, resp: httpx.Response, task_id: UUID) -> None:
        if resp.status_code in (404, 409):
            detail = resp.json().get("detail") if resp.content else None
            raise LeaseLost(detail or f"Lease on task {task_id} lost")
        resp.raise_for_status()

    async def lease(self, count: int = 1) -> List[Dict[str, Any]]:
        """Leases up to `count` tasks. Returns [] when the queue is empty."""
        payload: Dict[str, Any] = {"worker_id": self.worker_id, "count": count}
        if self.lease_ttl_seconds:
            payload["lease_ttl_seconds"] = self.lease_ttl_seconds

        try:
            resp = await self._post("/api/v1/workers/lease", json_body=payload)
            if resp.status_code == 204:
                return []
            resp.raise_for_status()
            return resp.json().get("tasks", [])
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.info if status_code == 422 else logger.warning
            log_fn("Lease rejected for worker=%s status=%s", self.worker_id, status_code)
            return []
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Lease failed for worker=%s: %s", self.worker_id, e)
            return []

    async def start(self, task_id: UUID) -> bool:
        try:
            resp = await self._post(f"/api/v1/workers/{task_id}/start", json_body={"worker_id": self.worker_id})
            self._check_lease(resp, task_id)
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Start ack failed for worker=%s task=%s: %s", self.worker_id, task_id, e)
            return False

    async def renew(self, task_id: UUID) -> Optional[str]:
        """Returns the new lease expiry, or None on a transient failure."""
        payload: Dict[str, Any] = {"worker_id": self.worker_id}
        if self.lease_ttl_seconds:
            payload["lease_ttl_seconds"] = self.lease_ttl_seconds

        try:
            resp = await self._post(f"/api/v1/workers/{task_id}/renew", json_body=payload)
            self._check_lease(resp, task_id)
            return resp.json()["lease_expiry"]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("Renew failed for worker=%s task=%s: %s", self.worker_id, task_id, e)
            return None

    async def report(
        self,
        task_id: UUID,
        result: Dict[str, Any],
        attempt: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Sends the attempt outcome. Returns the task's new state, or None on a transient failure."""
        body: Dict[str, Any] = {"worker_id": self.worker_id, "result": result}
        if attempt:
            body["attempt"] = attempt

        try:
            resp = await self._post(f"/api/v1/workers/{task_id}/report", json_body=body)
            self._check_lease(resp, task_id)
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Report failed for worker=%s task=%s: %s", self.worker_id, task_id, e)
            return None

    async def close(self):
        await self.client.aclose()
