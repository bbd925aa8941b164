"""
Best-effort delivery of audit entries to the backend.
"""

import asyncio
from typing import Optional

import httpx

from ark_agent.errors import RemoteUnavailableError
from ark_agent.logging import get_logger
from ark_agent.schemas import AuditLogEntry

logger = get_logger("AuditEmitter")

AUDIT_LOG_PATH = "/api/audit/log"


class AuditEmitter:
    """
    Fire-and-forget audit emission.

    emit() never blocks the caller: each entry is delivered by a detached
    asyncio task, at most max_in_flight at a time, each with its own timeout.
    Delivery failures are logged at warning level and dropped. There is no
    ordering between entries and no retry.
    """

    def __init__(
        self,
        backend_url: str,
        user_id: str,
        timeout: float = 5.0,
        max_in_flight: int = 8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            backend_url (str): Base URL of the backend
            user_id (str): Filled into entries that carry no user_id
            timeout (float): Per-delivery timeout in seconds
            max_in_flight (int): Maximum concurrent deliveries
            transport (httpx.AsyncBaseTransport, optional): Transport override for tests
        """
        self.url = backend_url.rstrip("/") + AUDIT_LOG_PATH
        self.user_id = user_id
        self.timeout = timeout
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of deliveries scheduled but not yet finished."""
        return len(self._tasks)

    def emit(self, entry: AuditLogEntry) -> None:
        """
        Schedule delivery of entry and return immediately.
        Must be called from within a running event loop.
        """
        if entry.user_id is None:
            entry = entry.model_copy(update={"user_id": self.user_id})

        task = asyncio.get_running_loop().create_task(self._deliver(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, entry: AuditLogEntry):
        """
        Post one entry to the backend.

        Raises:
            RemoteUnavailableError: If the backend is unreachable or does not answer 200
        """
        payload = entry.model_dump(mode="json", exclude={"id", "created_at"})
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"audit service unreachable: {e!r}") from e

        if response.status_code != 200:
            raise RemoteUnavailableError(
                f"backend returned non-200 for audit log: {response.status_code}"
            )

    async def _deliver(self, entry: AuditLogEntry):
        async with self._semaphore:
            try:
                await self.send(entry)
            except RemoteUnavailableError as e:
                logger.warning(
                    "failed to send audit log to backend",
                    action=entry.action,
                    status=entry.status,
                    error=str(e),
                )
                return
            except Exception as e:
                # Nothing may escape a detached delivery task
                logger.warning(
                    "failed to send audit log to backend",
                    action=entry.action,
                    status=entry.status,
                    error=repr(e),
                )
                return
        logger.debug(
            "audit log sent to backend",
            action=entry.action,
            resource_id=entry.resource_id,
            status=entry.status,
        )

    async def drain(self, timeout: float = 5.0):
        """
        Wait up to timeout seconds for outstanding deliveries, then cancel the rest.
        Used at shutdown.
        """
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Dropped {len(not_done)} undelivered audit entries at shutdown")
            await asyncio.gather(*not_done, return_exceptions=True)
