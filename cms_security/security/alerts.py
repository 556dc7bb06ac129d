"""
Best-effort delivery of security alerts to an external webhook.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import httpx

from ..observability.logging import get_logger
from .models import SecurityEvent, utc_now


class AlertDispatcher:
    """
    Posts alerts to a webhook as detached tasks.

    Delivery never blocks the caller and failures are only logged. Pending
    tasks are kept until done so they can be drained at shutdown.
    """

    def __init__(self,
                 webhook_url: Optional[str] = None,
                 timeout: float = 5.0,
                 service_name: str = "cms-security",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.service_name = service_name
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0
        self.logger = get_logger("alert_dispatcher")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    def build_payload(self, alert_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": alert_type,
            "data": data,
            "timestamp": utc_now().isoformat(),
            "service": self.service_name,
        }

    def dispatch(self, alert_type: str, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule delivery of an alert. Returns the task, if one was started."""
        if not self.enabled:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("No running event loop, alert not sent", alert_type=alert_type)
            return None

        task = loop.create_task(self._deliver(self.build_payload(alert_type, data)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch_event(self, event: SecurityEvent) -> Optional[asyncio.Task]:
        return self.dispatch("security_event", event.to_dict())

    async def _deliver(self, payload: Dict[str, Any]) -> bool:
        try:
            response = await self._get_client().post(self.webhook_url, json=payload)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.failed += 1
            self.logger.error(
                "Failed to send security alert",
                alert_type=payload["type"],
                error=str(e),
            )
            return False

        self.sent += 1
        self.logger.debug("Security alert sent", alert_type=payload["type"])
        return True

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending deliveries."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("Cancelled undelivered alerts", count=len(pending))

    async def aclose(self) -> None:
        await self.drain(timeout=self.timeout)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
