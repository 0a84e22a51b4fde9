from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging
import uuid

import httpx

from .errors import NotificationFailure

log = logging.getLogger(__name__)


# ----------------------------
# Notifier Interface
# ----------------------------
class Notifier(ABC):
    """
    Outbound delivery of fulfillment results. Best effort: implementations
    raise NotificationFailure and never touch order state themselves.
    """

    # returns a delivery/message id
    @abstractmethod
    async def send_fulfillment(
        self, to: str, data: Dict[str, Any]
    ) -> str: ...

    # operator channel: order_completed | low_stock | ...
    @abstractmethod
    async def send_operator(
        self, kind: str, data: Dict[str, Any]
    ) -> str: ...


# ----------------------------
# HTTP relay implementation
# ----------------------------
class HttpNotifier(Notifier):
    """
    Posts one JSON message per notification to a relay service that owns
    the actual email/messaging transport and its retry policy.
    """

    def __init__(self, client: httpx.AsyncClient, url: str,
                 admin_contact: str, timeout: Optional[float] = None):
        self.client = client
        self.url = url
        self.admin_contact = admin_contact
        self.timeout = timeout

    async def _post(self, message: Dict[str, Any]) -> str:
        try:
            r = await self.client.post(
                self.url, json=message, timeout=self.timeout
            )
            r.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationFailure(
                f"{message['template']} to {message['to']}: {exc}"
            ) from exc
        try:
            ack = r.json()
        except ValueError:
            ack = {}
        return str(ack.get("message_id") or ack.get("id") or "")

    async def send_fulfillment(self, to: str, data: Dict[str, Any]) -> str:
        return await self._post({
            "channel": "customer",
            "to": to,
            "template": "fulfillment",
            "data": data,
        })

    async def send_operator(self, kind: str, data: Dict[str, Any]) -> str:
        return await self._post({
            "channel": "operator",
            "to": self.admin_contact,
            "template": kind,
            "data": data,
        })


# ----------------------------
# Log-only implementation (no relay configured)
# ----------------------------
class LogNotifier(Notifier):

    async def send_fulfillment(self, to: str, data: Dict[str, Any]) -> str:
        mid = f"log_{uuid.uuid4().hex[:12]}"
        # never log the credential payload
        log.info("fulfillment for order %s -> %s (%s)",
                 data.get("order_id"), to, mid)
        return mid

    async def send_operator(self, kind: str, data: Dict[str, Any]) -> str:
        mid = f"log_{uuid.uuid4().hex[:12]}"
        log.info("operator %s: %s (%s)", kind,
                 {k: v for k, v in data.items() if k != "credentials"}, mid)
        return mid
