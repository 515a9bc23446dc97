"""Outbound notification events (stock alerts, purchase outcomes)."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from stocksniper.config import settings

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class NotificationSink:
    """
    Posts JSON events to ``notification_webhook_url``.

    Delivery to end users happens elsewhere; an unset URL disables sending.
    """

    def __init__(self, url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.url = url if url is not None else settings.notification_webhook_url
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, event: str, tenant_id: int, data: Dict[str, Any]) -> bool:
        if not self.url:
            return False

        payload = {
            "event": event,
            "tenant_id": tenant_id,
            "sent_at": datetime.utcnow().isoformat(),
            "data": {k: _jsonable(v) for k, v in data.items()},
        }
        try:
            client = await self._get_client()
            response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Notification {event} for tenant {tenant_id} failed: {e}")
            return False

        success = response.status_code in (200, 201, 202, 204)
        if not success:
            logger.warning(f"Notification webhook returned {response.status_code} for {event}")
        return success

    async def stock_alert(self, tenant_id: int, watch_item_id: int, product_url: str,
                          snapshot: Dict[str, Any]) -> bool:
        return await self.send(
            "stock_found",
            tenant_id,
            {"watch_item_id": watch_item_id, "product_url": product_url, **snapshot},
        )

    async def purchase_outcome(self, tenant_id: int, watch_item_id: int, attempt_id: int,
                               status: str, order_ref: Optional[str] = None,
                               total_price: Optional[Decimal] = None,
                               failure_reason: Optional[str] = None) -> bool:
        return await self.send(
            f"purchase_{status}",
            tenant_id,
            {
                "watch_item_id": watch_item_id,
                "attempt_id": attempt_id,
                "status": status,
                "order_ref": order_ref,
                "total_price": total_price,
                "failure_reason": failure_reason,
            },
        )


notifier = NotificationSink()
