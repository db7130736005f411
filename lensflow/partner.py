"""
Partner system integration.

Handles the outbound side of the partner link:
- Translating internal order statuses into the partner's vocabulary
- Pushing a status change for orders the partner created (one call per transition)
- Isolating failures so a partner outage never fails a local mutation

The inbound side (partner creating and reading orders, reading counterparties)
lives in the web layer under ``/api/external``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .domain import Order, OrderStatus
from .errors import ExternalSyncFailure

logger = logging.getLogger(__name__)

# Partner-side status names; anything not listed is sent by its own value.
PARTNER_STATUS_NAMES: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "new",
}


def partner_status(status: OrderStatus) -> str:
    return PARTNER_STATUS_NAMES.get(status, status.value)


class PartnerClient:
    """Thin httpx wrapper around the partner's order status endpoint."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    def push_order_status(
        self, partner_order_id: str, status: OrderStatus, order_number: str = ""
    ) -> None:
        payload = {
            "order_id": partner_order_id,
            "status": partner_status(status),
            "lensflow_order_id": order_number,
        }
        try:
            response = self._client.patch(
                f"/orders/{partner_order_id}/status", json=payload
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalSyncFailure(
                f"Partner rejected status {payload['status']!r} for {partner_order_id}: {exc}"
            ) from exc
        logger.info(
            "Pushed status %s for partner order %s", payload["status"], partner_order_id
        )

    def close(self) -> None:
        self._client.close()


@dataclass(slots=True)
class SyncResult:
    """Outcome of a mirror attempt. Callers are free to discard it."""

    order_number: str
    ok: bool
    skipped: bool = False
    error: Optional[str] = None


class StatusMirror:
    """Best-effort propagation of order status to the partner.

    ``notify`` never raises: no retry, no queue. A dropped update is only
    corrected by the order's next transition.
    """

    def __init__(self, client: Optional[PartnerClient] = None) -> None:
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def notify(self, order: Order) -> SyncResult:
        if not order.external_id or self._client is None:
            return SyncResult(order.order_number, ok=True, skipped=True)
        try:
            self._client.push_order_status(
                order.external_id, order.status, order.order_number
            )
        except Exception as exc:
            logger.warning(
                "Partner status sync failed for order %s (partner id %s): %s",
                order.order_number,
                order.external_id,
                exc,
            )
            return SyncResult(order.order_number, ok=False, error=str(exc))
        return SyncResult(order.order_number, ok=True)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


__all__ = [
    "PARTNER_STATUS_NAMES",
    "partner_status",
    "PartnerClient",
    "SyncResult",
    "StatusMirror",
]
