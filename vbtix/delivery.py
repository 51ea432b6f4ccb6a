"""Ticket delivery hand-off, invoked after a successful settlement."""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, TypedDict

import httpx

logger = logging.getLogger(__name__)


class DeliveredTicket(TypedDict):
    id: str
    qr_code: str
    ticket_type_id: str


class DeliveryRequest(TypedDict):
    transaction_id: str
    invoice_number: str
    event_id: str
    customer_email: Optional[str]
    tickets: List[DeliveredTicket]


class TicketDelivery(ABC):
    @abstractmethod
    async def deliver(self, request: DeliveryRequest) -> None: ...


class LogDelivery(TicketDelivery):
    """Used when no delivery service is configured."""

    async def deliver(self, request: DeliveryRequest) -> None:
        logger.info("tickets ready for %s: %d ticket(s), invoice %s",
                    request["transaction_id"], len(request["tickets"]),
                    request["invoice_number"])


class HttpDelivery(TicketDelivery):
    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        self.url = url
        self.client = client

    async def deliver(self, request: DeliveryRequest) -> None:
        r = await self.client.post(self.url, json=request)
        r.raise_for_status()
