from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Sequence

import httpx

from ..config import Settings
from ..model.sale import TicketSale

logger = logging.getLogger(__name__)

META_GRAPH_URL = "https://graph.facebook.com/v15.0/{phone_id}/messages"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


# ----------------------------
# Admin Alert Channel Interface
# ----------------------------
class AlertChannel(ABC):
    """Best-effort admin notification. `notify` never raises."""

    @abstractmethod
    async def notify(self, numbers: Sequence[str], message: str) -> bool: ...


class NullChannel(AlertChannel):
    async def notify(self, numbers: Sequence[str], message: str) -> bool:
        return False


class WhatsAppChannel(AlertChannel):
    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self.http = http
        self.provider = settings.whatsapp_provider
        self.phone_id = settings.whatsapp_phone_number_id
        self.token = settings.whatsapp_access_token
        self.twilio_sid = settings.twilio_account_sid
        self.twilio_token = settings.twilio_auth_token
        self.twilio_from = settings.twilio_whatsapp_number

    async def _send_meta(self, number: str, message: str) -> None:
        r = await self.http.post(
            META_GRAPH_URL.format(phone_id=self.phone_id),
            json={
                "messaging_product": "whatsapp",
                "to": number,
                "type": "text",
                "text": {"body": message},
            },
            headers={"Authorization": f"Bearer {self.token}"},
        )
        r.raise_for_status()

    async def _send_twilio(self, number: str, message: str) -> None:
        r = await self.http.post(
            TWILIO_URL.format(sid=self.twilio_sid),
            data={
                "Body": message,
                "From": f"whatsapp:{self.twilio_from}",
                "To": f"whatsapp:{number}",
            },
            auth=(self.twilio_sid, self.twilio_token),
        )
        r.raise_for_status()

    async def notify(self, numbers: Sequence[str], message: str) -> bool:
        send = self._send_twilio if self.provider == "twilio" else self._send_meta
        delivered = 0
        for number in numbers:
            try:
                await send(number, message)
                delivered += 1
            except httpx.HTTPError as e:
                logger.warning("whatsapp alert to %s failed: %s", number, e)
        return delivered > 0


# ----------------------------
# Messages
# ----------------------------
def _summary(sale: TicketSale) -> str:
    return (
        f"*Reference:* {sale.reference}\n"
        f"*Customer:* {sale.customer.full_name}\n"
        f"*Ticket:* {sale.ticket.type_name}\n"
        f"*Quantity:* {sale.ticket.quantity}\n"
        f"*Amount:* NGN {sale.ticket.total_amount:,}\n"
    )


def approval_needed_message(sale: TicketSale) -> str:
    return (
        "*PAYMENT APPROVAL NEEDED*\n\n"
        + _summary(sale)
        + f"*Contact:* {sale.customer.phone}\n\n"
        "Customer has marked their bank transfer as completed. "
        "Please verify and approve."
    )


def suspicious_payment_message(sale: TicketSale, hours_waiting: float) -> str:
    return (
        "*URGENT: PAYMENT PENDING TOO LONG*\n\n"
        + _summary(sale)
        + f"*Waiting:* {hours_waiting:.0f}h\n\n"
        "This transfer has not been verified. Please review it now."
    )
