import asyncio
import base64
import io
import json
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from .config import EventDetails
from .helpers import to_iso
from .model.sale import TicketSale


def qr_payload(
    sale: TicketSale,
    ticket_id: str,
    event: EventDetails,
    generated_at: float,
    standard_ticket_id: Optional[str] = None,
) -> str:
    data = {
        "ticketId": ticket_id,
        "reference": sale.reference,
        "customerName": sale.customer.full_name,
        "ticketType": sale.ticket.type_id.value,
        "quantity": 1 if standard_ticket_id else sale.ticket.quantity,
        "eventDate": event.date,
        "eventTime": event.time,
        "venue": event.venue,
        "generatedAt": to_iso(generated_at),
    }
    if standard_ticket_id:
        data["standardTicketId"] = standard_ticket_id
    return json.dumps(data, separators=(",", ":"))


def _render_png(payload: str) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


async def render_data_url(payload: str) -> str:
    # PIL encoding is CPU bound; keep it off the event loop
    png = await asyncio.to_thread(_render_png, payload)
    return "data:image/png;base64," + base64.b64encode(png).decode()
