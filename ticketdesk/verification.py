import logging
import time
from typing import Any, Callable, Dict

from .errors import AlreadyUsed, NotFound, ValidationError
from .model.sale import PaymentStatus
from .model.store import SaleStore

logger = logging.getLogger(__name__)


class TicketVerifier:
    """Venue entry: marks one admission as used, exactly once."""

    def __init__(self, store: SaleStore,
                 clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    async def verify(self, ticket_id: str, verifier: str) -> Dict[str, Any]:
        ticket_id = (ticket_id or "").strip()
        if not ticket_id:
            raise ValidationError("Ticket ID is required")
        verifier = (verifier or "").strip() or "staff"

        sale, ticket = await self.store.find_by_ticket_id(ticket_id)
        if sale.payment.status is not PaymentStatus.COMPLETED:
            raise NotFound("Ticket not found or payment not completed")

        if ticket is not None:
            used, used_at, by = ticket.is_used, ticket.used_at, ticket.verified_by
        else:
            used, used_at, by = sale.is_used, sale.used_at, sale.verified_by
        if used:
            raise AlreadyUsed(ticket_id, used_at, by)

        now = self.clock()
        if ticket is not None:
            claimed = await self.store.claim_ticket(ticket_id, verifier, now)
        else:
            claimed = await self.store.claim_sale(sale.id, verifier, now)
        if not claimed:
            # lost the race to another scanner; report their verification
            sale, ticket = await self.store.find_by_ticket_id(ticket_id)
            src = ticket if ticket is not None else sale
            raise AlreadyUsed(ticket_id, src.used_at, src.verified_by)

        logger.info("ticket %s (%s) verified by %s", ticket_id,
                    sale.reference, verifier)
        return {
            "ticketId": ticket_id,
            "reference": sale.reference,
            "customerName": sale.customer.full_name,
            "ticketType": sale.ticket.type_id.value,
            "ticketTypeName": sale.ticket.type_name,
            "quantity": 1 if ticket is not None else sale.ticket.quantity,
            "usedAt": now,
            "verifiedBy": verifier,
        }
