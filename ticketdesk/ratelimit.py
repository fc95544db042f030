import logging

from .errors import RateLimited
from .helpers import wait_seconds
from .model.sale import TicketSale
from .model.store import SaleStore

logger = logging.getLogger(__name__)


class TransferRateLimiter:
    """
    Advisory guard for "I have made the transfer" clicks.

    No state of its own: both guards read the persisted click time and IP on
    sale records. Two clicks racing in the same instant can both pass the
    ticket-type guard; the status compare-and-swap still lets only one of
    them transition the sale.
    """

    def __init__(
        self,
        store: SaleStore,
        *,
        reference_window: float = 120.0,
        ticket_type_window: float = 90.0,
    ) -> None:
        self.store = store
        self.reference_window = reference_window
        self.ticket_type_window = ticket_type_window

    async def check(self, sale: TicketSale, ip: str, now: float) -> None:
        p = sale.payment
        if p.transfer_clicked_at is not None and p.user_ip_address == ip:
            elapsed = now - p.transfer_clicked_at
            if elapsed < self.reference_window:
                wait = wait_seconds(self.reference_window, elapsed)
                logger.info(
                    "rate limited %s from %s (reference, %ds)",
                    sale.reference, ip, wait,
                )
                raise RateLimited(
                    wait, "reference",
                    f"Please wait {wait} seconds before confirming this "
                    "transfer again.",
                )

        latest = await self.store.latest_transfer_click(
            ip,
            sale.ticket.type_id,
            since=now - self.ticket_type_window,
            exclude_reference=sale.reference,
        )
        if latest is not None:
            elapsed = max(0.0, now - latest)
            if elapsed < self.ticket_type_window:
                wait = wait_seconds(self.ticket_type_window, elapsed)
                logger.info(
                    "rate limited %s from %s (ticket_type %s, %ds)",
                    sale.reference, ip, sale.ticket.type_id.value, wait,
                )
                raise RateLimited(
                    wait, "ticket_type",
                    f"A transfer for {sale.ticket.type_name} was just "
                    f"confirmed from this device. Please wait {wait} seconds.",
                )
