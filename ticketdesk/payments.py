"""
Payment lifecycle: every state change of a TicketSale goes through here.

Transitions are serialised per reference by an in-process lock and persisted
with a compare-and-swap on the stored status, so a transition and its side
effect (ticket email, rejection email) happen at most once.
"""
from __future__ import annotations
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import Settings
from .delivery.alerts import approval_needed_message
from .delivery.jobs import JobType, Priority
from .delivery.notifier import Notifier
from .errors import (
    AlreadyApproved,
    AlreadyProcessed,
    Conflict,
    ValidationError,
)
from .gateways import GatewayAdapter
from .helpers import is_valid_email
from .model.sale import (
    LEGACY_APPROVABLE,
    TICKET_TIERS,
    CustomerInfo,
    PaymentMethod,
    PaymentStatus,
    TicketInfo,
    TicketSale,
    TicketType,
)
from .model.store import SaleStore
from .qr import qr_payload, render_data_url
from .ratelimit import TransferRateLimiter

logger = logging.getLogger(__name__)

RenderQR = Callable[[str], Awaitable[str]]

GATEWAY_METHODS = {
    "paystack": PaymentMethod.PAYSTACK,
    "opay": PaymentMethod.OPAY,
}


def _parse_ticket_type(value: Any) -> TicketType:
    try:
        return TicketType(value)
    except ValueError:
        raise ValidationError("Invalid ticket type")


def _parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Quantity must be a whole number")
    try:
        qty = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number")
    if qty != value and str(qty) != str(value).strip():
        raise ValidationError("Quantity must be a whole number")
    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    return qty


def _customer(full_name: str, email: str, phone: str) -> CustomerInfo:
    if not (full_name or "").strip() or not email or not (phone or "").strip():
        raise ValidationError("All fields are required")
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address")
    return CustomerInfo.from_full_name(full_name, email, phone)


class PaymentService:
    def __init__(
        self,
        store: SaleStore,
        notifier: Notifier,
        limiter: TransferRateLimiter,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        render_qr: RenderQR = render_data_url,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.limiter = limiter
        self.settings = settings
        self.clock = clock
        self.render_qr = render_qr
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, reference: str):
        lock = self._locks.setdefault(reference, asyncio.Lock())
        self._waiters[reference] = self._waiters.get(reference, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[reference] -= 1
            if self._waiters[reference] == 0:
                del self._waiters[reference]
                del self._locks[reference]

    @property
    def strict(self) -> bool:
        return self.settings.approval_email_mode != "deferred"

    # ----------------------------
    # creation
    # ----------------------------
    async def initiate_bank_transfer(
        self,
        *,
        ticket_type: Any,
        quantity: Any,
        full_name: str,
        email: str,
        phone: str,
    ) -> TicketSale:
        if ticket_type in (None, "") or quantity in (None, ""):
            raise ValidationError("All fields are required")
        customer = _customer(full_name, email, phone)
        tt = _parse_ticket_type(ticket_type)
        qty = _parse_quantity(quantity)
        sale = await self.store.create(
            customer,
            TicketInfo.for_tier(tt, qty),
            PaymentMethod.BANK_TRANSFER,
            status=PaymentStatus.PENDING_TRANSFER,
            now=self.clock(),
            currency=self.settings.currency,
        )
        logger.info(
            "bank transfer %s created: %d x %s = %d",
            sale.reference, qty, tt.value, sale.ticket.total_amount,
        )
        return sale

    async def availability(self) -> Dict[TicketType, Dict[str, int]]:
        sold = await self.store.sold_counts()
        out = {}
        for tt, tier in TICKET_TIERS.items():
            out[tt] = {
                "sold": sold.get(tt, 0),
                "available": max(0, tier.capacity - sold.get(tt, 0)),
            }
        return out

    async def purchase(
        self,
        *,
        ticket_type: Any,
        quantity: Any,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        gateway: str,
        reference: str,
    ) -> TicketSale:
        method = GATEWAY_METHODS.get((gateway or "").lower())
        if method is None:
            raise ValidationError("Unsupported payment gateway")
        if not (reference or "").strip():
            raise ValidationError("Payment reference is required")
        customer = _customer(f"{first_name} {last_name}", email, phone)
        customer.first_name = first_name.strip()
        customer.last_name = (last_name or "").strip()
        tt = _parse_ticket_type(ticket_type)
        qty = _parse_quantity(quantity)

        tier = TICKET_TIERS[tt]
        if qty > tier.max_per_purchase:
            raise ValidationError(
                f"Maximum {tier.max_per_purchase} tickets per purchase "
                f"for {tier.name}"
            )
        left = (await self.availability())[tt]["available"]
        if qty > left:
            raise ValidationError(f"Only {left} {tier.name} tickets remaining")

        sale = await self.store.create(
            customer,
            TicketInfo.for_tier(tt, qty),
            method,
            status=PaymentStatus.PENDING,
            now=self.clock(),
            reference=reference.strip(),
            per_unit_tickets=True,
            currency=self.settings.currency,
        )
        logger.info("gateway purchase %s created via %s", sale.reference, gateway)
        return sale

    # ----------------------------
    # customer click
    # ----------------------------
    async def mark_transfer_completed(
        self, reference: str, client_ip: str
    ) -> TicketSale:
        if not (reference or "").strip():
            raise ValidationError("Payment reference is required")
        async with self._locked(reference):
            sale = await self.store.find_by_reference(reference)
            now = self.clock()
            # the limiter runs first so a repeat click is reported as a
            # rate limit, not as an already processed sale
            await self.limiter.check(sale, client_ip, now)
            if sale.payment.status is not PaymentStatus.PENDING_TRANSFER:
                raise AlreadyProcessed(reference, sale.payment.status.value)
            if not await self.store.mark_transfer_completed(
                reference, client_ip, now
            ):
                current = await self.store.find_by_reference(reference)
                raise AlreadyProcessed(reference, current.payment.status.value)
            sale = await self.store.find_by_reference(reference)

        logger.info("transfer marked completed for %s from %s", reference, client_ip)
        self.notifier.enqueue(JobType.TRANSFER_COMPLETED, sale.to_dict())
        self.notifier.notify_best_effort(approval_needed_message(sale))
        return sale

    # ----------------------------
    # admin decisions
    # ----------------------------
    async def _issue_tickets(self, sale: TicketSale, now: float) -> None:
        event = self.settings.event
        if sale.tickets:
            for t in sale.tickets:
                t.qr_code = await self.render_qr(qr_payload(
                    sale, t.ticket_id, event, now, t.standard_ticket_id
                ))
            sale.qr_code = sale.tickets[0].qr_code
        else:
            sale.qr_code = await self.render_qr(
                qr_payload(sale, sale.ticket_id, event, now)
            )

    async def _commit(self, sale: TicketSale, expected: PaymentStatus) -> None:
        if not await self.store.save(sale, expected):
            current = await self.store.find_by_reference(sale.reference)
            raise AlreadyProcessed(sale.reference, current.payment.status.value)

    async def approve(
        self, reference: str, approver: str, *, legacy: bool = False
    ) -> TicketSale:
        async with self._locked(reference):
            sale = await self.store.find_by_reference(reference)
            status = sale.payment.status
            if status is PaymentStatus.COMPLETED:
                raise AlreadyApproved(reference)
            allowed = (
                status in LEGACY_APPROVABLE if legacy
                else status is PaymentStatus.PENDING_APPROVAL
            )
            if not allowed:
                raise AlreadyProcessed(reference, status.value)

            now = self.clock()
            updated = sale.copy()
            await self._issue_tickets(updated, now)
            updated.move_to(PaymentStatus.COMPLETED, legacy=legacy)
            updated.payment.paid_at = now
            updated.payment.approved_by = approver
            updated.updated_at = now

            if self.strict:
                await self.notifier.deliver_or_fail(
                    JobType.TICKET_EMAIL, updated.to_dict()
                )
                updated.email_sent = True
                updated.email_sent_at = now
                await self._commit(updated, status)
            else:
                await self._commit(updated, status)
                self.notifier.enqueue(
                    JobType.TICKET_EMAIL, updated.to_dict(),
                    priority=Priority.HIGH,
                )

        logger.info("payment %s approved by %s (%s)", reference, approver,
                    "legacy" if legacy else "strict")
        return updated

    async def reject(
        self, reference: str, approver: str, reason: Optional[str] = None
    ) -> TicketSale:
        async with self._locked(reference):
            sale = await self.store.find_by_reference(reference)
            status = sale.payment.status
            if status is PaymentStatus.COMPLETED:
                raise AlreadyApproved(
                    reference, "Cannot reject an approved transaction"
                )
            if status is not PaymentStatus.PENDING_APPROVAL:
                raise AlreadyProcessed(reference, status.value)

            now = self.clock()
            updated = sale.copy()
            updated.move_to(PaymentStatus.REJECTED)
            updated.payment.rejected_at = now
            updated.payment.rejected_by = approver
            updated.payment.rejection_reason = reason
            updated.updated_at = now

            if self.strict:
                await self.notifier.deliver_or_fail(
                    JobType.PAYMENT_REJECTION, updated.to_dict(), reason=reason
                )
                await self._commit(updated, status)
            else:
                await self._commit(updated, status)
                self.notifier.enqueue(
                    JobType.PAYMENT_REJECTION, updated.to_dict(),
                    priority=Priority.HIGH, reason=reason,
                )

        logger.info("payment %s rejected by %s: %s", reference, approver, reason)
        return updated

    async def refund(
        self, reference: str, admin: str, note: Optional[str] = None
    ) -> TicketSale:
        async with self._locked(reference):
            sale = await self.store.find_by_reference(reference)
            status = sale.payment.status
            if status is not PaymentStatus.COMPLETED:
                raise Conflict("Only completed payments can be refunded")
            now = self.clock()
            updated = sale.copy()
            updated.move_to(PaymentStatus.REFUNDED)
            updated.payment.refunded_at = now
            updated.admin_notes = note or f"refunded by {admin}"
            updated.updated_at = now
            await self._commit(updated, status)
        logger.info("payment %s refunded by %s", reference, admin)
        return updated

    # ----------------------------
    # gateway webhooks
    # ----------------------------
    async def handle_webhook(
        self, adapter: GatewayAdapter, payload: bytes, headers: dict
    ) -> Dict[str, Any]:
        event = adapter.verify_webhook(payload, headers)
        kind = adapter.event_kind(event)
        reference, reason = adapter.event_ids(event)
        if kind == "ignored":
            return {"processed": False, "reason": "event ignored"}
        if not reference:
            raise ValidationError("missing payment reference")

        async with self._locked(reference):
            sale = await self.store.find_by_reference(reference)
            status = sale.payment.status
            if kind == "succeeded" and status is PaymentStatus.COMPLETED:
                return {"processed": False, "idempotent": True,
                        "status": status.value}
            if status is not PaymentStatus.PENDING:
                logger.info(
                    "%s %s webhook for %s in state %s ignored",
                    adapter.name, kind, reference, status.value,
                )
                return {"processed": False, "idempotent": True,
                        "status": status.value}

            now = self.clock()
            updated = sale.copy()
            if kind == "succeeded":
                await self._issue_tickets(updated, now)
                updated.move_to(PaymentStatus.COMPLETED)
                updated.payment.paid_at = now
            else:
                updated.move_to(PaymentStatus.FAILED)
                updated.payment.failed_at = now
                updated.payment.failure_reason = reason
            updated.updated_at = now
            await self._commit(updated, status)

        logger.info("%s webhook: %s -> %s", adapter.name, reference,
                    updated.payment.status.value)
        if kind == "succeeded":
            self.notifier.enqueue(JobType.TICKET_EMAIL, updated.to_dict())
        return {"processed": True, "status": updated.payment.status.value}
