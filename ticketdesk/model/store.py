from __future__ import annotations
import logging
import random
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import DuplicateReference, GenerationExhausted, NotFound
from ..infra.sql import Gated
from .orm import SaleRow, TicketRow
from .sale import (
    CustomerInfo,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    Ticket,
    TicketInfo,
    TicketSale,
    TicketType,
    generate_reference,
    generate_ticket_id,
    sale_status_for,
)

logger = logging.getLogger(__name__)

MAX_GENERATION_ATTEMPTS = 5

SORTABLE = {
    "createdAt": SaleRow.created_at,
    "updatedAt": SaleRow.updated_at,
    "paidAt": SaleRow.paid_at,
    "amount": SaleRow.amount,
    "reference": SaleRow.reference,
}


# ----------------------------
# row <-> domain
# ----------------------------
def _to_domain(row: SaleRow) -> TicketSale:
    return TicketSale(
        id=row.id,
        customer=CustomerInfo(
            first_name=row.first_name,
            last_name=row.last_name or "",
            email=row.email,
            phone=row.phone or "",
        ),
        ticket=TicketInfo(
            type_id=TicketType(row.ticket_type),
            type_name=row.ticket_type_name,
            quantity=row.quantity,
            unit_price=row.unit_price,
            total_amount=row.total_amount,
        ),
        payment=PaymentInfo(
            method=PaymentMethod(row.payment_method),
            status=PaymentStatus(row.payment_status),
            reference=row.reference,
            amount=row.amount,
            currency=row.currency,
            paid_at=row.paid_at,
            transfer_marked_at=row.transfer_marked_at,
            transfer_clicked_at=row.transfer_clicked_at,
            transfer_click_count=row.transfer_click_count or 0,
            user_ip_address=row.user_ip_address,
            last_reminder_sent=row.last_reminder_sent,
            approved_by=row.approved_by,
            rejected_at=row.rejected_at,
            rejected_by=row.rejected_by,
            rejection_reason=row.rejection_reason,
            failed_at=row.failed_at,
            failure_reason=row.failure_reason,
            refunded_at=row.refunded_at,
        ),
        ticket_id=row.ticket_id,
        qr_code=row.qr_code,
        status=sale_status_for(PaymentStatus(row.payment_status)),
        tickets=[
            Ticket(
                ticket_id=t.ticket_id,
                standard_ticket_id=t.standard_ticket_id,
                generated_at=t.generated_at,
                qr_code=t.qr_code,
                is_used=bool(t.is_used),
                used_at=t.used_at,
                verified_by=t.verified_by,
            )
            for t in row.tickets
        ],
        is_used=bool(row.is_used),
        used_at=row.used_at,
        verified_by=row.verified_by,
        email_sent=bool(row.email_sent),
        email_sent_at=row.email_sent_at,
        admin_notes=row.admin_notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _mutable_columns(sale: TicketSale) -> Dict[str, Any]:
    # everything a transition may touch; customer/ticket info never changes
    p = sale.payment
    return {
        "payment_status": p.status.value,
        "status": sale.status.value,
        "paid_at": p.paid_at,
        "transfer_marked_at": p.transfer_marked_at,
        "transfer_clicked_at": p.transfer_clicked_at,
        "user_ip_address": p.user_ip_address,
        "last_reminder_sent": p.last_reminder_sent,
        "approved_by": p.approved_by,
        "rejected_at": p.rejected_at,
        "rejected_by": p.rejected_by,
        "rejection_reason": p.rejection_reason,
        "failed_at": p.failed_at,
        "failure_reason": p.failure_reason,
        "refunded_at": p.refunded_at,
        "qr_code": sale.qr_code,
        "email_sent": sale.email_sent,
        "email_sent_at": sale.email_sent_at,
        "admin_notes": sale.admin_notes,
        "updated_at": sale.updated_at,
    }


def _new_row(sale: TicketSale) -> SaleRow:
    p = sale.payment
    row = SaleRow(
        id=sale.id,
        reference=p.reference,
        ticket_id=sale.ticket_id,
        first_name=sale.customer.first_name,
        last_name=sale.customer.last_name,
        email=sale.customer.email,
        phone=sale.customer.phone,
        ticket_type=sale.ticket.type_id.value,
        ticket_type_name=sale.ticket.type_name,
        quantity=sale.ticket.quantity,
        unit_price=sale.ticket.unit_price,
        total_amount=sale.ticket.total_amount,
        payment_method=p.method.value,
        amount=p.amount,
        currency=p.currency,
        transfer_click_count=0,
        is_used=False,
        created_at=sale.created_at,
        **_mutable_columns(sale),
    )
    row.tickets = [
        TicketRow(
            ticket_id=t.ticket_id,
            position=i,
            standard_ticket_id=t.standard_ticket_id,
            generated_at=t.generated_at,
            qr_code=t.qr_code,
            is_used=False,
        )
        for i, t in enumerate(sale.tickets)
    ]
    return row


def _admission_ids(sale: TicketSale) -> List[str]:
    if sale.tickets:
        return [t.ticket_id for t in sale.tickets]
    return [sale.ticket_id]


async def _admission_ids_taken(s: AsyncSession, ids: List[str]) -> bool:
    # sale-level ids and per-unit ids share one namespace at the gate
    found = await s.scalar(
        select(SaleRow.id).where(SaleRow.ticket_id.in_(ids)).limit(1)
    )
    if found is not None:
        return True
    found = await s.scalar(
        select(TicketRow.ticket_id).where(TicketRow.ticket_id.in_(ids)).limit(1)
    )
    return found is not None


class SaleStore:
    """
    Persistence for TicketSale aggregates.

    Every write is a single statement or a single transaction under the DB
    gate. Status changes are compare-and-swap on `payment_status`, so two
    concurrent writers on the same reference never both succeed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gated: Gated,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.sessions = session_factory
        self.gated = gated
        self.rng = rng or random.Random()

    # ----------------------------
    # create
    # ----------------------------
    async def create(
        self,
        customer: CustomerInfo,
        ticket: TicketInfo,
        method: PaymentMethod,
        *,
        status: PaymentStatus,
        now: float,
        reference: Optional[str] = None,
        per_unit_tickets: bool = False,
        currency: str = "NGN",
    ) -> TicketSale:
        """
        Persist a new sale with a freshly generated, unique reference.

        When `reference` is supplied (gateway flow) it is used as-is and a
        collision raises DuplicateReference instead of regenerating.
        Admission ids (the reference of a bank transfer, each per-unit ticket
        id of a gateway sale) must be free in both the sale and ticket
        tables; a taken id is regenerated like a taken reference.
        """
        for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
            ref = reference or generate_reference(customer.first_name, self.rng)
            if reference is None and await self._reference_taken(ref):
                logger.info("reference %s taken, regenerating", ref)
                continue

            sale = self._build(
                customer, ticket, method, status, ref, now,
                per_unit_tickets=per_unit_tickets,
                currency=currency,
            )
            clash = False
            try:
                async with self.gated():
                    async with self.sessions() as s:
                        async with s.begin():
                            clash = await _admission_ids_taken(
                                s, _admission_ids(sale)
                            )
                            if not clash:
                                s.add(_new_row(sale))
            except IntegrityError:
                if reference is not None:
                    if await self._reference_taken(reference):
                        raise DuplicateReference(reference)
                # lost a race on reference or a ticket id: regenerate
                logger.info(
                    "unique collision creating sale (attempt %d)", attempt
                )
                continue
            if clash:
                if reference is not None and not per_unit_tickets:
                    # the supplied reference is also the admission id
                    raise DuplicateReference(reference)
                logger.info(
                    "ticket id already admits another sale (attempt %d), "
                    "regenerating", attempt,
                )
                continue
            return sale

        raise GenerationExhausted(MAX_GENERATION_ATTEMPTS)

    def _build(
        self,
        customer: CustomerInfo,
        ticket: TicketInfo,
        method: PaymentMethod,
        status: PaymentStatus,
        reference: str,
        now: float,
        *,
        per_unit_tickets: bool,
        currency: str,
    ) -> TicketSale:
        tickets: List[Ticket] = []
        if per_unit_tickets:
            seen = set()
            while len(tickets) < ticket.quantity:
                tid = generate_ticket_id(customer.first_name, self.rng)
                if tid in seen:
                    continue
                seen.add(tid)
                tickets.append(Ticket(
                    ticket_id=tid,
                    standard_ticket_id=str(uuid.uuid4()),
                    generated_at=now,
                ))
            sale_ticket_id = tickets[0].ticket_id
        else:
            # bank transfers are admitted by their reference
            sale_ticket_id = reference

        return TicketSale(
            id=uuid.uuid4().hex,
            customer=customer,
            ticket=ticket,
            payment=PaymentInfo(
                method=method,
                status=status,
                reference=reference,
                amount=ticket.total_amount,
                currency=currency,
            ),
            ticket_id=sale_ticket_id,
            created_at=now,
            updated_at=now,
            status=sale_status_for(status),
            tickets=tickets,
        )

    async def _reference_taken(self, reference: str) -> bool:
        async with self.gated():
            async with self.sessions() as s:
                found = await s.scalar(
                    select(SaleRow.id).where(SaleRow.reference == reference)
                )
        return found is not None

    # ----------------------------
    # reads
    # ----------------------------
    async def find_by_reference(self, reference: str) -> TicketSale:
        async with self.gated():
            async with self.sessions() as s:
                row = await s.scalar(
                    select(SaleRow).where(SaleRow.reference == reference)
                )
                if row is None:
                    raise NotFound("Payment reference not found")
                return _to_domain(row)

    async def find_by_ticket_id(
        self, ticket_id: str
    ) -> Tuple[TicketSale, Optional[Ticket]]:
        """
        Locate the sale admitting `ticket_id`.

        Returns the sale plus the matching per-unit ticket, or None for the
        ticket when the id matched the sale-level id of a sale without
        per-unit tickets.
        """
        async with self.gated():
            async with self.sessions() as s:
                trow = await s.get(TicketRow, ticket_id)
                if trow is not None:
                    sale_row = await s.get(SaleRow, trow.sale_id)
                    sale = _to_domain(sale_row)
                    for t in sale.tickets:
                        if t.ticket_id == ticket_id:
                            return sale, t
                row = await s.scalar(
                    select(SaleRow).where(SaleRow.ticket_id == ticket_id)
                )
                if row is None or row.tickets:
                    raise NotFound("Ticket not found")
                return _to_domain(row), None

    # ----------------------------
    # writes
    # ----------------------------
    async def save(self, sale: TicketSale, expected: PaymentStatus) -> bool:
        """
        Persist the mutable fields of `sale` iff the stored payment status is
        still `expected`. Per-unit ticket QR codes are written in the same
        transaction.
        """
        async with self.gated():
            async with self.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        update(SaleRow)
                        .where(SaleRow.reference == sale.reference)
                        .where(SaleRow.payment_status == expected.value)
                        .values(**_mutable_columns(sale))
                    )
                    if res.rowcount != 1:
                        return False
                    for t in sale.tickets:
                        await s.execute(
                            update(TicketRow)
                            .where(TicketRow.ticket_id == t.ticket_id)
                            .values(qr_code=t.qr_code)
                        )
        return True

    async def mark_transfer_completed(
        self, reference: str, ip: str, now: float
    ) -> bool:
        # single conditional UPDATE: the click counter is incremented in SQL,
        # never read-modify-written in Python
        async with self.gated():
            async with self.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        update(SaleRow)
                        .where(SaleRow.reference == reference)
                        .where(
                            SaleRow.payment_status
                            == PaymentStatus.PENDING_TRANSFER.value
                        )
                        .values(
                            payment_status=PaymentStatus.PENDING_APPROVAL.value,
                            status=sale_status_for(
                                PaymentStatus.PENDING_APPROVAL
                            ).value,
                            transfer_marked_at=now,
                            transfer_clicked_at=now,
                            transfer_click_count=(
                                SaleRow.transfer_click_count + 1
                            ),
                            user_ip_address=ip,
                            updated_at=now,
                        )
                    )
        return res.rowcount == 1

    async def claim_ticket(
        self, ticket_id: str, verifier: str, now: float
    ) -> bool:
        async with self.gated():
            async with self.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        update(TicketRow)
                        .where(TicketRow.ticket_id == ticket_id)
                        .where(TicketRow.is_used.is_(False))
                        .values(is_used=True, used_at=now, verified_by=verifier)
                    )
        return res.rowcount == 1

    async def claim_sale(self, sale_id: str, verifier: str, now: float) -> bool:
        async with self.gated():
            async with self.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        update(SaleRow)
                        .where(SaleRow.id == sale_id)
                        .where(SaleRow.is_used.is_(False))
                        .values(
                            is_used=True,
                            used_at=now,
                            verified_by=verifier,
                            updated_at=now,
                        )
                    )
        return res.rowcount == 1

    async def set_last_reminder(self, reference: str, ts: float) -> None:
        async with self.gated():
            async with self.sessions() as s:
                async with s.begin():
                    await s.execute(
                        update(SaleRow)
                        .where(SaleRow.reference == reference)
                        .values(last_reminder_sent=ts)
                    )

    # ----------------------------
    # queries
    # ----------------------------
    async def latest_transfer_click(
        self,
        ip: str,
        ticket_type: TicketType,
        since: float,
        exclude_reference: str,
    ) -> Optional[float]:
        async with self.gated():
            async with self.sessions() as s:
                return await s.scalar(
                    select(func.max(SaleRow.transfer_clicked_at))
                    .where(SaleRow.user_ip_address == ip)
                    .where(SaleRow.ticket_type == ticket_type.value)
                    .where(SaleRow.transfer_clicked_at >= since)
                    .where(SaleRow.reference != exclude_reference)
                )

    async def list_due_reminders(
        self, marked_before: float, reminded_before: float
    ) -> List[TicketSale]:
        async with self.gated():
            async with self.sessions() as s:
                rows = (await s.scalars(
                    select(SaleRow)
                    .where(
                        SaleRow.payment_status
                        == PaymentStatus.PENDING_APPROVAL.value
                    )
                    .where(SaleRow.transfer_marked_at <= marked_before)
                    .where(or_(
                        SaleRow.last_reminder_sent.is_(None),
                        SaleRow.last_reminder_sent <= reminded_before,
                    ))
                    .order_by(SaleRow.transfer_marked_at)
                )).all()
                return [_to_domain(r) for r in rows]

    async def list_pending_approval(self, limit: int = 200) -> List[TicketSale]:
        async with self.gated():
            async with self.sessions() as s:
                rows = (await s.scalars(
                    select(SaleRow)
                    .where(
                        SaleRow.payment_status
                        == PaymentStatus.PENDING_APPROVAL.value
                    )
                    .order_by(SaleRow.transfer_marked_at.desc())
                    .limit(limit)
                )).all()
                return [_to_domain(r) for r in rows]

    async def list_sales(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        ticket_type: Optional[str] = None,
        search: Optional[str] = None,
        date_from: Optional[float] = None,
        date_to: Optional[float] = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Tuple[int, List[TicketSale]]:
        conds = []
        if status and status != "all":
            conds.append(SaleRow.payment_status == status)
        if ticket_type and ticket_type != "all":
            conds.append(SaleRow.ticket_type == ticket_type)
        if search:
            like = f"%{search.strip().lower()}%"
            conds.append(or_(
                func.lower(SaleRow.first_name).like(like),
                func.lower(SaleRow.last_name).like(like),
                func.lower(SaleRow.email).like(like),
                func.lower(SaleRow.reference).like(like),
            ))
        if date_from is not None:
            conds.append(SaleRow.created_at >= date_from)
        if date_to is not None:
            conds.append(SaleRow.created_at <= date_to)

        col = SORTABLE.get(sort_by, SaleRow.created_at)
        order = col.asc() if sort_order == "asc" else col.desc()
        page = max(1, page)
        limit = max(1, min(limit, 200))

        async with self.gated():
            async with self.sessions() as s:
                total = await s.scalar(
                    select(func.count()).select_from(SaleRow).where(*conds)
                )
                rows = (await s.scalars(
                    select(SaleRow)
                    .where(*conds)
                    .order_by(order)
                    .offset((page - 1) * limit)
                    .limit(limit)
                )).all()
                return int(total or 0), [_to_domain(r) for r in rows]

    async def list_verifications(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.sessions() as s:
                unit = (await s.execute(
                    select(TicketRow, SaleRow)
                    .join(SaleRow, TicketRow.sale_id == SaleRow.id)
                    .where(TicketRow.is_used.is_(True))
                    .order_by(TicketRow.used_at.desc())
                    .limit(limit)
                )).all()
                whole = (await s.scalars(
                    select(SaleRow)
                    .where(SaleRow.is_used.is_(True))
                    .order_by(SaleRow.used_at.desc())
                    .limit(limit)
                )).all()

        items = [
            {
                "ticketId": t.ticket_id,
                "reference": sale.reference,
                "customerName": f"{sale.first_name} {sale.last_name}".strip(),
                "ticketType": sale.ticket_type,
                "usedAt": t.used_at,
                "verifiedBy": t.verified_by,
            }
            for t, sale in unit
        ]
        items.extend(
            {
                "ticketId": sale.ticket_id,
                "reference": sale.reference,
                "customerName": f"{sale.first_name} {sale.last_name}".strip(),
                "ticketType": sale.ticket_type,
                "usedAt": sale.used_at,
                "verifiedBy": sale.verified_by,
            }
            for sale in whole
        )
        items.sort(key=lambda x: x["usedAt"] or 0.0, reverse=True)
        return items[:limit]

    async def sold_counts(self) -> Dict[TicketType, int]:
        async with self.gated():
            async with self.sessions() as s:
                rows = (await s.execute(
                    select(SaleRow.ticket_type, func.sum(SaleRow.quantity))
                    .where(
                        SaleRow.payment_status
                        == PaymentStatus.COMPLETED.value
                    )
                    .group_by(SaleRow.ticket_type)
                )).all()
        sold = {t: 0 for t in TicketType}
        for ticket_type, qty in rows:
            sold[TicketType(ticket_type)] = int(qty or 0)
        return sold

    async def dashboard(self, now: float) -> Dict[str, Any]:
        async with self.gated():
            async with self.sessions() as s:
                completed = (await s.execute(
                    select(
                        SaleRow.ticket_type,
                        SaleRow.payment_method,
                        SaleRow.quantity,
                        SaleRow.amount,
                        SaleRow.paid_at,
                    ).where(
                        SaleRow.payment_status
                        == PaymentStatus.COMPLETED.value
                    )
                )).all()
                by_status = (await s.execute(
                    select(SaleRow.payment_status, func.count())
                    .group_by(SaleRow.payment_status)
                )).all()

        today = datetime.fromtimestamp(now, tz=timezone.utc).date()
        trend_start = today - timedelta(days=6)

        overview = {"totalSales": 0, "totalRevenue": 0, "totalTickets": 0}
        today_stats = {"sales": 0, "revenue": 0, "tickets": 0}
        types: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"count": 0, "quantity": 0, "revenue": 0}
        )
        methods: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"count": 0, "revenue": 0}
        )
        trend: Dict[str, Dict[str, int]] = {
            (trend_start + timedelta(days=i)).isoformat(): {
                "dailySales": 0, "dailyRevenue": 0
            }
            for i in range(7)
        }

        for ticket_type, method, qty, amount, paid_at in completed:
            overview["totalSales"] += 1
            overview["totalRevenue"] += amount
            overview["totalTickets"] += qty
            types[ticket_type]["count"] += 1
            types[ticket_type]["quantity"] += qty
            types[ticket_type]["revenue"] += amount
            methods[method]["count"] += 1
            methods[method]["revenue"] += amount
            if paid_at is None:
                continue
            day = datetime.fromtimestamp(paid_at, tz=timezone.utc).date()
            if day == today:
                today_stats["sales"] += 1
                today_stats["revenue"] += amount
                today_stats["tickets"] += qty
            key = day.isoformat()
            if key in trend:
                trend[key]["dailySales"] += 1
                trend[key]["dailyRevenue"] += amount

        return {
            "overview": overview,
            "today": today_stats,
            "ticketTypes": [{"type": k, **v} for k, v in sorted(types.items())],
            "salesTrend": [{"date": k, **v} for k, v in trend.items()],
            "paymentMethods": [
                {"method": k, **v} for k, v in sorted(methods.items())
            ],
            "paymentStatuses": {status: int(n) for status, n in by_status},
        }
