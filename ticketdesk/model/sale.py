"""
TicketSale aggregate and the payment-status state machine.

Payment statuses form a closed enum; every move between them goes through
`assert_transition`, and the coarse sale status is always derived from the
payment status via `sale_status_for`, never set independently.

    pending ──────────────► completed ──► refunded
       │  └───────────────► failed
       ▼
    pending_transfer ─► pending_approval ─► completed | rejected
"""
from __future__ import annotations
import copy
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


class TicketType(str, Enum):
    REGULAR = "regular"
    STUDENT = "student"
    VIP_SINGLE = "vip-single"
    VIP_COUPLE = "vip-couple"
    TABLE = "table"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYSTACK = "paystack"
    OPAY = "opay"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PENDING_TRANSFER = "pending_transfer"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class SaleStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TicketTier:
    type: TicketType
    name: str
    price: int          # NGN
    capacity: int
    max_per_purchase: int


TICKET_TIERS: Dict[TicketType, TicketTier] = {
    TicketType.REGULAR: TicketTier(TicketType.REGULAR, "Regular Ticket", 5000, 150, 5),
    TicketType.STUDENT: TicketTier(TicketType.STUDENT, "Student Ticket", 2000, 50, 2),
    TicketType.VIP_SINGLE: TicketTier(TicketType.VIP_SINGLE, "VIP Single", 25000, 30, 2),
    TicketType.VIP_COUPLE: TicketTier(TicketType.VIP_COUPLE, "VIP Couple", 50000, 20, 1),
    TicketType.TABLE: TicketTier(TicketType.TABLE, "Table Booking", 200000, 10, 1),
}


# ----------------------------
# State machine
# ----------------------------
class InvalidTransition(Exception):
    def __init__(self, old: PaymentStatus, new: PaymentStatus) -> None:
        super().__init__(f"Illegal payment transition: {old.value} -> {new.value}")
        self.old = old
        self.new = new


ALLOWED: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.COMPLETED, PaymentStatus.FAILED,
    }),
    PaymentStatus.PENDING_TRANSFER: frozenset({PaymentStatus.PENDING_APPROVAL}),
    PaymentStatus.PENDING_APPROVAL: frozenset({
        PaymentStatus.COMPLETED, PaymentStatus.REJECTED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REJECTED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# legacy direct approval: any state that has not been paid out yet
LEGACY_APPROVABLE: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.PENDING_TRANSFER,
    PaymentStatus.PENDING_APPROVAL,
    PaymentStatus.FAILED,
    PaymentStatus.REJECTED,
})

_SALE_STATUS: Dict[PaymentStatus, SaleStatus] = {
    PaymentStatus.PENDING: SaleStatus.PENDING_PAYMENT,
    PaymentStatus.PENDING_TRANSFER: SaleStatus.PENDING_PAYMENT,
    PaymentStatus.PENDING_APPROVAL: SaleStatus.PENDING_PAYMENT,
    PaymentStatus.COMPLETED: SaleStatus.CONFIRMED,
    PaymentStatus.FAILED: SaleStatus.CANCELLED,
    PaymentStatus.REJECTED: SaleStatus.REJECTED,
    PaymentStatus.REFUNDED: SaleStatus.CANCELLED,
}

# both tables must cover every status; a new member without an entry fails
# at import time instead of silently falling through
assert set(ALLOWED) == set(PaymentStatus)
assert set(_SALE_STATUS) == set(PaymentStatus)


def assert_transition(
    old: PaymentStatus, new: PaymentStatus, *, legacy: bool = False
) -> None:
    if legacy and new is PaymentStatus.COMPLETED and old in LEGACY_APPROVABLE:
        return
    if new not in ALLOWED[old]:
        raise InvalidTransition(old, new)


def sale_status_for(status: PaymentStatus) -> SaleStatus:
    return _SALE_STATUS[status]


# ----------------------------
# Reference / ticket id generation
# ----------------------------
def _name_stem(first_name: str) -> str:
    stem = "".join(ch for ch in first_name.upper() if ch.isalnum())
    return stem or "GUEST"


def generate_reference(first_name: str, rng: random.Random | None = None) -> str:
    # digits 1-9 only: a "0" is too easily read as "O" on a bank slip
    r = rng or random
    digits = "".join(str(r.randint(1, 9)) for _ in range(4))
    return f"{_name_stem(first_name)}{digits}"


def generate_ticket_id(first_name: str, rng: random.Random | None = None) -> str:
    r = rng or random
    return f"{_name_stem(first_name)}{r.randint(1000, 9999)}"


# ----------------------------
# Aggregate
# ----------------------------
@dataclass
class CustomerInfo:
    first_name: str
    last_name: str
    email: str
    phone: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_full_name(cls, full_name: str, email: str, phone: str) -> "CustomerInfo":
        parts = full_name.strip().split()
        return cls(
            first_name=parts[0] if parts else "",
            last_name=" ".join(parts[1:]),
            email=email.strip().lower(),
            phone=phone.strip(),
        )


@dataclass
class TicketInfo:
    type_id: TicketType
    type_name: str
    quantity: int
    unit_price: int
    total_amount: int

    @classmethod
    def for_tier(cls, ticket_type: TicketType, quantity: int) -> "TicketInfo":
        tier = TICKET_TIERS[ticket_type]
        return cls(
            type_id=ticket_type,
            type_name=tier.name,
            quantity=quantity,
            unit_price=tier.price,
            total_amount=tier.price * quantity,
        )


@dataclass
class PaymentInfo:
    method: PaymentMethod
    status: PaymentStatus
    reference: str
    amount: int
    currency: str = "NGN"
    paid_at: Optional[float] = None
    transfer_marked_at: Optional[float] = None
    transfer_clicked_at: Optional[float] = None
    transfer_click_count: int = 0
    user_ip_address: Optional[str] = None
    last_reminder_sent: Optional[float] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[float] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    failed_at: Optional[float] = None
    failure_reason: Optional[str] = None
    refunded_at: Optional[float] = None


@dataclass
class Ticket:
    ticket_id: str
    standard_ticket_id: str
    generated_at: float
    qr_code: Optional[str] = None
    is_used: bool = False
    used_at: Optional[float] = None
    verified_by: Optional[str] = None


@dataclass
class TicketSale:
    id: str
    customer: CustomerInfo
    ticket: TicketInfo
    payment: PaymentInfo
    ticket_id: str
    created_at: float
    updated_at: float
    qr_code: Optional[str] = None
    status: SaleStatus = SaleStatus.PENDING_PAYMENT
    tickets: List[Ticket] = field(default_factory=list)
    # sale-level admission state, used when there is no per-ticket list
    is_used: bool = False
    used_at: Optional[float] = None
    verified_by: Optional[str] = None
    email_sent: bool = False
    email_sent_at: Optional[float] = None
    admin_notes: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.payment.reference

    def copy(self) -> "TicketSale":
        return copy.deepcopy(self)

    def move_to(
        self, new: PaymentStatus, *, legacy: bool = False
    ) -> PaymentStatus:
        """Apply a payment transition in memory; returns the old status."""
        old = self.payment.status
        assert_transition(old, new, legacy=legacy)
        self.payment.status = new
        self.status = sale_status_for(new)
        return old

    # ----------------------------
    # (de)serialisation for API responses and job payloads
    # ----------------------------
    def to_dict(self) -> Dict[str, Any]:
        p = self.payment
        return {
            "id": self.id,
            "reference": self.reference,
            "customerInfo": {
                "firstName": self.customer.first_name,
                "lastName": self.customer.last_name,
                "fullName": self.customer.full_name,
                "email": self.customer.email,
                "phone": self.customer.phone,
            },
            "ticketInfo": {
                "typeId": self.ticket.type_id.value,
                "typeName": self.ticket.type_name,
                "quantity": self.ticket.quantity,
                "unitPrice": self.ticket.unit_price,
                "totalAmount": self.ticket.total_amount,
            },
            "paymentInfo": {
                "method": p.method.value,
                "status": p.status.value,
                "reference": p.reference,
                "amount": p.amount,
                "currency": p.currency,
                "paidAt": p.paid_at,
                "transferMarkedAt": p.transfer_marked_at,
                "transferClickedAt": p.transfer_clicked_at,
                "transferClickCount": p.transfer_click_count,
                "userIpAddress": p.user_ip_address,
                "lastReminderSent": p.last_reminder_sent,
                "approvedBy": p.approved_by,
                "rejectedAt": p.rejected_at,
                "rejectedBy": p.rejected_by,
                "rejectionReason": p.rejection_reason,
                "failedAt": p.failed_at,
                "failureReason": p.failure_reason,
                "refundedAt": p.refunded_at,
            },
            "ticketId": self.ticket_id,
            "qrCode": self.qr_code,
            "status": self.status.value,
            "tickets": [
                {
                    "ticketId": t.ticket_id,
                    "standardTicketId": t.standard_ticket_id,
                    "generatedAt": t.generated_at,
                    "qrCode": t.qr_code,
                    "isUsed": t.is_used,
                    "usedAt": t.used_at,
                    "verifiedBy": t.verified_by,
                }
                for t in self.tickets
            ],
            "isUsed": self.is_used,
            "usedAt": self.used_at,
            "verifiedBy": self.verified_by,
            "emailSent": self.email_sent,
            "emailSentAt": self.email_sent_at,
            "adminNotes": self.admin_notes,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TicketSale":
        c = d["customerInfo"]
        t = d["ticketInfo"]
        p = d["paymentInfo"]
        return cls(
            id=d["id"],
            customer=CustomerInfo(
                first_name=c["firstName"],
                last_name=c.get("lastName", ""),
                email=c["email"],
                phone=c.get("phone", ""),
            ),
            ticket=TicketInfo(
                type_id=TicketType(t["typeId"]),
                type_name=t["typeName"],
                quantity=int(t["quantity"]),
                unit_price=int(t["unitPrice"]),
                total_amount=int(t["totalAmount"]),
            ),
            payment=PaymentInfo(
                method=PaymentMethod(p["method"]),
                status=PaymentStatus(p["status"]),
                reference=p["reference"],
                amount=int(p["amount"]),
                currency=p.get("currency", "NGN"),
                paid_at=p.get("paidAt"),
                transfer_marked_at=p.get("transferMarkedAt"),
                transfer_clicked_at=p.get("transferClickedAt"),
                transfer_click_count=int(p.get("transferClickCount") or 0),
                user_ip_address=p.get("userIpAddress"),
                last_reminder_sent=p.get("lastReminderSent"),
                approved_by=p.get("approvedBy"),
                rejected_at=p.get("rejectedAt"),
                rejected_by=p.get("rejectedBy"),
                rejection_reason=p.get("rejectionReason"),
                failed_at=p.get("failedAt"),
                failure_reason=p.get("failureReason"),
                refunded_at=p.get("refundedAt"),
            ),
            ticket_id=d["ticketId"],
            qr_code=d.get("qrCode"),
            status=SaleStatus(d.get("status", SaleStatus.PENDING_PAYMENT.value)),
            tickets=[
                Ticket(
                    ticket_id=x["ticketId"],
                    standard_ticket_id=x.get("standardTicketId", ""),
                    generated_at=x.get("generatedAt") or 0.0,
                    qr_code=x.get("qrCode"),
                    is_used=bool(x.get("isUsed")),
                    used_at=x.get("usedAt"),
                    verified_by=x.get("verifiedBy"),
                )
                for x in d.get("tickets") or []
            ],
            is_used=bool(d.get("isUsed")),
            used_at=d.get("usedAt"),
            verified_by=d.get("verifiedBy"),
            email_sent=bool(d.get("emailSent")),
            email_sent_at=d.get("emailSentAt"),
            admin_notes=d.get("adminNotes"),
            created_at=d.get("createdAt") or 0.0,
            updated_at=d.get("updatedAt") or 0.0,
        )
