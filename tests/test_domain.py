"""
Unit tests for the sale aggregate, the payment state machine and helpers.

Run with: pytest tests/test_domain.py -v
"""

import json
import random

import pytest

from ticketdesk.config import EventDetails, Settings
from ticketdesk.delivery.jobs import (
    BUFFER_SCHEDULE_MINUTES,
    NotificationJob,
    buffer_retry_at,
    retry_delay,
)
from ticketdesk.helpers import client_ip, is_valid_email, wait_seconds
from ticketdesk.model.sale import (
    ALLOWED,
    InvalidTransition,
    PaymentMethod,
    PaymentStatus,
    SaleStatus,
    TICKET_TIERS,
    CustomerInfo,
    PaymentInfo,
    TicketInfo,
    TicketSale,
    TicketType,
    assert_transition,
    generate_reference,
    generate_ticket_id,
    sale_status_for,
)
from ticketdesk.qr import qr_payload


def _sale(status=PaymentStatus.PENDING_TRANSFER):
    ticket = TicketInfo.for_tier(TicketType.VIP_SINGLE, 2)
    return TicketSale(
        id="abc",
        customer=CustomerInfo.from_full_name("Ada Obi", "ADA@Example.com", "0803"),
        ticket=ticket,
        payment=PaymentInfo(
            method=PaymentMethod.BANK_TRANSFER,
            status=status,
            reference="ADA1234",
            amount=ticket.total_amount,
        ),
        ticket_id="ADA1234",
        created_at=100.0,
        updated_at=100.0,
        status=sale_status_for(status),
    )


class TestStateMachine:
    """Payment status transitions and the derived sale status."""

    @pytest.mark.parametrize("old,new", [
        (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING, PaymentStatus.FAILED),
        (PaymentStatus.PENDING_TRANSFER, PaymentStatus.PENDING_APPROVAL),
        (PaymentStatus.PENDING_APPROVAL, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING_APPROVAL, PaymentStatus.REJECTED),
        (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED),
    ])
    def test_allowed_transitions(self, old, new):
        """Every edge of the lifecycle graph is accepted."""
        assert_transition(old, new)

    @pytest.mark.parametrize("old,new", [
        (PaymentStatus.PENDING_TRANSFER, PaymentStatus.COMPLETED),
        (PaymentStatus.COMPLETED, PaymentStatus.PENDING),
        (PaymentStatus.REJECTED, PaymentStatus.COMPLETED),
        (PaymentStatus.FAILED, PaymentStatus.PENDING),
        (PaymentStatus.REFUNDED, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING_APPROVAL, PaymentStatus.PENDING_TRANSFER),
    ])
    def test_illegal_transitions_raise(self, old, new):
        """Moves outside the graph raise InvalidTransition."""
        with pytest.raises(InvalidTransition):
            assert_transition(old, new)

    def test_terminal_states_have_no_exits(self):
        """failed, rejected and refunded are terminal."""
        for s in (PaymentStatus.FAILED, PaymentStatus.REJECTED,
                  PaymentStatus.REFUNDED):
            assert ALLOWED[s] == frozenset()

    def test_legacy_approval_reaches_completed_from_unpaid_states(self):
        """The legacy path may complete a transfer that was never marked."""
        assert_transition(PaymentStatus.PENDING_TRANSFER,
                          PaymentStatus.COMPLETED, legacy=True)
        assert_transition(PaymentStatus.REJECTED,
                          PaymentStatus.COMPLETED, legacy=True)
        with pytest.raises(InvalidTransition):
            assert_transition(PaymentStatus.REFUNDED,
                              PaymentStatus.COMPLETED, legacy=True)

    def test_sale_status_is_derived(self):
        """Sale status follows payment status."""
        assert sale_status_for(PaymentStatus.PENDING_APPROVAL) is SaleStatus.PENDING_PAYMENT
        assert sale_status_for(PaymentStatus.COMPLETED) is SaleStatus.CONFIRMED
        assert sale_status_for(PaymentStatus.FAILED) is SaleStatus.CANCELLED
        assert sale_status_for(PaymentStatus.REJECTED) is SaleStatus.REJECTED
        assert sale_status_for(PaymentStatus.REFUNDED) is SaleStatus.CANCELLED

    def test_move_to_updates_both_statuses(self):
        """move_to returns the old status and keeps sale status in sync."""
        sale = _sale()
        old = sale.move_to(PaymentStatus.PENDING_APPROVAL)
        assert old is PaymentStatus.PENDING_TRANSFER
        sale.move_to(PaymentStatus.COMPLETED)
        assert sale.payment.status is PaymentStatus.COMPLETED
        assert sale.status is SaleStatus.CONFIRMED

    def test_move_to_rejects_without_mutating(self):
        """A refused move leaves the sale untouched."""
        sale = _sale()
        with pytest.raises(InvalidTransition):
            sale.move_to(PaymentStatus.REFUNDED)
        assert sale.payment.status is PaymentStatus.PENDING_TRANSFER


class TestGenerators:
    """Reference and ticket id generation."""

    def test_reference_shape(self):
        """Upper-cased name stem followed by four digits 1-9."""
        rng = random.Random(1)
        for _ in range(50):
            ref = generate_reference("ada", rng)
            assert ref.startswith("ADA")
            digits = ref[3:]
            assert len(digits) == 4
            assert all(d in "123456789" for d in digits)

    def test_reference_strips_non_alphanumerics(self):
        """Punctuation and spaces never reach the reference."""
        ref = generate_reference("O'Neil-Jr", random.Random(2))
        assert ref[:-4] == "ONEILJR"

    def test_reference_falls_back_for_empty_name(self):
        """A name with nothing usable gets a generic stem."""
        assert generate_reference("!!", random.Random(3)).startswith("GUEST")

    def test_ticket_id_range(self):
        """Ticket ids carry a number in 1000-9999."""
        tid = generate_ticket_id("Chi", random.Random(4))
        assert tid.startswith("CHI")
        assert 1000 <= int(tid[3:]) <= 9999


class TestSale:
    """Aggregate construction and serialisation."""

    def test_tier_pricing(self):
        """Totals come from the tier table."""
        info = TicketInfo.for_tier(TicketType.TABLE, 1)
        assert info.unit_price == TICKET_TIERS[TicketType.TABLE].price == 200000
        assert TicketInfo.for_tier(TicketType.REGULAR, 3).total_amount == 15000

    def test_customer_from_full_name(self):
        """First word is the first name; email is normalised."""
        c = CustomerInfo.from_full_name("  Ada  Ngozi Obi ", " A@B.COM ", " 0803 ")
        assert (c.first_name, c.last_name) == ("Ada", "Ngozi Obi")
        assert c.email == "a@b.com"
        assert c.phone == "0803"

    def test_dict_round_trip_keeps_camel_case(self):
        """to_dict uses the wire field names and from_dict reads them back."""
        sale = _sale()
        d = sale.to_dict()
        assert d["reference"] == "ADA1234"
        assert d["paymentInfo"]["status"] == "pending_transfer"
        assert d["customerInfo"]["fullName"] == "Ada Obi"
        assert TicketSale.from_dict(json.loads(json.dumps(d))) == sale

    def test_copy_is_deep(self):
        """Mutating a copy never touches the original."""
        sale = _sale()
        other = sale.copy()
        other.payment.status = PaymentStatus.REJECTED
        assert sale.payment.status is PaymentStatus.PENDING_TRANSFER


class TestHelpers:
    """Small pure helpers."""

    def test_wait_seconds_rounds_up_and_floors_at_one(self):
        """Remaining wait is a whole number of seconds, at least 1."""
        assert wait_seconds(120, 0.5) == 120
        assert wait_seconds(120, 119.9) == 1
        assert wait_seconds(90, 30) == 60

    def test_client_ip_honours_trusted_hops(self):
        """Only the entries appended by trusted proxies are skipped."""
        assert client_ip("10.0.0.1", None, 1) == "10.0.0.1"
        assert client_ip("10.0.0.1", "1.2.3.4", 1) == "1.2.3.4"
        assert client_ip("10.0.0.1", "6.6.6.6, 1.2.3.4", 1) == "1.2.3.4"
        assert client_ip("10.0.0.1", "1.2.3.4", 0) == "10.0.0.1"

    def test_email_check(self):
        """Basic address shape is enforced."""
        assert is_valid_email("a@b.co")
        assert not is_valid_email("a@b")
        assert not is_valid_email("")

    def test_qr_payload_fields(self):
        """Per-unit payloads carry the standard id and quantity 1."""
        sale = _sale()
        data = json.loads(qr_payload(sale, "ADA5555", EventDetails(), 0.0, "uuid-1"))
        assert data["ticketId"] == "ADA5555"
        assert data["standardTicketId"] == "uuid-1"
        assert data["quantity"] == 1
        assert data["generatedAt"].startswith("1970-01-01")
        whole = json.loads(qr_payload(sale, "ADA1234", EventDetails(), 0.0))
        assert whole["quantity"] == 2
        assert "standardTicketId" not in whole


class TestJobs:
    """Backoff schedules and job serialisation."""

    def test_retry_delay_doubles(self):
        """In-memory backoff is base, 2*base, 4*base."""
        assert [retry_delay(n, 5) for n in (1, 2, 3)] == [5, 10, 20]

    def test_buffer_schedule(self):
        """Buffered retries follow the schedule, then stop."""
        assert buffer_retry_at(0, 0) == 5 * 60
        assert buffer_retry_at(3, 0) == 240 * 60
        assert buffer_retry_at(len(BUFFER_SCHEDULE_MINUTES), 0) is None

    def test_job_dict_keeps_unknown_type(self):
        """An unrecognised tag survives serialisation."""
        job = NotificationJob(type="carrier_pigeon", payload={"x": 1},
                              created_at=1.0)
        again = NotificationJob.from_dict(json.loads(json.dumps(job.to_dict())))
        assert again == job


class TestSettings:
    """Environment parsing."""

    def test_from_env(self):
        """Env vars override defaults; lists are comma separated."""
        s = Settings.from_env({
            "DATABASE_URL": "sqlite:///x.db",
            "EMAIL_PORT": "587",
            "EMAIL_SECURE": "false",
            "ADMIN_WHATSAPP_NUMBERS": "+1, +2,",
            "APPROVAL_EMAIL_MODE": "DEFERRED",
            "EVENT_NAME": "Gala",
        })
        assert s.database_url == "sqlite:///x.db"
        assert s.admin_whatsapp_numbers == ("+1", "+2")
        assert s.approval_email_mode == "deferred"
        assert s.event.name == "Gala"
        (profile,) = s.smtp_profiles()
        assert profile.port == 587 and profile.start_tls and not profile.use_tls

    def test_default_smtp_profiles_fall_back(self):
        """Without a port, SSL is tried before STARTTLS."""
        names = [p.name for p in Settings().smtp_profiles()]
        assert names == ["SSL", "STARTTLS"]
