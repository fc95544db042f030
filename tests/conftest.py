"""Pytest configuration and shared fixtures."""

import random
from types import SimpleNamespace
from typing import List, Sequence

import pytest
import pytest_asyncio

from ticketdesk.config import Settings
from ticketdesk.delivery.alerts import AlertChannel
from ticketdesk.delivery.buffer_processor import BufferProcessor
from ticketdesk.delivery.dispatch import Dispatcher
from ticketdesk.delivery.mailer import EmailTransport, Mailer
from ticketdesk.delivery.notifier import Notifier
from ticketdesk.delivery.queue import NotificationQueue
from ticketdesk.errors import NonTransientDeliveryError, TransientDeliveryError
from ticketdesk.infra.sql import create_schema, engine_from_settings
from ticketdesk.model.notificationbuffer import FileBuffer
from ticketdesk.model.store import SaleStore
from ticketdesk.payments import PaymentService
from ticketdesk.ratelimit import TransferRateLimiter
from ticketdesk.reminders import ReminderScheduler
from ticketdesk.verification import TicketVerifier

# 2025-09-20 09:00:00 UTC
T0 = 1758358800.0


class FakeClock:
    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(EmailTransport):
    """Records sends; can be told to fail the next N sends."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.failures_left = 0
        self.always_fail = False
        self.non_transient = False
        self.attempts = 0

    def fail_next(self, n: int) -> None:
        self.failures_left = n

    async def send(self, to: str, subject: str, html: str) -> str:
        self.attempts += 1
        if self.non_transient:
            raise NonTransientDeliveryError("recipient refused")
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise TransientDeliveryError("mail server unreachable")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"


class FakeAlerts(AlertChannel):
    def __init__(self) -> None:
        self.messages: List[str] = []

    async def notify(self, numbers: Sequence[str], message: str) -> bool:
        self.messages.append(message)
        return True


async def fake_qr(payload: str) -> str:
    return "data:image/png;base64,QR" + str(len(payload))


def make_settings(tmp_path, **overrides) -> Settings:
    base = dict(
        database_url="sqlite:///:memory:",
        buffer_dir=str(tmp_path / "email-buffer"),
        email_backend="console",
        queue_pause=0.0,
        admin_secret="s3cret",
        admin_whatsapp_numbers=("+2348000000000",),
        paystack_secret="paystack-test-secret",
        opay_private_key="opay-test-key",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def alerts() -> FakeAlerts:
    return FakeAlerts()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def store(settings):
    engine, SessionAsync, _, gated = engine_from_settings(settings)
    await create_schema(engine)
    yield SaleStore(SessionAsync, gated, rng=random.Random(7))
    await engine.dispose()


@pytest.fixture
def buffer(settings) -> FileBuffer:
    return FileBuffer(settings.buffer_dir)


def build_stack(settings, store, buffer, transport, alerts, clock):
    dispatcher = Dispatcher(Mailer(transport, settings.event))
    queue = NotificationQueue(
        dispatcher, buffer,
        max_retries=settings.queue_max_retries,
        retry_base=settings.queue_retry_base,
        pause=0.0,
        send_timeout=5.0,
        clock=clock,
    )
    processor = BufferProcessor(dispatcher, buffer, send_timeout=5.0,
                                clock=clock)
    notifier = Notifier(queue, dispatcher, alerts,
                        settings.admin_whatsapp_numbers,
                        send_timeout=5.0, clock=clock)
    limiter = TransferRateLimiter(
        store,
        reference_window=settings.reference_window,
        ticket_type_window=settings.ticket_type_window,
    )
    return SimpleNamespace(
        settings=settings,
        store=store,
        buffer=buffer,
        transport=transport,
        alerts=alerts,
        clock=clock,
        dispatcher=dispatcher,
        queue=queue,
        processor=processor,
        notifier=notifier,
        payments=PaymentService(store, notifier, limiter, settings,
                                clock=clock, render_qr=fake_qr),
        verifier=TicketVerifier(store, clock=clock),
        reminders=ReminderScheduler(store, notifier, clock=clock),
    )


@pytest_asyncio.fixture
async def stack(settings, store, buffer, transport, alerts, clock):
    yield build_stack(settings, store, buffer, transport, alerts, clock)


async def drain_queue(queue: NotificationQueue) -> list:
    """Run the worker step until nothing is eligible right now."""
    outcomes = []
    while True:
        outcome = await queue.step()
        if outcome is None:
            return outcomes
        outcomes.append(outcome)
