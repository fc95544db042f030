"""
Unit tests for the notification pipeline: dispatch, the in-memory queue,
the file-backed buffer and the buffer sweep.

Run with: pytest tests/test_delivery.py -v
"""

import asyncio
import os

import aiosmtplib
import fakeredis
import pytest

from ticketdesk.config import EventDetails, SMTPProfile
from ticketdesk.delivery.jobs import JobType, NotificationJob, Priority
from ticketdesk.delivery.mailer import ConsoleTransport, Mailer, SMTPTransport
from ticketdesk.errors import (
    EmailDeliveryFailed,
    NonTransientDeliveryError,
    TransientDeliveryError,
)
from ticketdesk.model.notificationbuffer import FileBuffer, RedisBuffer, new_buffer
from ticketdesk.model.sale import (
    CustomerInfo,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    TicketInfo,
    TicketSale,
    TicketType,
)

from .conftest import build_stack, drain_queue

MINUTE = 60.0


def sale_dict(email="ada@example.com"):
    ticket = TicketInfo.for_tier(TicketType.REGULAR, 1)
    return TicketSale(
        id="s1",
        customer=CustomerInfo("Ada", "Obi", email, "0803"),
        ticket=ticket,
        payment=PaymentInfo(
            method=PaymentMethod.BANK_TRANSFER,
            status=PaymentStatus.PENDING_APPROVAL,
            reference="ADA4321",
            amount=ticket.total_amount,
        ),
        ticket_id="ADA4321",
        created_at=0.0,
        updated_at=0.0,
    ).to_dict()


class TestDispatch:
    """Routing jobs to emails."""

    async def test_routes_by_type(self, stack):
        """Each known job type renders its own email."""
        for job_type in JobType:
            job = NotificationJob(type=job_type.value,
                                  payload={"sale": sale_dict()}, created_at=0.0)
            await stack.dispatcher(job)
        subjects = [m["subject"] for m in stack.transport.sent]
        assert subjects[0].startswith("Transfer Confirmed")
        assert subjects[1].startswith("Your Tickets")
        assert subjects[2].startswith("Payment Verification Required")
        assert subjects[3] == "Payment Verification Reminder - ADA4321"

    async def test_unknown_type_is_permanent(self, stack):
        """An unrecognised tag can never succeed."""
        job = NotificationJob(type="fax", payload={"sale": sale_dict()},
                              created_at=0.0)
        with pytest.raises(NonTransientDeliveryError):
            await stack.dispatcher(job)

    async def test_missing_recipient_is_permanent(self, stack):
        """A sale without an email address is not retried."""
        job = NotificationJob(type=JobType.REMINDER.value,
                              payload={"sale": {"reference": "X"}},
                              created_at=0.0)
        with pytest.raises(NonTransientDeliveryError):
            await stack.dispatcher(job)

    async def test_console_transport_records(self):
        """The console backend keeps what it would have sent."""
        transport = ConsoleTransport()
        mailer = Mailer(transport, EventDetails())
        await mailer.reminder(sale_dict(), suspicious=True)
        assert transport.sent[0]["to"] == "ada@example.com"
        assert transport.sent[0]["subject"].startswith("URGENT")


class TestQueue:
    """In-memory retries and hand-off to the buffer."""

    async def test_success_on_first_attempt(self, stack):
        """A healthy transport delivers straight away."""
        stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())
        outcomes = await drain_queue(stack.queue)
        assert [(o["result"], o["attempts"]) for o in outcomes] == [("sent", 1)]
        assert stack.queue.status()["recent"][0]["result"] == "sent"

    async def test_high_priority_jumps_the_line(self, stack):
        """High priority jobs are delivered before normal ones."""
        stack.notifier.enqueue(JobType.TRANSFER_COMPLETED, sale_dict())
        stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict(),
                               priority=Priority.HIGH)
        outcomes = await drain_queue(stack.queue)
        assert [o["type"] for o in outcomes] == ["ticket_email",
                                                 "transfer_completed"]

    async def test_transient_failures_back_off_then_recover(self, stack):
        """Retries wait 5s then 10s; a later success clears the job."""
        stack.transport.fail_next(2)
        stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())

        first = await stack.queue.step()
        assert first["result"] == "retrying"
        assert await stack.queue.step() is None
        stack.clock.advance(5)
        assert (await stack.queue.step())["result"] == "retrying"
        stack.clock.advance(9)
        assert await stack.queue.step() is None
        stack.clock.advance(1)
        last = await stack.queue.step()
        assert (last["result"], last["attempts"]) == ("sent", 3)
        assert len(stack.transport.sent) == 1

    async def test_exhausted_job_moves_to_buffer(self, stack):
        """After three failed attempts the job is buffered for later."""
        stack.transport.always_fail = True
        job = stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())
        await stack.queue.step()
        stack.clock.advance(5)
        await stack.queue.step()
        stack.clock.advance(10)
        outcome = await stack.queue.step()
        assert outcome["result"] == "buffered"
        assert len(stack.queue) == 0

        (buffered,) = await stack.buffer.list_pending()
        assert buffered.id == job.id
        assert buffered.attempts == 3
        assert buffered.buffer_attempts == 0
        assert buffered.next_retry_at == stack.clock.now + 5 * MINUTE
        assert buffered.last_error == "mail server unreachable"

    async def test_non_transient_goes_straight_to_failed(self, stack):
        """Permanent failures skip both retry tiers."""
        stack.transport.non_transient = True
        stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())
        outcome = await stack.queue.step()
        assert outcome["result"] == "failed"
        assert await stack.buffer.list_pending() == []
        assert len(await stack.buffer.list_failed()) == 1

    async def test_unknown_type_goes_straight_to_failed(self, stack):
        """A job nobody can render is parked immediately."""
        job = NotificationJob(type="fax", payload={"sale": sale_dict()},
                              created_at=stack.clock.now)
        stack.queue.enqueue(job)
        outcome = await stack.queue.step()
        assert (outcome["result"], outcome["attempts"]) == ("failed", 1)
        (failed,) = await stack.buffer.list_failed()
        assert failed.type == "fax"


class TestBuffer:
    """Durable buffer storage and the periodic sweep."""

    async def _buffered_job(self, stack):
        stack.transport.always_fail = True
        job = stack.notifier.enqueue(JobType.REMINDER, sale_dict())
        for delay in (0, 5, 10):
            stack.clock.advance(delay)
            await stack.queue.step()
        return job

    async def test_file_layout(self, stack):
        """Pending records are JSON files named after the job."""
        job = await self._buffered_job(stack)
        names = os.listdir(stack.buffer.dir)
        expected = f"{int(job.created_at * 1000)}-reminder-3-{job.id}.json"
        assert expected in names

    async def test_sweep_follows_schedule_then_fails(self, stack):
        """Buffered retries run at 5, 20, 60 and 240 minutes, then stop."""
        job = await self._buffered_job(stack)

        assert (await stack.processor.sweep())["due"] == 0
        for wait, buffer_attempts in ((5, 1), (20, 2), (60, 3)):
            stack.clock.advance(wait * MINUTE)
            counts = await stack.processor.sweep()
            assert counts == {"due": 1, "sent": 0, "rescheduled": 1, "failed": 0}
            (pending,) = await stack.buffer.list_pending()
            assert pending.buffer_attempts == buffer_attempts

        stack.clock.advance(240 * MINUTE)
        counts = await stack.processor.sweep()
        assert counts["failed"] == 1
        assert await stack.buffer.list_pending() == []
        (failed,) = await stack.buffer.list_failed()
        assert failed.id == job.id
        assert failed.attempts == 7
        assert await stack.buffer.counts() == {"pending": 0, "failed": 1}

    async def test_sweep_delivers_and_removes(self, stack):
        """A recovered transport empties the buffer."""
        await self._buffered_job(stack)
        stack.transport.always_fail = False
        stack.clock.advance(5 * MINUTE)
        counts = await stack.processor.sweep()
        assert counts["sent"] == 1
        assert await stack.buffer.list_pending() == []
        assert len(stack.transport.sent) == 1

    async def test_requeue_failed(self, stack):
        """A failed record can be put back on the schedule by hand."""
        stack.transport.non_transient = True
        job = stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())
        await stack.queue.step()

        requeued = await stack.buffer.requeue_failed(job.id, stack.clock.now)
        assert requeued.buffer_attempts == 0
        assert await stack.buffer.list_failed() == []
        stack.transport.non_transient = False
        assert (await stack.processor.sweep())["sent"] == 1
        assert await stack.buffer.requeue_failed("missing", 0.0) is None

    async def test_unreadable_record_is_skipped(self, tmp_path):
        """A corrupt file does not stop the sweep."""
        buf = FileBuffer(str(tmp_path))
        good = NotificationJob(type="reminder", payload={}, created_at=1.0)
        await buf.add(good)
        (tmp_path / "0-reminder-3-bad.json").write_text("{not json")
        assert [j.id for j in await buf.due(10.0)] == [good.id]

    async def test_one_bad_record_does_not_stop_the_sweep(self, stack):
        """A storage error on one record leaves the others processed."""
        now = stack.clock.now
        jobs = [
            NotificationJob(type=JobType.REMINDER.value,
                            payload={"sale": sale_dict()}, created_at=now + i,
                            attempts=3, next_retry_at=now)
            for i in range(2)
        ]
        for job in jobs:
            await stack.buffer.add(job)

        remove = stack.buffer.remove

        async def flaky_remove(job):
            if job.id == jobs[0].id:
                raise OSError("disk full")
            await remove(job)

        stack.buffer.remove = flaky_remove
        counts = await stack.processor.sweep()
        assert counts["due"] == 2 and counts["sent"] == 1
        assert [j.id for j in await stack.buffer.list_pending()] == [jobs[0].id]

    def test_factory(self, tmp_path):
        """The factory builds the configured backend."""
        assert isinstance(new_buffer("files", directory=str(tmp_path)), FileBuffer)
        with pytest.raises(RuntimeError):
            new_buffer("redis")
        with pytest.raises(RuntimeError):
            new_buffer("carrier-pigeon", directory=str(tmp_path))


@pytest.fixture
async def redis_stack(settings, store, transport, alerts, clock):
    r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(),
                                 decode_responses=True)
    buffer = new_buffer("redis", r=r)
    yield build_stack(settings, store, buffer, transport, alerts, clock)
    await r.aclose()


class TestRedisBuffer:
    """The Redis buffer backend behind the same sweep."""

    async def _buffered_job(self, stack):
        stack.transport.always_fail = True
        job = stack.notifier.enqueue(JobType.REMINDER, sale_dict())
        for delay in (0, 5, 10):
            stack.clock.advance(delay)
            await stack.queue.step()
        return job

    async def test_due_follows_next_retry(self, redis_stack):
        """A buffered job only comes due at its retry time."""
        stack = redis_stack
        job = await self._buffered_job(stack)
        assert isinstance(stack.buffer, RedisBuffer)
        assert await stack.buffer.due(stack.clock.now) == []
        (due,) = await stack.buffer.due(stack.clock.now + 5 * MINUTE)
        assert due.id == job.id
        assert due.attempts == 3
        assert due.payload == job.payload
        assert await stack.buffer.counts() == {"pending": 1, "failed": 0}

    async def test_sweep_follows_schedule_then_fails(self, redis_stack):
        """Buffered retries run at 5, 20, 60 and 240 minutes, then stop."""
        stack = redis_stack
        job = await self._buffered_job(stack)

        for wait, buffer_attempts in ((5, 1), (20, 2), (60, 3)):
            stack.clock.advance(wait * MINUTE)
            counts = await stack.processor.sweep()
            assert counts == {"due": 1, "sent": 0, "rescheduled": 1, "failed": 0}
            (pending,) = await stack.buffer.list_pending()
            assert pending.buffer_attempts == buffer_attempts

        stack.clock.advance(240 * MINUTE)
        assert (await stack.processor.sweep())["failed"] == 1
        assert await stack.buffer.list_pending() == []
        (failed,) = await stack.buffer.list_failed()
        assert failed.id == job.id
        assert failed.attempts == 7
        assert await stack.buffer.counts() == {"pending": 0, "failed": 1}

    async def test_requeue_failed(self, redis_stack):
        """A failed record goes back on the schedule and is then delivered."""
        stack = redis_stack
        stack.transport.non_transient = True
        job = stack.notifier.enqueue(JobType.TICKET_EMAIL, sale_dict())
        await stack.queue.step()
        assert [j.id for j in await stack.buffer.list_failed()] == [job.id]

        requeued = await stack.buffer.requeue_failed(job.id, stack.clock.now)
        assert requeued.buffer_attempts == 0
        assert await stack.buffer.counts() == {"pending": 1, "failed": 0}
        stack.transport.non_transient = False
        assert (await stack.processor.sweep())["sent"] == 1
        assert await stack.buffer.counts() == {"pending": 0, "failed": 0}
        assert await stack.buffer.requeue_failed(job.id, 0.0) is None


class _DeadSMTP:
    """A connection whose socket died mid-send."""

    is_connected = True

    def __init__(self, quit_error):
        self.quit_error = quit_error
        self.closed = False

    async def send_message(self, msg):
        raise aiosmtplib.SMTPServerDisconnected("connection lost")

    async def quit(self):
        raise self.quit_error

    def close(self):
        self.closed = True


class TestSMTPTransport:
    """Connection teardown after a failed send."""

    @pytest.mark.parametrize("quit_error", [
        OSError("broken pipe"),
        asyncio.TimeoutError(),
        aiosmtplib.SMTPServerDisconnected("gone"),
    ])
    async def test_failed_quit_is_still_transient(self, quit_error):
        """Errors while hanging up never mask the send failure."""
        transport = SMTPTransport(
            [SMTPProfile("ssl", "smtp.example.com", 465, True, False)],
            username="", password="", from_name="Desk",
            from_address="desk@example.com",
        )
        dead = _DeadSMTP(quit_error)
        transport._smtp = dead
        with pytest.raises(TransientDeliveryError):
            await transport.send("ada@example.com", "Hi", "<p>hi</p>")
        assert dead.closed
        assert transport._smtp is None


class TestNotifier:
    """Gating email and best-effort alerts."""

    async def test_deliver_or_fail_wraps_errors(self, stack):
        """Transport failures surface as EmailDeliveryFailed; nothing queued."""
        stack.transport.always_fail = True
        with pytest.raises(EmailDeliveryFailed):
            await stack.notifier.deliver_or_fail(JobType.TICKET_EMAIL, sale_dict())
        assert len(stack.queue) == 0
        assert await stack.buffer.list_pending() == []

    async def test_best_effort_swallows_channel_errors(self, stack):
        """An alert channel that raises never reaches the caller."""
        async def boom(numbers, message):
            raise RuntimeError("whatsapp down")

        stack.alerts.notify = boom
        stack.notifier.notify_best_effort("hello")
        await stack.notifier.drain()

    async def test_best_effort_without_numbers_is_a_no_op(self, stack):
        """No configured admins means no alert task."""
        stack.notifier.admin_numbers = ()
        stack.notifier.notify_best_effort("hello")
        await stack.notifier.drain()
        assert stack.alerts.messages == []
