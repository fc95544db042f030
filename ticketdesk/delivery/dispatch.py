from typing import Awaitable, Callable, Dict

from ..errors import NonTransientDeliveryError
from .jobs import JobType, NotificationJob
from .mailer import Mailer

Deliver = Callable[[NotificationJob], Awaitable[str]]


class Dispatcher:
    """Routes a job to the email it stands for. Unknown tags never retry."""

    def __init__(self, mailer: Mailer) -> None:
        self.mailer = mailer
        self._routes: Dict[str, Deliver] = {
            JobType.TRANSFER_COMPLETED.value: self._transfer_completed,
            JobType.TICKET_EMAIL.value: self._ticket_email,
            JobType.PAYMENT_REJECTION.value: self._payment_rejection,
            JobType.REMINDER.value: self._reminder,
        }

    async def __call__(self, job: NotificationJob) -> str:
        route = self._routes.get(job.type)
        if route is None:
            raise NonTransientDeliveryError(f"unknown job type {job.type!r}")
        sale = job.payload.get("sale")
        if not isinstance(sale, dict):
            raise NonTransientDeliveryError("job payload carries no sale")
        return await route(job)

    async def _transfer_completed(self, job: NotificationJob) -> str:
        return await self.mailer.transfer_completed(job.payload["sale"])

    async def _ticket_email(self, job: NotificationJob) -> str:
        return await self.mailer.ticket_email(job.payload["sale"])

    async def _payment_rejection(self, job: NotificationJob) -> str:
        return await self.mailer.payment_rejection(
            job.payload["sale"], job.payload.get("reason")
        )

    async def _reminder(self, job: NotificationJob) -> str:
        return await self.mailer.reminder(
            job.payload["sale"], bool(job.payload.get("suspicious"))
        )
