from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Dict, Optional, Sequence, Set

from ..errors import DeliveryError, EmailDeliveryFailed
from .alerts import AlertChannel
from .dispatch import Dispatcher
from .jobs import JobType, NotificationJob, Priority
from .queue import Clock, NotificationQueue

logger = logging.getLogger(__name__)


class Notifier:
    """
    The three ways the payment flow talks to the outside world:

    - `enqueue`: customer email through the queue + buffer, fire-and-forget.
    - `deliver_or_fail`: synchronous email that gates a state transition;
      raises EmailDeliveryFailed and nothing is queued.
    - `notify_best_effort`: admin alert in a background task; outcome only
      reaches the log.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        dispatcher: Dispatcher,
        alerts: AlertChannel,
        admin_numbers: Sequence[str] = (),
        *,
        send_timeout: float = 30.0,
        clock: Clock = time.time,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.alerts = alerts
        self.admin_numbers = tuple(admin_numbers)
        self.send_timeout = send_timeout
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

    def _job(self, job_type: JobType, payload: Dict[str, Any],
             priority: Priority) -> NotificationJob:
        return NotificationJob(
            type=job_type.value,
            payload=payload,
            created_at=self.clock(),
            priority=priority,
        )

    def enqueue(
        self,
        job_type: JobType,
        sale: Dict[str, Any],
        *,
        priority: Priority = Priority.NORMAL,
        **extra: Any,
    ) -> NotificationJob:
        job = self._job(job_type, {"sale": sale, **extra}, priority)
        self.queue.enqueue(job)
        return job

    async def deliver_or_fail(
        self, job_type: JobType, sale: Dict[str, Any], **extra: Any
    ) -> str:
        job = self._job(job_type, {"sale": sale, **extra}, Priority.HIGH)
        job.attempts = 1
        try:
            return await asyncio.wait_for(self.dispatcher(job), self.send_timeout)
        except (DeliveryError, asyncio.TimeoutError) as e:
            logger.warning(
                "gating %s email for %s failed: %s",
                job_type.value, sale.get("reference"), e,
            )
            raise EmailDeliveryFailed(
                "Failed to send notification email. Please try again.",
                detail=str(e) or type(e).__name__,
            ) from e

    def notify_best_effort(self, message: str,
                           numbers: Optional[Sequence[str]] = None) -> None:
        targets = tuple(numbers) if numbers is not None else self.admin_numbers
        if not targets:
            return
        task = asyncio.create_task(self._alert(targets, message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _alert(self, numbers: Sequence[str], message: str) -> None:
        try:
            ok = await self.alerts.notify(numbers, message)
        except Exception:
            logger.exception("admin alert channel raised")
            return
        if not ok:
            logger.warning("admin alert not delivered to %d numbers", len(numbers))

    async def drain(self) -> None:
        """Wait for in-flight best-effort alerts (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
