from __future__ import annotations
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .delivery.alerts import suspicious_payment_message
from .delivery.jobs import JobType
from .delivery.notifier import Notifier
from .errors import EmailDeliveryFailed
from .model.store import SaleStore

logger = logging.getLogger(__name__)

HOUR = 3600.0


def next_run_after(now: float, at: str, tz: str) -> float:
    """Epoch of the next `at` (HH:MM) wall-clock time in `tz` after `now`."""
    hh, mm = (int(x) for x in at.split(":", 1))
    zone = ZoneInfo(tz)
    local = datetime.fromtimestamp(now, tz=zone)
    run = local.replace(hour=hh, minute=mm, second=0, microsecond=0)
    if run.timestamp() <= now:
        run = (run + timedelta(days=1)).replace(hour=hh, minute=mm)
    return run.timestamp()


class ReminderScheduler:
    def __init__(
        self,
        store: SaleStore,
        notifier: Notifier,
        *,
        at: str = "10:00",
        timezone: str = "Africa/Lagos",
        after_hours: float = 24.0,
        suspicious_hours: float = 72.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.at = at
        self.timezone = timezone
        self.after = after_hours * HOUR
        self.suspicious = suspicious_hours * HOUR
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[Dict[str, int]] = None

    async def run_once(self) -> Dict[str, int]:
        now = self.clock()
        due = await self.store.list_due_reminders(
            marked_before=now - self.after,
            reminded_before=now - 24 * HOUR,
        )
        counts = {"due": len(due), "sent": 0, "suspicious": 0, "failed": 0}
        for sale in due:
            waited = now - (sale.payment.transfer_marked_at or now)
            suspicious = waited >= self.suspicious
            try:
                await self.notifier.deliver_or_fail(
                    JobType.REMINDER, sale.to_dict(), suspicious=suspicious
                )
                await self.store.set_last_reminder(sale.reference, now)
            except EmailDeliveryFailed:
                # retried by tomorrow's sweep since last_reminder_sent is unset
                counts["failed"] += 1
                continue
            except Exception:
                logger.exception("reminder for %s failed", sale.reference)
                counts["failed"] += 1
                continue
            counts["sent"] += 1
            if suspicious:
                counts["suspicious"] += 1
                self.notifier.notify_best_effort(
                    suspicious_payment_message(sale, waited / HOUR)
                )
        logger.info("reminder sweep: %s", counts)
        self.last_run = counts
        return counts

    async def run(self) -> None:
        while True:
            delay = next_run_after(self.clock(), self.at, self.timezone) - self.clock()
            await asyncio.sleep(max(1.0, delay))
            try:
                await self.run_once()
            except Exception:
                logger.exception("reminder sweep crashed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
