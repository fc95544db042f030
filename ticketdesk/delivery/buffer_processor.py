from __future__ import annotations
import asyncio
import logging
import time
from typing import Dict, Optional

from ..errors import NonTransientDeliveryError
from .jobs import NotificationJob, buffer_retry_at
from .queue import Clock, Deliver

logger = logging.getLogger(__name__)


class BufferProcessor:
    """
    Periodic sweep over the durable buffer.

    Each due record is retried once per sweep. Success deletes it; failure
    advances it along BUFFER_SCHEDULE_MINUTES, and a failure past the end of
    the schedule parks it in the failed partition where nothing retries it.
    """

    def __init__(
        self,
        deliver: Deliver,
        buffer,
        *,
        interval: float = 60.0,
        send_timeout: float = 30.0,
        clock: Clock = time.time,
    ) -> None:
        self.deliver = deliver
        self.buffer = buffer
        self.interval = interval
        self.send_timeout = send_timeout
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_sweep: Optional[Dict[str, int]] = None

    async def _retry_one(self, job: NotificationJob) -> str:
        job.attempts += 1
        try:
            await asyncio.wait_for(self.deliver(job), self.send_timeout)
        except NonTransientDeliveryError as e:
            job.last_error = str(e)
            await self.buffer.fail(job)
            logger.warning("buffered job %s failed permanently: %s", job.id, e)
            return "failed"
        except Exception as e:
            job.last_error = str(e) or type(e).__name__
            job.buffer_attempts += 1
            nxt = buffer_retry_at(job.buffer_attempts, self.clock())
            if nxt is None:
                await self.buffer.fail(job)
                logger.warning(
                    "buffered job %s (%s) out of retries after %d attempts",
                    job.id, job.type, job.attempts,
                )
                return "failed"
            job.next_retry_at = nxt
            await self.buffer.update(job)
            logger.warning(
                "buffered job %s (%s) retry %d failed: %s",
                job.id, job.type, job.buffer_attempts, job.last_error,
            )
            return "rescheduled"

        await self.buffer.remove(job)
        logger.info("buffered job %s (%s) delivered", job.id, job.type)
        return "sent"

    async def sweep(self) -> Dict[str, int]:
        counts = {"due": 0, "sent": 0, "rescheduled": 0, "failed": 0}
        for job in await self.buffer.due(self.clock()):
            counts["due"] += 1
            try:
                counts[await self._retry_one(job)] += 1
            except Exception:
                # left in place; the next sweep picks it up again
                logger.exception("buffered job %s could not be processed", job.id)
        self.last_sweep = counts
        return counts

    async def run(self) -> None:
        # first pass right away to pick up records left from a restart
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("buffer sweep crashed")
            await asyncio.sleep(self.interval)

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
