"""
In-memory notification queue with a single serial worker.

Jobs are delivered one at a time. A transient failure puts the job back at
the front with an exponential delay; after `max_retries` failed attempts it is
handed to the durable buffer and leaves the queue for good. Non-transient
failures skip both tiers and land in the buffer's failed partition.
"""
from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..errors import NonTransientDeliveryError, TransientDeliveryError
from .jobs import NotificationJob, Priority, buffer_retry_at, retry_delay

logger = logging.getLogger(__name__)

Deliver = Callable[[NotificationJob], Awaitable[Any]]
Clock = Callable[[], float]

RECENT_OUTCOMES = 50


class NotificationQueue:
    def __init__(
        self,
        deliver: Deliver,
        buffer,
        *,
        max_retries: int = 3,
        retry_base: float = 5.0,
        pause: float = 1.0,
        send_timeout: float = 30.0,
        clock: Clock = time.time,
    ) -> None:
        self.deliver = deliver
        self.buffer = buffer
        self.max_retries = max(1, max_retries)
        self.retry_base = retry_base
        self.pause = pause
        self.send_timeout = send_timeout
        self.clock = clock
        self._jobs: Deque[NotificationJob] = deque()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.processing = False
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_OUTCOMES)

    def __len__(self) -> int:
        return len(self._jobs)

    # ----------------------------
    # producer side
    # ----------------------------
    def enqueue(self, job: NotificationJob) -> None:
        job.next_attempt_at = max(job.next_attempt_at, self.clock())
        if job.priority is Priority.HIGH:
            self._jobs.appendleft(job)
        else:
            self._jobs.append(job)
        self._wake.set()

    # ----------------------------
    # consumer side
    # ----------------------------
    def _take_eligible(self, now: float) -> Optional[NotificationJob]:
        for job in self._jobs:
            if job.next_attempt_at <= now:
                self._jobs.remove(job)
                return job
        return None

    def _next_wakeup(self, now: float) -> Optional[float]:
        if not self._jobs:
            return None
        return max(0.0, min(j.next_attempt_at for j in self._jobs) - now)

    def _record(self, job: NotificationJob, result: str) -> Dict[str, Any]:
        outcome = {
            "jobId": job.id,
            "type": job.type,
            "result": result,
            "attempts": job.attempts,
            "error": job.last_error,
            "at": self.clock(),
        }
        self.recent.append(outcome)
        return outcome

    async def step(self) -> Optional[Dict[str, Any]]:
        """Deliver the first eligible job, if any. Returns its outcome."""
        now = self.clock()
        job = self._take_eligible(now)
        if job is None:
            return None

        self.processing = True
        try:
            job.attempts += 1
            try:
                await asyncio.wait_for(self.deliver(job), self.send_timeout)
            except NonTransientDeliveryError as e:
                job.last_error = str(e)
                logger.warning(
                    "job %s (%s) failed permanently: %s", job.id, job.type, e
                )
                await self.buffer.fail(job)
                return self._record(job, "failed")
            except (TransientDeliveryError, asyncio.TimeoutError) as e:
                job.last_error = str(e) or type(e).__name__
                return await self._retry(job)
            except Exception as e:
                logger.exception("unexpected error delivering job %s", job.id)
                job.last_error = f"{type(e).__name__}: {e}"
                return await self._retry(job)
            job.last_error = None
            logger.info(
                "job %s (%s) delivered on attempt %d",
                job.id, job.type, job.attempts,
            )
            return self._record(job, "sent")
        finally:
            self.processing = False

    async def _retry(self, job: NotificationJob) -> Dict[str, Any]:
        now = self.clock()
        if job.attempts < self.max_retries:
            job.next_attempt_at = now + retry_delay(job.attempts, self.retry_base)
            self._jobs.appendleft(job)
            logger.warning(
                "job %s (%s) attempt %d/%d failed: %s",
                job.id, job.type, job.attempts, self.max_retries, job.last_error,
            )
            return self._record(job, "retrying")

        job.buffer_attempts = 0
        job.next_retry_at = buffer_retry_at(0, now)
        await self.buffer.add(job)
        logger.warning(
            "job %s (%s) exhausted %d attempts, moved to buffer",
            job.id, job.type, job.attempts,
        )
        return self._record(job, "buffered")

    async def run(self) -> None:
        while True:
            try:
                outcome = await self.step()
            except Exception:
                # buffer write failed; the job is lost from memory but logged
                logger.exception("notification worker step crashed")
                outcome = None

            if outcome is not None:
                if self.pause:
                    await asyncio.sleep(self.pause)
                continue

            self._wake.clear()
            timeout = self._next_wakeup(self.clock())
            try:
                await asyncio.wait_for(self._wake.wait(), timeout)
            except asyncio.TimeoutError:
                pass

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

    def pending(self) -> List[Dict[str, Any]]:
        return [
            {
                "jobId": j.id,
                "type": j.type,
                "priority": j.priority.value,
                "attempts": j.attempts,
                "nextAttemptAt": j.next_attempt_at,
            }
            for j in self._jobs
        ]

    def status(self) -> Dict[str, Any]:
        return {
            "queued": len(self._jobs),
            "processing": self.processing,
            "running": self._task is not None and not self._task.done(),
            "jobs": self.pending(),
            "recent": list(self.recent),
        }
