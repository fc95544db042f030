from __future__ import annotations
from typing import Dict, List, Optional
import json
import redis.asyncio as redis

from ...delivery.jobs import NotificationJob


# ---- keys
def k_job(job_id: str) -> str: return f"buf:job:{job_id}"


DUE_INDEX = "buf:due"        # job id -> next_retry_at
FAILED_INDEX = "buf:failed"  # job id -> time moved to failed


class RedisBuffer:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def add(self, job: NotificationJob) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k_job(job.id), json.dumps(job.to_dict()))
        pipe.zrem(FAILED_INDEX, job.id)
        pipe.zadd(DUE_INDEX, {job.id: float(job.next_retry_at or 0.0)})
        await pipe.execute()

    # same write; the due score follows next_retry_at
    update = add

    async def remove(self, job: NotificationJob) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(DUE_INDEX, job.id)
        pipe.delete(k_job(job.id))
        await pipe.execute()

    async def fail(self, job: NotificationJob) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k_job(job.id), json.dumps(job.to_dict()))
        pipe.zrem(DUE_INDEX, job.id)
        pipe.zadd(FAILED_INDEX, {job.id: float(job.created_at)})
        await pipe.execute()

    async def _load(self, ids: List[str]) -> List[NotificationJob]:
        if not ids:
            return []
        pipe = self.r.pipeline()
        for job_id in ids:
            pipe.get(k_job(job_id))
        rows = await pipe.execute()
        return [
            NotificationJob.from_dict(json.loads(raw))
            for raw in rows if raw
        ]

    async def due(self, now: float) -> List[NotificationJob]:
        ids = await self.r.zrangebyscore(DUE_INDEX, "-inf", now)
        return await self._load(ids)

    async def list_pending(self) -> List[NotificationJob]:
        return await self._load(await self.r.zrange(DUE_INDEX, 0, -1))

    async def list_failed(self) -> List[NotificationJob]:
        return await self._load(await self.r.zrange(FAILED_INDEX, 0, -1))

    async def requeue_failed(
        self, job_id: str, now: float
    ) -> Optional[NotificationJob]:
        if await self.r.zscore(FAILED_INDEX, job_id) is None:
            return None
        jobs = await self._load([job_id])
        if not jobs:
            return None
        job = jobs[0]
        job.buffer_attempts = 0
        job.next_retry_at = now
        await self.add(job)
        return job

    async def counts(self) -> Dict[str, int]:
        pipe = self.r.pipeline()
        pipe.zcard(DUE_INDEX)
        pipe.zcard(FAILED_INDEX)
        pending, failed = await pipe.execute()
        return {"pending": int(pending), "failed": int(failed)}
