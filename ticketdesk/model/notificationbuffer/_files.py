"""
Durable notification buffer: one JSON file per buffered job.

    <dir>/<created_ms>-<type>-<attempts>-<id>.json      pending
    <dir>/failed/<same name>                            permanently failed

The file name is fixed when the job is first buffered; later retries rewrite
the contents in place. Writes go through a temp file + os.replace so a crash
mid-write never leaves a truncated record behind.
"""
from __future__ import annotations
import asyncio
import json
import logging
import os
from typing import Dict, List, Optional, Tuple

from ...delivery.jobs import NotificationJob

logger = logging.getLogger(__name__)

FAILED_DIR = "failed"


def _file_name(job: NotificationJob) -> str:
    return (
        f"{int(job.created_at * 1000)}-{job.type}-{job.attempts}-{job.id}.json"
    )


class FileBuffer:
    def __init__(self, directory: str) -> None:
        self.dir = directory
        self.failed_dir = os.path.join(directory, FAILED_DIR)

    # ----------------------------
    # blocking helpers, always run via asyncio.to_thread
    # ----------------------------
    def _ensure_dirs(self) -> None:
        os.makedirs(self.failed_dir, exist_ok=True)

    @staticmethod
    def _write(path: str, job: NotificationJob) -> None:
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(job.to_dict(), f, indent=2)
        os.replace(tmp, path)

    @staticmethod
    def _read_dir(directory: str) -> List[Tuple[str, NotificationJob]]:
        out = []
        if not os.path.isdir(directory):
            return out
        for name in sorted(os.listdir(directory)):
            if not name.endswith(".json"):
                continue
            path = os.path.join(directory, name)
            try:
                with open(path, encoding="utf-8") as f:
                    out.append((path, NotificationJob.from_dict(json.load(f))))
            except (OSError, ValueError, KeyError):
                logger.exception("skipping unreadable buffer record %s", path)
        return out

    def _find(self, directory: str, job_id: str) -> Optional[str]:
        suffix = f"-{job_id}.json"
        if not os.path.isdir(directory):
            return None
        for name in os.listdir(directory):
            if name.endswith(suffix):
                return os.path.join(directory, name)
        return None

    def _add(self, job: NotificationJob) -> None:
        self._ensure_dirs()
        self._write(os.path.join(self.dir, _file_name(job)), job)

    def _update(self, job: NotificationJob) -> None:
        path = self._find(self.dir, job.id)
        if path is None:
            self._add(job)
            return
        self._write(path, job)

    def _remove(self, job_id: str) -> None:
        path = self._find(self.dir, job_id)
        if path is not None:
            os.remove(path)

    def _fail(self, job: NotificationJob) -> None:
        self._ensure_dirs()
        path = self._find(self.dir, job.id)
        name = os.path.basename(path) if path else _file_name(job)
        self._write(os.path.join(self.failed_dir, name), job)
        if path is not None:
            os.remove(path)

    def _requeue(self, job_id: str, now: float) -> Optional[NotificationJob]:
        path = self._find(self.failed_dir, job_id)
        if path is None:
            return None
        with open(path, encoding="utf-8") as f:
            job = NotificationJob.from_dict(json.load(f))
        job.buffer_attempts = 0
        job.next_retry_at = now
        self._write(os.path.join(self.dir, os.path.basename(path)), job)
        os.remove(path)
        return job

    # ----------------------------
    # async API
    # ----------------------------
    async def add(self, job: NotificationJob) -> None:
        await asyncio.to_thread(self._add, job)

    async def update(self, job: NotificationJob) -> None:
        await asyncio.to_thread(self._update, job)

    async def remove(self, job: NotificationJob) -> None:
        await asyncio.to_thread(self._remove, job.id)

    async def fail(self, job: NotificationJob) -> None:
        await asyncio.to_thread(self._fail, job)

    async def due(self, now: float) -> List[NotificationJob]:
        rows = await asyncio.to_thread(self._read_dir, self.dir)
        return [
            job for _, job in rows
            if job.next_retry_at is None or job.next_retry_at <= now
        ]

    async def list_pending(self) -> List[NotificationJob]:
        return [job for _, job in await asyncio.to_thread(self._read_dir, self.dir)]

    async def list_failed(self) -> List[NotificationJob]:
        rows = await asyncio.to_thread(self._read_dir, self.failed_dir)
        return [job for _, job in rows]

    async def requeue_failed(
        self, job_id: str, now: float
    ) -> Optional[NotificationJob]:
        return await asyncio.to_thread(self._requeue, job_id, now)

    async def counts(self) -> Dict[str, int]:
        pending = await self.list_pending()
        failed = await self.list_failed()
        return {"pending": len(pending), "failed": len(failed)}
