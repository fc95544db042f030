#!/usr/bin/env python3
import argparse
import asyncio
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis

from ticketdesk.config import Settings
from ticketdesk.delivery.jobs import NotificationJob
from ticketdesk.helpers import now_ts
from ticketdesk.model.notificationbuffer import new_buffer


def human_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
        .replace('T', ' ')[:len('2025-09-17 11:58:00')]
    )


def print_jobs(title: str, jobs: List[NotificationJob]) -> None:
    print(f"=== {title}: {len(jobs)} ===")
    for j in jobs:
        ref = (j.payload.get("sale") or {}).get("reference", "-")
        print(
            f"{j.id}  {j.type:<18} ref={ref:<14} attempts={j.attempts} "
            f"buffered={j.buffer_attempts} next={human_iso(j.next_retry_at)} "
            f"err={j.last_error or '-'}"
        )


async def run(args, settings: Settings) -> int:
    r = None
    if settings.buffer_backend == "redis":
        r = redis.from_url(settings.redis_url, decode_responses=True)
    buf = new_buffer(settings.buffer_backend,
                     directory=settings.buffer_dir, r=r)
    try:
        if args.cmd == "list":
            if args.which in ("pending", "all"):
                print_jobs("pending", await buf.list_pending())
            if args.which in ("failed", "all"):
                print_jobs("failed", await buf.list_failed())
            return 0

        if args.cmd == "requeue":
            rc = 0
            for job_id in args.job_ids:
                job = await buf.requeue_failed(job_id, now_ts())
                if job is None:
                    print(f"!! {job_id}: not in failed partition",
                          file=sys.stderr)
                    rc = 1
                    continue
                print(f"==> {job_id} requeued ({job.type})")
            return rc

        counts = await buf.counts()
        print(f"pending={counts['pending']} failed={counts['failed']}")
        return 0
    finally:
        if r is not None:
            await r.aclose()


def main():
    ap = argparse.ArgumentParser(
        description="Inspect and requeue buffered notification jobs"
    )
    ap.add_argument(
        "--buffer-dir", default=None,
        help="Buffer directory (default: BUFFER_DIR or data/email-buffer)"
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ls = sub.add_parser("list", help="list buffered jobs")
    ls.add_argument("which", nargs="?", default="all",
                    choices=("pending", "failed", "all"))

    rq = sub.add_parser(
        "requeue", help="move permanently failed jobs back into the buffer"
    )
    rq.add_argument("job_ids", nargs="+")

    sub.add_parser("stats", help="pending/failed counts")

    args = ap.parse_args()
    settings = Settings.from_env()
    if args.buffer_dir:
        settings = replace(settings, buffer_dir=args.buffer_dir)
    sys.exit(asyncio.run(run(args, settings)))


if __name__ == "__main__":
    main()
