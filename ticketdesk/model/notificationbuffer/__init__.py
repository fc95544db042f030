from typing import Optional
import redis.asyncio as redis

from ._files import FileBuffer
from ._redis import RedisBuffer

BACKENDS = ("files", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_buffer(backend: str, *,
               directory: Optional[str] = None,
               r: Optional[redis.Redis] = None):
    backend = (backend or "files").lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "NotificationBuffer(redis) requires r=redis.Redis"
            )
        return RedisBuffer(r=r)
    if backend == "files":
        if directory is None:
            raise RuntimeError(
                "NotificationBuffer(files) requires directory=str"
            )
        return FileBuffer(directory=directory)
    raise RuntimeError(f"unknown buffer backend {backend!r}")


__all__ = ["FileBuffer", "RedisBuffer", "new_buffer", "BACKENDS"]
