import time
import re
import math
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def wait_seconds(window: float, elapsed: float) -> int:
    # whole seconds left in a window, never below 1 while still inside it
    return max(1, math.ceil(window - elapsed))


def client_ip(
    peer: Optional[str], forwarded_for: Optional[str], trusted_hops: int
) -> str:
    """
    Resolve the client address behind `trusted_hops` reverse proxies.

    Every trusted proxy appends the address it received the request from to
    X-Forwarded-For, so the client is the entry `trusted_hops` places left of
    the direct peer. Anything further left is client-controlled and ignored.
    """
    chain = []
    if forwarded_for:
        chain = [p.strip() for p in forwarded_for.split(",") if p.strip()]
    chain.append(peer or "unknown")
    idx = max(0, len(chain) - 1 - max(0, trusted_hops))
    return chain[idx]
