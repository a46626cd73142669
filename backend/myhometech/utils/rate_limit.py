"""Per-client throttling for the public API."""

import ipaddress
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Iterable, Optional

from fastapi import Request

from myhometech.core.config import get_settings


class SlidingWindowRateLimiter:
    """Counts hits per key over the trailing ``window_seconds``.

    Keys whose newest hit has left the window are swept at most once every
    ``sweep_every`` seconds.
    """

    def __init__(self, window_seconds: float = 60.0, sweep_every: float = 60.0) -> None:
        self.window_seconds = window_seconds
        self.sweep_every = sweep_every
        self._hits: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self._next_sweep = 0.0

    def hit(self, key: str, limit: int) -> bool:
        """Record a hit for ``key``. Returns False, recording nothing, once ``limit`` is reached."""
        if limit <= 0:
            return True
        now = time.monotonic()
        horizon = now - self.window_seconds
        with self._lock:
            if now >= self._next_sweep:
                for stale in [k for k, hits in self._hits.items() if not hits or hits[-1] <= horizon]:
                    del self._hits[stale]
                self._next_sweep = now + self.sweep_every

            hits = self._hits[key]
            while hits and hits[0] <= horizon:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._next_sweep = 0.0


rate_limiter = SlidingWindowRateLimiter()


def _is_trusted_proxy(peer_ip: str, cidrs: Iterable[str]) -> bool:
    try:
        address = ipaddress.ip_address(peer_ip)
    except ValueError:
        return False
    for cidr in cidrs:
        try:
            if address in ipaddress.ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Client IP, honouring proxy headers only when the direct peer is a trusted proxy."""
    peer_ip = request.client.host if request.client else None
    if trusted_proxy_cidrs is None:
        trusted_proxy_cidrs = get_settings().trusted_proxy_cidrs
    if not peer_ip or not _is_trusted_proxy(peer_ip, trusted_proxy_cidrs):
        return peer_ip

    # Rightmost entry was appended by our own proxy.
    forwarded = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",") if part.strip()]
    if forwarded:
        return forwarded[-1]
    return request.headers.get("x-real-ip", "").strip() or peer_ip


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")
