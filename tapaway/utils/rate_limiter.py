"""
Fixed-window rate limiter keyed by client identity.

Responsibilities:
- Count requests per client key within a fixed window
- Reset a client's window on expiry
- Evict expired entries once the store grows past a threshold

Design principles:
- Injectable clock and store (no hidden module-level singleton)
- Resource protection, not a correctness mechanism
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, MutableMapping, Optional

logger = logging.getLogger(__name__)

RATE_LIMIT = 10
RATE_WINDOW_SECONDS = 60
PRUNE_THRESHOLD = 1000

RATE_LIMIT_ERROR = 'Rate limit exceeded. Please try again later.'
RATE_LIMIT_MESSAGE = "I'm getting a lot of requests right now. Please wait a moment and try again."

UNKNOWN_CLIENT = 'unknown'


@dataclass
class WindowEntry:
    count: int
    reset_time: float


class RateLimiter:
    """Fixed window counter per client key"""

    def __init__(
        self,
        limit: int = RATE_LIMIT,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        store: Optional[MutableMapping[str, WindowEntry]] = None,
        prune_threshold: int = PRUNE_THRESHOLD
    ) -> None:
        """
        Args:
            limit: Requests allowed per window
            window_seconds: Window length
            clock: Returns seconds (monotonic in production, fake in tests)
            store: Mapping of client key to WindowEntry
            prune_threshold: Store size above which allow() evicts expired entries

        Raises:
            ValueError: If limit or window is not positive
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")

        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.store: MutableMapping[str, WindowEntry] = store if store is not None else {}
        self.prune_threshold = prune_threshold

    def allow(self, client_key: str) -> bool:
        """
        Record a request and report whether it is within the limit.

        Args:
            client_key: Client identity (IP address or 'unknown')

        Returns:
            bool: False when the client exceeded the limit in this window
        """
        key = client_key or UNKNOWN_CLIENT
        now = self.clock()
        entry = self.store.get(key)

        if entry is None or now >= entry.reset_time:
            self.store[key] = WindowEntry(count=1, reset_time=now + self.window_seconds)
            if len(self.store) > self.prune_threshold:
                self.prune()
            return True

        if entry.count >= self.limit:
            logger.warning(f"Rate limit exceeded for client {key[:8]}...")
            return False

        entry.count += 1
        return True

    def remaining(self, client_key: str) -> int:
        entry = self.store.get(client_key or UNKNOWN_CLIENT)
        if entry is None or self.clock() >= entry.reset_time:
            return self.limit
        return max(0, self.limit - entry.count)

    def prune(self) -> int:
        """
        Evict expired entries.

        Returns:
            int: Number of entries removed
        """
        now = self.clock()
        expired = [key for key, entry in self.store.items() if now >= entry.reset_time]
        for key in expired:
            del self.store[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate limit entries")
        return len(expired)


def client_key_from_headers(headers: Dict[str, str], remote_addr: Optional[str] = None) -> str:
    """
    Client identity: first X-Forwarded-For hop, then X-Real-IP, then remote address.
    """
    forwarded = headers.get('X-Forwarded-For') or headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip() or UNKNOWN_CLIENT
    real_ip = headers.get('X-Real-IP') or headers.get('x-real-ip')
    if real_ip:
        return real_ip.strip()
    return remote_addr or UNKNOWN_CLIENT
