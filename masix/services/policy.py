from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from time import monotonic

from masix.config.loader import PolicyConfig

logger = logging.getLogger(__name__)

_WINDOW_SECS = 60.0


class MessagePolicy:
    """Denylist plus a per-(account, sender) sliding one-minute window.

    ``check`` returns None when the message may proceed, otherwise the reason
    it was refused (``denylisted`` or ``rate_limited``).
    """

    def __init__(self, config: PolicyConfig, *, clock: Callable[[], float] = monotonic) -> None:
        self.config = config
        self._clock = clock
        self._windows: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = clock()

    def check(self, account_tag: str, sender_id: str, chat_id: str | None = None) -> str | None:
        if sender_id in self.config.denylist or (chat_id is not None and chat_id in self.config.denylist):
            return "denylisted"

        if self.config.rate_limit is None:
            return None
        now = self._clock()
        if now - self._last_sweep >= _WINDOW_SECS:
            self._sweep(now)
        bucket = self._windows.setdefault((account_tag, sender_id), deque())
        self._evict(bucket, now)
        if len(bucket) >= self.config.rate_limit.messages_per_minute:
            return "rate_limited"
        bucket.append(now)
        return None

    def _sweep(self, now: float) -> None:
        """Forget senders whose whole window has expired."""
        for key in list(self._windows):
            bucket = self._windows[key]
            self._evict(bucket, now)
            if not bucket:
                del self._windows[key]
        self._last_sweep = now

    @staticmethod
    def _evict(bucket: deque[float], now: float) -> None:
        while bucket and now - bucket[0] >= _WINDOW_SECS:
            bucket.popleft()
