"""
Loop-prevention guard.

Before the bridge writes to Discord it registers a key such as
"update:<discord id>". The gateway echoes every write back as a
notification; push handlers check the key and ignore their own echo.

Key lifetimes:
- released when the originating operation completes,
- promoted from a placeholder to the real id once a create returns,
- or expired by a fallback timer when no echo is expected to be handled.

Keys are reference counted so overlapping holders on one entity each keep
the key active until they release their own hold.
"""

import uuid
import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional

logger = logging.getLogger("SyncLoopGuard")

KIND_CREATE = "create"
KIND_UPDATE = "update"
KIND_DELETE = "delete"

PLACEHOLDER_PREFIX = "pending-"


def guard_key(kind: str, entity_id: str) -> str:
    return f"{kind}:{entity_id}"


class SyncLoopGuard:

    def __init__(self, default_ttl: float = 2.0):
        self.default_ttl = default_ttl
        self._active: Counter = Counter()
        self._timers: Dict[str, List[asyncio.TimerHandle]] = {}

    def register(self, key: str) -> str:
        self._active[key] += 1
        return key

    def is_active(self, key: str) -> bool:
        return self._active[key] > 0

    def release(self, key: str) -> None:
        if self._active[key] <= 1:
            self._active.pop(key, None)
        else:
            self._active[key] -= 1

    def register_placeholder(self, kind: str) -> str:
        """Register a key for a write whose entity id is not known yet."""
        return self.register(guard_key(kind, f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex[:12]}"))

    def promote(self, placeholder: str, kind: str, real_id: str) -> str:
        """Swap a placeholder for the real id's key without a gap in coverage."""
        real_key = self.register(guard_key(kind, real_id))
        self.release(placeholder)
        return real_key

    def release_later(self, key: str, delay: Optional[float] = None) -> asyncio.TimerHandle:
        """Release one hold on `key` after `delay` seconds."""
        ttl = self.default_ttl if delay is None else delay
        loop = asyncio.get_running_loop()
        handle = loop.call_later(ttl, self._expire, key)
        self._timers.setdefault(key, []).append(handle)
        return handle

    def _expire(self, key: str) -> None:
        timers = self._timers.get(key)
        if timers:
            timers.pop(0)
            if not timers:
                self._timers.pop(key, None)
        self.release(key)
        logger.debug(f"Guard key {key} expired")

    def active_keys(self) -> List[str]:
        return sorted(k for k, count in self._active.items() if count > 0)

    def clear(self) -> None:
        for handles in self._timers.values():
            for handle in handles:
                handle.cancel()
        self._timers.clear()
        self._active.clear()

    def __len__(self) -> int:
        return len(self.active_keys())
