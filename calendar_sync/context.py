"""
The engine context: every piece of shared mutable state the sync flows use.

One SyncContext is built per bridge and handed to the reconciliation engine
and the push handlers, so independent bridges (and tests) never share state.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common.config import BridgeConfig
from common.errors import PersistenceError
from common.logging_service import log_sync_event
from common.rate_limiter import RateLimitedQueue
from common.utils import RetryExecutor
from calendar_sync.guard import SyncLoopGuard
from calendar_sync.mapping_store import MappingFile, MappingStore

logger = logging.getLogger("SyncContext")


@dataclass
class SyncContext:
    config: BridgeConfig
    store: MappingStore
    mapping_file: MappingFile
    guard: SyncLoopGuard
    discord_queue: RateLimitedQueue
    google_queue: RateLimitedQueue
    retry: RetryExecutor
    discord: Any
    google: Any
    last_persist_error: Optional[str] = field(default=None)

    @property
    def identity(self) -> Optional[str]:
        """The bot's own Discord user id, once logged in."""
        return getattr(self.discord, "user_id", None)

    @property
    def calendar_id(self) -> str:
        return self.config.google_calendar_id

    def restore_mappings(self) -> bool:
        """Load the mapping file into the store. Failures leave the store empty."""
        try:
            self.store.restore(self.mapping_file.read())
            return True
        except (PersistenceError, ValueError) as e:
            logger.warning(f"Failed to load event mappings, starting fresh: {e}")
            self.store.restore({})
            return False

    async def persist(self) -> bool:
        """Write the mapping snapshot. Failures are logged, never raised."""
        try:
            await self.mapping_file.write(self.store.snapshot())
        except PersistenceError as e:
            self.last_persist_error = str(e)
            log_sync_event("persist", "error", "Failed to save event mappings", {"error": str(e)})
            return False
        self.last_persist_error = None
        logger.debug("Event mappings saved")
        return True


def build_context(
    config: BridgeConfig,
    discord: Any,
    google: Any,
    retry: Optional[RetryExecutor] = None,
) -> SyncContext:
    return SyncContext(
        config=config,
        store=MappingStore(),
        mapping_file=MappingFile(config.mappings_file),
        guard=SyncLoopGuard(default_ttl=config.guard_ttl_seconds),
        discord_queue=RateLimitedQueue(
            "discord",
            capacity=config.discord_rate_limit_per_second,
            window=config.discord_window_seconds,
            tick_interval=config.discord_queue_tick_ms / 1000.0,
        ),
        google_queue=RateLimitedQueue(
            "google",
            capacity=config.google_rate_limit_per_100_seconds,
            window=config.google_window_seconds,
            tick_interval=config.google_queue_tick_ms / 1000.0,
        ),
        retry=retry or RetryExecutor(
            max_attempts=config.max_retries,
            base_delay=config.base_retry_delay_seconds,
        ),
        discord=discord,
        google=google,
    )
