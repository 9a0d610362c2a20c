"""
===================================================================================
CALENDAR BRIDGE - Service lifecycle
===================================================================================

Wires the clients, queues and sync flows together:

    start()  validate config → restore mappings → start queues →
             authenticate Google (retried) → subscribe to notifications →
             log in to Discord (retried)
    ready    load the guild's scheduled events into the client cache;
             the first READY starts the reconciliation loop:
             one pass immediately, then one every SYNC_INTERVAL_MINUTES
    stop()   stop the loop and queues → persist mappings → close clients

Reconciliation passes never overlap. A pass requested while another runs
(timer vs. POST /sync/calendar) is skipped.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from common.config import BridgeConfig
from common.discord_client import DiscordClient
from common.google_calendar import GoogleCalendarClient
from common.health_monitor import ComponentHealth, HealthStatus, SystemHealthReport
from common.logging_service import log_sync_event
from common.utils import RetryExecutor
from calendar_sync.context import build_context
from calendar_sync.models import SyncResult
from calendar_sync.push_handlers import PushSyncHandlers
from calendar_sync.reconciliation import ReconciliationEngine

logger = logging.getLogger("CalendarBridge")


class CalendarBridge:

    def __init__(
        self,
        config: BridgeConfig,
        discord: Optional[Any] = None,
        google: Optional[Any] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.config = config
        discord = discord or DiscordClient(config.discord_token, config.guild_id)
        google = google or GoogleCalendarClient(
            config.google_client_id,
            config.google_client_secret,
            config.google_refresh_token,
        )
        self.ctx = build_context(config, discord, google, retry)
        self.engine = ReconciliationEngine(self.ctx)
        self.push = PushSyncHandlers(self.ctx)

        self._sync_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._subscribed = False
        self.started_at: Optional[datetime] = None
        self.last_sync_start: Optional[datetime] = None
        self.last_sync_end: Optional[datetime] = None
        self.last_gateway_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.config.validate()
        ctx = self.ctx
        logger.info("Starting Discord Calendar Sync Bot...")

        ctx.restore_mappings()
        ctx.discord_queue.start()
        ctx.google_queue.start()

        await ctx.retry.run(ctx.google.authenticate, description="Google Calendar authentication")

        if not self._subscribed:
            ctx.discord.on("ready", self._on_ready)
            ctx.discord.on("error", self._on_gateway_error)
            ctx.discord.on("throttled", self._on_throttled)
            self.push.register(ctx.discord)
            self._subscribed = True

        await ctx.retry.run(ctx.discord.login, description="Discord login")
        self.started_at = datetime.now(timezone.utc)
        log_sync_event("startup", "success", "Calendar bridge started")

    async def stop(self) -> None:
        ctx = self.ctx
        logger.info("Shutting down calendar bridge...")

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        await ctx.discord_queue.stop()
        await ctx.google_queue.stop()
        await ctx.persist()

        await ctx.discord.close()
        await ctx.google.aclose()
        ctx.guard.clear()
        logger.info("Calendar bridge stopped")

    # ------------------------------------------------------------------
    # Reconciliation loop
    # ------------------------------------------------------------------

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_lock.locked()

    @property
    def loop_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start_sync_loop(self) -> None:
        if not self.loop_running:
            self._loop_task = asyncio.get_running_loop().create_task(self._sync_loop())
            logger.info(f"Calendar sync scheduled every {self.config.sync_interval_minutes} minutes")

    async def _sync_loop(self) -> None:
        while True:
            try:
                await self.trigger_sync()
            except Exception:
                logger.exception("Calendar sync loop iteration failed")
            await asyncio.sleep(self.config.sync_interval_seconds)

    async def trigger_sync(self) -> Optional[SyncResult]:
        """Run one reconciliation pass. Returns None when a pass is already running."""
        if self._sync_lock.locked():
            logger.warning("Calendar sync already in progress, skipping this request")
            return None

        async with self._sync_lock:
            self.last_sync_start = datetime.now(timezone.utc)
            result = await self.engine.run_pass()
            self.last_sync_end = datetime.now(timezone.utc)
            return result

    # ------------------------------------------------------------------
    # Discord lifecycle notifications
    # ------------------------------------------------------------------

    async def _on_ready(self, user: Optional[Dict[str, Any]]) -> None:
        self.last_gateway_error = None
        username = (user or {}).get("username")
        logger.info(f"Bot is ready as {username}")
        await self._warm_event_cache()
        self.start_sync_loop()

    async def _warm_event_cache(self) -> None:
        """Load the guild's scheduled events so reconciliation lookups hit the cache."""
        ctx = self.ctx
        try:
            events = await ctx.discord_queue.enqueue(ctx.discord.list_scheduled_events)
            logger.info(f"Loaded {len(events)} Discord scheduled events")
        except Exception as e:
            # Lookups fall back to REST per event
            logger.warning(f"Could not load Discord scheduled events: {e}")

    async def _on_gateway_error(self, error: Exception) -> None:
        self.last_gateway_error = str(error)
        log_sync_event("discord", "error", f"Discord client error: {error}")

    async def _on_throttled(self, info: Dict[str, Any]) -> None:
        logger.warning(f"Discord rate limit hit: {info}")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_report(self) -> SystemHealthReport:
        ctx = self.ctx
        discord = ctx.discord

        if discord.is_ready:
            discord_health = ComponentHealth(
                "discord", HealthStatus.HEALTHY, "Gateway connected",
                {"user_id": ctx.identity, "cached_events": discord.cached_event_count},
            )
        elif self.last_gateway_error:
            discord_health = ComponentHealth(
                "discord", HealthStatus.UNHEALTHY, f"Gateway error: {self.last_gateway_error}",
            )
        else:
            discord_health = ComponentHealth("discord", HealthStatus.DEGRADED, "Gateway not connected")

        google_health = ComponentHealth(
            "google_calendar",
            HealthStatus.HEALTHY if ctx.google.authenticated else HealthStatus.DEGRADED,
            "Authenticated" if ctx.google.authenticated else "Not authenticated",
            {"calendar_id": ctx.calendar_id},
        )

        if ctx.last_persist_error:
            store_health = ComponentHealth(
                "mapping_store", HealthStatus.DEGRADED,
                f"Last persist failed: {ctx.last_persist_error}", ctx.store.counts(),
            )
        else:
            store_health = ComponentHealth(
                "mapping_store", HealthStatus.HEALTHY,
                f"{len(ctx.store)} events mapped", ctx.store.counts(),
            )

        last_result = self.engine.last_result
        return SystemHealthReport(
            components=[discord_health, google_health, store_health],
            extra={
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at else None
                ),
                "mappings": ctx.store.counts(),
                "queues": {
                    "discord": ctx.discord_queue.get_status(),
                    "google": ctx.google_queue.get_status(),
                },
                "sync": {
                    "loop_running": self.loop_running,
                    "sync_in_progress": self.sync_in_progress,
                    "last_sync_start": self.last_sync_start.isoformat() if self.last_sync_start else None,
                    "last_sync_end": self.last_sync_end.isoformat() if self.last_sync_end else None,
                    "last_result": last_result.to_dict() if last_result else None,
                },
                "guard_keys": len(ctx.guard),
            },
        )
