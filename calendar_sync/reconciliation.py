"""
===================================================================================
RECONCILIATION ENGINE - Google Calendar → Discord
===================================================================================

Periodic pull pass. Each pass:
1. Fetches every Google event starting between now and one month from now.
2. Updates the mapped Discord event, or creates one for unmapped events.
   A mapping whose Discord event disappeared is cleared and re-created.
   An unmapped event that originally came from Discord is relinked, not copied.
3. Deletes Discord events whose Google counterpart is gone, cancelled or over.
4. Persists the mapping store once.

Per-event work is retried on its own and a failure there never aborts the
rest of the pass. Every Discord write holds a guard key from before its first
suspension until shortly after it returns, so the gateway echo is ignored.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

from common.errors import StaleReferenceError
from common.logging_service import log_sync_event
from common.utils import add_months
from calendar_sync.context import SyncContext
from calendar_sync.guard import KIND_CREATE, KIND_DELETE, KIND_UPDATE, guard_key
from calendar_sync.models import CalendarEvent, SyncResult, SyncStats
from calendar_sync.translator import is_local_origin, to_scheduled_event

logger = logging.getLogger("Reconciliation")

DIRECTION = "google_to_discord"
LOOKAHEAD_MONTHS = 1

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


class ReconciliationEngine:

    def __init__(self, ctx: SyncContext, clock: Optional[Callable[[], datetime]] = None):
        self.ctx = ctx
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self.last_result: Optional[SyncResult] = None

    async def run_pass(self) -> SyncResult:
        """Run one reconciliation pass, retrying the whole pass on failure."""
        start_time = time.time()
        try:
            result = await self.ctx.retry.run(self._reconcile, description="calendar sync")
        except Exception as e:
            log_sync_event("reconcile", "error", f"Calendar sync failed: {e}")
            result = SyncResult(
                success=False,
                direction=DIRECTION,
                destination_count=len(self.ctx.store),
                elapsed_seconds=time.time() - start_time,
                error_message=str(e),
            )
        self.last_result = result
        return result

    async def _reconcile(self) -> SyncResult:
        ctx = self.ctx
        start_time = time.time()
        stats = SyncStats()
        now = self._now()
        window_end = add_months(now, LOOKAHEAD_MONTHS)

        logger.info("Starting calendar sync...")
        raw_events = await ctx.google_queue.enqueue(
            lambda: ctx.google.list_events(ctx.calendar_id, time_min=now, time_max=window_end)
        )
        events = [CalendarEvent.from_api(item) for item in raw_events]
        fetched_ids: Set[str] = set()

        for event in events:
            if event.is_cancelled:
                stats.skipped += 1
                continue
            fetched_ids.add(event.id)
            try:
                outcome = await ctx.retry.run(
                    lambda event=event: self._apply(event, now),
                    description=f"sync of Google event {event.id}",
                )
            except Exception as e:
                stats.errors += 1
                logger.error(f"Failed to sync Google event {event.id} ({event.summary}): {e}")
                continue

            if outcome == CREATED:
                stats.created += 1
            elif outcome == UPDATED:
                stats.updated += 1
            else:
                stats.skipped += 1

        await self._remove_deleted(fetched_ids, now, stats)
        await ctx.persist()

        elapsed = time.time() - start_time
        result = SyncResult(
            success=stats.errors == 0,
            direction=DIRECTION,
            stats=stats,
            source_count=len(events),
            destination_count=len(ctx.store),
            elapsed_seconds=elapsed,
        )
        log_sync_event(
            "reconcile",
            "success" if result.success else "warning",
            f"Calendar sync completed - processed {len(events)} events",
            stats.to_dict(),
        )
        return result

    # ------------------------------------------------------------------
    # Per-event operations
    # ------------------------------------------------------------------

    async def _apply(self, event: CalendarEvent, now: datetime) -> str:
        if event.start is None:
            logger.warning(f"Skipping Google event {event.id} without a start time")
            return SKIPPED

        local_id = self.ctx.store.get_local(event.id)
        if local_id is not None:
            if await self._update(event, local_id):
                return UPDATED
            logger.warning(f"Discord event {local_id} no longer exists, creating new one")
        elif is_local_origin(event) and event.origin_id:
            if await self._relink(event):
                return SKIPPED

        if event.start <= now:
            # Discord refuses scheduled events that already started
            logger.debug(f"Skipping in-progress Google event {event.id} ({event.summary})")
            return SKIPPED

        await self._create(event)
        return CREATED

    async def _create(self, event: CalendarEvent) -> str:
        ctx = self.ctx
        payload = to_scheduled_event(event)

        placeholder = ctx.guard.register_placeholder(KIND_CREATE)
        try:
            created = await ctx.discord_queue.enqueue(lambda: ctx.discord.create_scheduled_event(payload))
            local_id = str(created["id"])
        except Exception:
            ctx.guard.release(placeholder)
            raise

        # No suspension between here and the mapping write
        real_key = ctx.guard.promote(placeholder, KIND_CREATE, local_id)
        ctx.store.put(event.id, local_id)
        ctx.guard.release_later(real_key)

        logger.info(f"Successfully synced Google→Discord: {event.summary}")
        return local_id

    async def _relink(self, event: CalendarEvent) -> bool:
        """Handle an unmapped Google event this service wrote on behalf of Discord.

        Covers mappings lost between a push write and its persist, and
        duplicate Google copies of one Discord event. Returns False only when
        the Discord event no longer exists; while it does, the Google event
        is never copied back into Discord.
        """
        ctx = self.ctx
        local_id = event.origin_id
        existing = await ctx.discord_queue.enqueue(lambda: ctx.discord.lookup_entity(local_id))
        if existing is None:
            return False

        current = ctx.store.get_remote(local_id)
        if current is None:
            ctx.store.put(event.id, local_id)
            logger.info(f"Relinked Google event {event.id} to Discord event {local_id}")
        elif current != event.id:
            logger.warning(
                f"Google event {event.id} duplicates {current} for Discord event {local_id}, skipping"
            )
        return True

    async def _update(self, event: CalendarEvent, local_id: str) -> bool:
        """Update the mapped Discord event. False means the mapping was stale and is now cleared."""
        ctx = self.ctx
        payload = to_scheduled_event(event)

        key = ctx.guard.register(guard_key(KIND_UPDATE, local_id))
        try:
            existing = await ctx.discord_queue.enqueue(lambda: ctx.discord.lookup_entity(local_id))
            if existing is None:
                raise StaleReferenceError("discord", local_id)
            await ctx.discord_queue.enqueue(lambda: ctx.discord.update_scheduled_event(local_id, payload))
        except StaleReferenceError:
            ctx.guard.release(key)
            ctx.store.remove_by_remote(event.id)
            return False
        except Exception:
            ctx.guard.release(key)
            raise

        ctx.guard.release_later(key)
        logger.info(f"Updated Discord event: {event.summary}")
        return True

    async def _remove_deleted(self, fetched_ids: Set[str], now: datetime, stats: SyncStats) -> None:
        ctx = self.ctx
        candidates: Dict[str, str] = {
            remote_id: local_id
            for remote_id, local_id in ctx.store.items()
            if remote_id not in fetched_ids
        }
        deleted = 0

        for remote_id, local_id in candidates.items():
            if ctx.store.get_local(remote_id) != local_id:
                # Changed by a push handler while this pass was suspended
                continue
            try:
                gone = await ctx.retry.run(
                    lambda remote_id=remote_id: self._is_gone(remote_id, now),
                    description=f"lookup of Google event {remote_id}",
                )
                if not gone:
                    continue
                await ctx.retry.run(
                    lambda remote_id=remote_id, local_id=local_id: self._delete(remote_id, local_id),
                    description=f"delete of Discord event {local_id}",
                )
                deleted += 1
            except Exception as e:
                stats.errors += 1
                logger.error(f"Failed to delete Discord event {local_id}: {e}")

        stats.deleted += deleted
        if deleted:
            logger.info(f"Cleaned up {deleted} deleted events")

    async def _is_gone(self, remote_id: str, now: datetime) -> bool:
        """True when the Google event was deleted, cancelled, or already ended.

        Events that only fell past the lookahead window are still live.
        """
        ctx = self.ctx
        try:
            raw = await ctx.google_queue.enqueue(lambda: ctx.google.get_event(ctx.calendar_id, remote_id))
        except StaleReferenceError:
            return True
        event = CalendarEvent.from_api(raw)
        return event.is_cancelled or event.has_ended(now)

    async def _delete(self, remote_id: str, local_id: str) -> None:
        ctx = self.ctx
        key = ctx.guard.register(guard_key(KIND_DELETE, local_id))
        try:
            await ctx.discord_queue.enqueue(lambda: ctx.discord.delete_scheduled_event(local_id))
            logger.info(f"Deleted Discord event: {local_id}")
        except StaleReferenceError:
            logger.debug(f"Discord event {local_id} was already deleted")
        except Exception:
            ctx.guard.release(key)
            raise

        ctx.store.remove_by_remote(remote_id)
        ctx.guard.release_later(key)
