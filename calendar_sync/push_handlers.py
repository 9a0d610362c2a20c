"""
Push sync: Discord → Google Calendar, driven by gateway notifications.

A notification is ignored when it is the echo of this service's own write
(guard key active), when the entity is already mapped from Google, or when the
entity was written by this bot. Everything else is written to Google through
the Google queue. Failures are logged and never raised into the dispatcher,
and the guard key is always released.
"""

import logging
from typing import Any, Dict, Optional

from common.errors import StaleReferenceError
from common.logging_service import log_sync_event
from calendar_sync.context import SyncContext
from calendar_sync.guard import KIND_CREATE, KIND_DELETE, KIND_UPDATE, guard_key
from calendar_sync.models import DISCORD_ID_PROPERTY, ScheduledEntity
from calendar_sync.translator import is_remote_origin, to_calendar_event

logger = logging.getLogger("PushSync")


class PushSyncHandlers:

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def register(self, client) -> None:
        """Subscribe to the Discord client's scheduled event notifications."""
        client.on("scheduled_event_create", self.on_create)
        client.on("scheduled_event_update", self.on_update)
        client.on("scheduled_event_delete", self.on_delete)

    # ------------------------------------------------------------------
    # Google writes
    # ------------------------------------------------------------------

    async def _insert(self, entity_id: str, body: Dict[str, Any]) -> str:
        """Insert the Google copy of a Discord event.

        An insert is not idempotent: a failed attempt may still have created
        the event. Every retry first looks for an event already tagged with
        this Discord id and adopts it instead of inserting a second one.
        """
        ctx = self.ctx
        attempts = 0

        async def attempt() -> Dict[str, Any]:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                existing = await ctx.google_queue.enqueue(
                    lambda: ctx.google.find_events_by_property(ctx.calendar_id, DISCORD_ID_PROPERTY, entity_id)
                )
                if existing:
                    logger.info(f"Adopting Google event {existing[0]['id']} from an earlier insert of {entity_id}")
                    return existing[0]
            return await ctx.google_queue.enqueue(lambda: ctx.google.insert_event(ctx.calendar_id, body))

        created = await ctx.retry.run(attempt, description="Google event insert")
        return created["id"]

    async def _update(self, remote_id: str, body: Dict[str, Any]) -> None:
        ctx = self.ctx
        await ctx.retry.run(
            lambda: ctx.google_queue.enqueue(lambda: ctx.google.update_event(ctx.calendar_id, remote_id, body)),
            description=f"Google event update {remote_id}",
        )

    async def _delete(self, remote_id: str) -> None:
        ctx = self.ctx
        await ctx.retry.run(
            lambda: ctx.google_queue.enqueue(lambda: ctx.google.delete_event(ctx.calendar_id, remote_id)),
            description=f"Google event delete {remote_id}",
        )

    # ------------------------------------------------------------------
    # Notification handlers
    # ------------------------------------------------------------------

    def _skip_reason(self, entity: ScheduledEntity) -> Optional[str]:
        ctx = self.ctx
        if ctx.guard.is_active(guard_key(KIND_CREATE, entity.id)):
            return "created by this service"
        if ctx.store.get_remote(entity.id) is not None:
            return "already mapped from Google"
        identity = ctx.identity
        if identity is not None and entity.creator_id == identity:
            return "created by this bot"
        if is_remote_origin(entity.description):
            return "carries the Google Calendar footer"
        return None

    async def on_create(self, data: Dict[str, Any]) -> None:
        ctx = self.ctx
        entity = ScheduledEntity.from_api(data)

        reason = self._skip_reason(entity)
        if reason is not None:
            logger.debug(f"Skipping Discord event {entity.id} ({entity.name}): {reason}")
            return

        key = ctx.guard.register(guard_key(KIND_CREATE, entity.id))
        try:
            remote_id = await self._insert(entity.id, to_calendar_event(entity))
            ctx.store.put(remote_id, entity.id)
            await ctx.persist()
            log_sync_event(
                "push_create", "success",
                f"Synced Discord event to Google: {entity.name}",
                {"discord_event_id": entity.id, "google_event_id": remote_id},
            )
        except Exception as e:
            log_sync_event(
                "push_create", "error",
                f"Failed to sync Discord event to Google: {entity.name}",
                {"discord_event_id": entity.id, "error": str(e)},
            )
        finally:
            ctx.guard.release(key)

    async def on_update(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> None:
        ctx = self.ctx
        entity = ScheduledEntity.from_api(new)

        if ctx.guard.is_active(guard_key(KIND_UPDATE, entity.id)):
            logger.debug(f"Skipping echo of our update to Discord event {entity.id}")
            return
        remote_id = ctx.store.get_remote(entity.id)
        if remote_id is None:
            logger.debug(f"Skipping update of unmapped Discord event {entity.id}")
            return

        key = ctx.guard.register(guard_key(KIND_UPDATE, entity.id))
        try:
            body = to_calendar_event(entity)
            try:
                await self._update(remote_id, body)
            except StaleReferenceError:
                # Google copy was deleted out-of-band; recreate it from Discord
                logger.warning(f"Google event {remote_id} no longer exists, creating new one")
                ctx.store.remove_by_local(entity.id)
                remote_id = await self._insert(entity.id, body)
                ctx.store.put(remote_id, entity.id)
                await ctx.persist()
            log_sync_event(
                "push_update", "success",
                f"Updated Google event from Discord: {entity.name}",
                {"discord_event_id": entity.id, "google_event_id": remote_id},
            )
        except Exception as e:
            log_sync_event(
                "push_update", "error",
                f"Failed to update Google event from Discord: {entity.name}",
                {"discord_event_id": entity.id, "error": str(e)},
            )
        finally:
            ctx.guard.release(key)

    async def on_delete(self, data: Dict[str, Any]) -> None:
        ctx = self.ctx
        entity_id = str(data["id"])

        if ctx.guard.is_active(guard_key(KIND_DELETE, entity_id)):
            logger.debug(f"Skipping echo of our delete of Discord event {entity_id}")
            return
        remote_id = ctx.store.get_remote(entity_id)
        if remote_id is None:
            logger.debug(f"Skipping delete of unmapped Discord event {entity_id}")
            return

        key = ctx.guard.register(guard_key(KIND_DELETE, entity_id))
        try:
            try:
                await self._delete(remote_id)
            except StaleReferenceError:
                logger.debug(f"Google event {remote_id} was already deleted")
            ctx.store.remove_by_local(entity_id)
            await ctx.persist()
            log_sync_event(
                "push_delete", "success",
                f"Deleted Google event for Discord event {entity_id}",
                {"discord_event_id": entity_id, "google_event_id": remote_id},
            )
        except Exception as e:
            log_sync_event(
                "push_delete", "error",
                f"Failed to delete Google event for Discord event {entity_id}",
                {"discord_event_id": entity_id, "error": str(e)},
            )
        finally:
            ctx.guard.release(key)
