from datetime import datetime, timezone
from unittest import IsolatedAsyncioTestCase

from common.errors import TransientError
from calendar_sync.guard import guard_key
from calendar_sync.push_handlers import PushSyncHandlers

from fakes import (
    BOT_USER_ID,
    FakeDiscord,
    FakeGoogleCalendar,
    FakeMappingFile,
    FakeSleep,
    discord_event,
    make_context,
)

START = datetime(2026, 3, 3, 18, 0, tzinfo=timezone.utc)


class PushHandlerTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.google = FakeGoogleCalendar()
        self.discord = FakeDiscord()
        self.mapping_file = FakeMappingFile()
        self.sleep = FakeSleep()
        self.ctx = make_context(self.google, self.discord, self.mapping_file, self.sleep)
        self.ctx.discord_queue.start()
        self.ctx.google_queue.start()
        self.handlers = PushSyncHandlers(self.ctx)

    async def asyncTearDown(self) -> None:
        await self.ctx.discord_queue.stop()
        await self.ctx.google_queue.stop()
        self.ctx.guard.clear()

    # --- create -----------------------------------------------------------

    async def test_create_for_entity_mapped_from_google_is_ignored(self) -> None:
        self.ctx.store.put("g1", "d1")

        await self.handlers.on_create(discord_event("d1", "Standup", START))

        self.assertEqual(self.google.inserted, [])
        self.assertEqual(self.mapping_file.writes, [])

    async def test_create_while_guard_key_active_is_ignored(self) -> None:
        self.ctx.guard.register(guard_key("create", "d2"))

        await self.handlers.on_create(discord_event("d2", "Standup", START))

        self.assertEqual(self.google.inserted, [])

    async def test_create_by_the_bot_itself_is_ignored(self) -> None:
        await self.handlers.on_create(discord_event("d3", "Standup", START, creator_id=BOT_USER_ID))

        self.assertEqual(self.google.inserted, [])

    async def test_create_with_google_footer_is_ignored(self) -> None:
        description = "Agenda\n\n[View in Google Calendar](https://www.google.com/calendar/event?eid=abc)"

        await self.handlers.on_create(discord_event("d4", "Standup", START, description=description))

        self.assertEqual(self.google.inserted, [])

    async def test_create_mentioning_the_footer_text_mid_description_is_synced(self) -> None:
        description = "Synced from Google Calendar\nwas the old footer, this is a real event"

        await self.handlers.on_create(discord_event("d5", "Workshop", START, description=description))

        self.assertEqual(len(self.google.inserted), 1)

    async def test_user_created_event_is_inserted_and_mapped(self) -> None:
        await self.handlers.on_create(
            discord_event("d6", "Game night", START, minutes=120, description="Bring snacks")
        )

        self.assertEqual(len(self.google.inserted), 1)
        body = self.google.inserted[0]
        self.assertEqual(body["summary"], "Game night")
        self.assertEqual(body["description"], "Bring snacks\n\nSynced from Discord")
        self.assertEqual(body["start"], {"dateTime": "2026-03-03T18:00:00Z", "timeZone": "UTC"})
        self.assertEqual(body["end"], {"dateTime": "2026-03-03T20:00:00Z", "timeZone": "UTC"})
        self.assertEqual(body["location"], "Voice lounge")
        self.assertEqual(
            body["extendedProperties"]["private"],
            {"syncOrigin": "discord", "discordEventId": "d6"},
        )

        self.assertEqual(self.ctx.store.get_remote("d6"), "g-new-1")
        self.assertEqual(self.ctx.store.get_local("g-new-1"), "d6")
        self.assertEqual(len(self.mapping_file.writes), 1)
        self.assertFalse(self.ctx.guard.is_active(guard_key("create", "d6")))

    async def test_failed_insert_leaves_no_mapping_and_releases_guard(self) -> None:
        self.google.insert_error = TransientError("Google Calendar API returned 503")

        await self.handlers.on_create(discord_event("d7", "Game night", START))

        self.assertIsNone(self.ctx.store.get_remote("d7"))
        self.assertEqual(self.mapping_file.writes, [])
        self.assertEqual(self.ctx.guard.active_keys(), [])
        self.assertEqual(self.sleep.delays, [1.0, 2.0])

    async def test_insert_that_timed_out_after_writing_is_adopted_on_retry(self) -> None:
        self.google.insert_timeouts = 1

        await self.handlers.on_create(discord_event("d8", "Game night", START))

        self.assertEqual(len(self.google.inserted), 1)
        self.assertEqual(list(self.google.events), ["g-new-1"])
        self.assertEqual(self.ctx.store.get_remote("d8"), "g-new-1")
        self.assertEqual(self.sleep.delays, [1.0])

    # --- update -----------------------------------------------------------

    async def test_update_of_mapped_entity_updates_google(self) -> None:
        self.google.events["g1"] = {"id": "g1", "summary": "Old"}
        self.ctx.store.put("g1", "d1")

        await self.handlers.on_update(None, discord_event("d1", "New title", START))

        self.assertEqual(len(self.google.updated), 1)
        event_id, body = self.google.updated[0]
        self.assertEqual(event_id, "g1")
        self.assertEqual(body["summary"], "New title")
        self.assertFalse(self.ctx.guard.is_active(guard_key("update", "d1")))

    async def test_update_of_unmapped_entity_is_ignored(self) -> None:
        await self.handlers.on_update(None, discord_event("d9", "Untracked", START))

        self.assertEqual(self.google.updated, [])
        self.assertEqual(self.google.inserted, [])

    async def test_update_echo_is_ignored(self) -> None:
        self.google.events["g1"] = {"id": "g1", "summary": "Old"}
        self.ctx.store.put("g1", "d1")
        self.ctx.guard.register(guard_key("update", "d1"))

        await self.handlers.on_update(None, discord_event("d1", "Echo", START))

        self.assertEqual(self.google.updated, [])

    async def test_update_with_stale_google_event_recreates_it(self) -> None:
        self.ctx.store.put("g-gone", "d1")

        await self.handlers.on_update(None, discord_event("d1", "Standup", START))

        self.assertEqual(len(self.google.inserted), 1)
        self.assertEqual(self.ctx.store.get_remote("d1"), "g-new-1")
        self.assertIsNone(self.ctx.store.get_local("g-gone"))
        self.assertEqual(len(self.mapping_file.writes), 1)

    # --- delete -----------------------------------------------------------

    async def test_delete_of_mapped_entity_deletes_google_event(self) -> None:
        self.google.events["g1"] = {"id": "g1", "summary": "Standup"}
        self.ctx.store.put("g1", "d1")

        await self.handlers.on_delete(discord_event("d1", "Standup", START))

        self.assertEqual(self.google.deleted, ["g1"])
        self.assertIsNone(self.ctx.store.get_remote("d1"))
        self.assertIsNone(self.ctx.store.get_local("g1"))
        self.assertEqual(len(self.mapping_file.writes), 1)

    async def test_delete_when_google_event_already_gone_clears_mapping(self) -> None:
        self.ctx.store.put("g-gone", "d1")

        await self.handlers.on_delete({"id": "d1", "guild_id": "guild-1"})

        self.assertEqual(self.google.deleted, [])
        self.assertEqual(len(self.ctx.store), 0)

    async def test_delete_echo_is_ignored(self) -> None:
        self.google.events["g1"] = {"id": "g1"}
        self.ctx.store.put("g1", "d1")
        self.ctx.guard.register(guard_key("delete", "d1"))

        await self.handlers.on_delete({"id": "d1"})

        self.assertEqual(self.google.deleted, [])
        self.assertEqual(self.ctx.store.get_local("g1"), "d1")

    async def test_register_subscribes_to_scheduled_event_notifications(self) -> None:
        self.handlers.register(self.discord)

        self.assertEqual(
            sorted(self.discord.handlers),
            ["scheduled_event_create", "scheduled_event_delete", "scheduled_event_update"],
        )


if __name__ == "__main__":
    import unittest

    unittest.main()
