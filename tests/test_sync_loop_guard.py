import asyncio
from unittest import IsolatedAsyncioTestCase

from calendar_sync.guard import SyncLoopGuard, guard_key


class SyncLoopGuardTests(IsolatedAsyncioTestCase):
    async def test_register_and_release(self) -> None:
        guard = SyncLoopGuard()
        key = guard.register(guard_key("update", "d1"))

        self.assertEqual(key, "update:d1")
        self.assertTrue(guard.is_active("update:d1"))
        self.assertFalse(guard.is_active("update:d2"))

        guard.release(key)
        self.assertFalse(guard.is_active(key))

    async def test_overlapping_holders_keep_key_active(self) -> None:
        guard = SyncLoopGuard()
        guard.register("update:d1")
        guard.register("update:d1")

        guard.release("update:d1")
        self.assertTrue(guard.is_active("update:d1"))

        guard.release("update:d1")
        self.assertFalse(guard.is_active("update:d1"))

    async def test_releasing_unknown_key_is_harmless(self) -> None:
        guard = SyncLoopGuard()
        guard.release("delete:never-registered")

        self.assertEqual(guard.active_keys(), [])

    async def test_placeholder_promotion_has_no_gap(self) -> None:
        guard = SyncLoopGuard()
        placeholder = guard.register_placeholder("create")

        self.assertTrue(placeholder.startswith("create:pending-"))
        self.assertTrue(guard.is_active(placeholder))

        real_key = guard.promote(placeholder, "create", "d42")

        self.assertEqual(real_key, "create:d42")
        self.assertTrue(guard.is_active(real_key))
        self.assertFalse(guard.is_active(placeholder))
        self.assertEqual(len(guard), 1)

    async def test_release_later_expires_the_key(self) -> None:
        guard = SyncLoopGuard(default_ttl=0.01)
        key = guard.register("create:d1")
        guard.release_later(key)

        self.assertTrue(guard.is_active(key))
        await asyncio.sleep(0.05)
        self.assertFalse(guard.is_active(key))

    async def test_clear_cancels_pending_expiry(self) -> None:
        guard = SyncLoopGuard()
        guard.release_later(guard.register("create:d1"), delay=0.01)

        guard.clear()
        guard.register("create:d1")
        await asyncio.sleep(0.05)

        # The cancelled timer must not release the new hold
        self.assertTrue(guard.is_active("create:d1"))
