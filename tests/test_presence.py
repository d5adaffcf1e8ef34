import unittest

from chatgifs.errors import Transient
from chatgifs.presence import PresenceTracker, compute_online
from chatgifs.store import InMemoryStore

from tests.chat_util import FakeClock, make_context


class FlakyStore(InMemoryStore):
    async def get(self, path):
        raise Transient("read failed")

    async def update(self, values):
        raise Transient("write failed")


class ComputeOnlineTests(unittest.TestCase):
    def test_ttl_boundary(self):
        record = {"isOnline": True, "lastOnlineUpdate": 1_000_000}
        self.assertTrue(compute_online(record, 1_000_000 + 299_999, 300_000))
        self.assertFalse(compute_online(record, 1_000_000 + 300_000, 300_000))
        self.assertFalse(compute_online(record, 1_000_000 + 300_001, 300_000))

    def test_requires_explicit_flag_and_numeric_timestamp(self):
        self.assertFalse(compute_online(None, 0, 300_000))
        self.assertFalse(compute_online({"isOnline": False, "lastOnlineUpdate": 0}, 0, 300_000))
        self.assertFalse(compute_online({"isOnline": "yes", "lastOnlineUpdate": 0}, 0, 300_000))
        self.assertFalse(compute_online({"isOnline": True}, 0, 300_000))
        self.assertFalse(compute_online({"isOnline": True, "lastOnlineUpdate": True}, 0, 300_000))


class PresenceTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.context = make_context(self.clock)
        self.tracker = PresenceTracker(self.context)

    async def test_check_online_status_follows_ttl(self):
        self.assertTrue(await self.tracker.mark_online("u1"))
        self.clock.advance_ms(299_999)
        self.assertTrue(await self.tracker.check_online_status("u1"))
        self.clock.advance_ms(2)
        self.assertFalse(await self.tracker.check_online_status("u1"))

    async def test_missing_record_is_offline(self):
        self.assertFalse(await self.tracker.check_online_status("ghost"))
        self.assertEqual(await self.tracker.check_many(["ghost", "ghost"]), {"ghost": False})

    async def test_mark_offline_records_last_seen(self):
        await self.tracker.mark_online("u1")
        self.clock.advance(10)
        await self.tracker.mark_offline("u1")
        record = await self.context.store.get("users/u1")
        self.assertEqual(record["isOnline"], False)
        self.assertEqual(record["lastSeen"], self.clock.now())
        self.assertEqual(record["lastOnlineUpdate"], self.clock.now())

    async def test_presence_writes_keep_profile_fields(self):
        await self.context.store.set("users/u1", {"email": "a@x.io", "fullName": "Ann"})
        await self.tracker.mark_online("u1")
        record = await self.context.store.get("users/u1")
        self.assertEqual(record["fullName"], "Ann")

    async def test_callback_fires_only_on_flip(self):
        seen = []
        sub = self.tracker.subscribe_to_status("u1", seen.append)
        self.assertEqual(seen, [])

        await self.tracker.mark_online("u1")
        self.clock.advance(1)
        await self.tracker.mark_online("u1")
        await self.context.store.set("users/u1/fullName", "Ann")
        self.assertEqual(seen, [True])

        await self.tracker.mark_offline("u1")
        await self.tracker.mark_offline("u1")
        self.assertEqual(seen, [True, False])

        sub.close()
        sub.close()
        await self.tracker.mark_online("u1")
        self.assertEqual(seen, [True, False])
        self.assertEqual(self.context.store.subscriber_count, 0)

    async def test_stale_heartbeat_is_not_pushed(self):
        seen = []
        self.tracker.subscribe_to_status("u1", seen.append)
        await self.tracker.mark_online("u1")
        self.clock.advance_ms(300_001)
        self.assertEqual(seen, [True])
        self.assertFalse(await self.tracker.check_online_status("u1"))

    async def test_store_failures_degrade_to_offline(self):
        context = make_context(self.clock)
        context.store = FlakyStore()
        tracker = PresenceTracker(context)
        with self.assertLogs("chatgifs.presence", level="WARNING"):
            self.assertFalse(await tracker.mark_online("u1"))
            self.assertFalse(await tracker.check_online_status("u1"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
