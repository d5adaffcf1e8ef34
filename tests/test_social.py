import unittest

from chatgifs.errors import Invalid, NotFound, Unauthenticated
from chatgifs.models import REQUEST_ACCEPTED, REQUEST_PENDING, REQUEST_REJECTED, SIDE_RECEIVED, SIDE_SENT
from chatgifs.social import UNKNOWN_NAME, SocialGraph
from chatgifs.store import friends_path, received_request_path, sent_request_path

from tests.chat_util import FakeClock, act_as, make_context, register


class SocialGraphTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.context = make_context(self.clock)
        self.social = SocialGraph(self.context)
        self.alice = await register(self.context, "alice@example.com", "Alice")
        self.bob = await register(self.context, "bob@example.com", "Bob")
        self.carol = await register(self.context, "carol@example.com", "Carol")

    async def _friend_ids(self, user_id):
        friends = await self.context.store.get(friends_path(user_id))
        return set(friends or {})

    async def _befriend(self, a_email, b_id, b_email):
        await act_as(self.context, a_email)
        request = await self.social.send_friend_request(b_id)
        await act_as(self.context, b_email)
        await self.social.accept_friend_request(request.id)
        return request

    async def test_request_accept_end_to_end(self):
        await act_as(self.context, "alice@example.com")
        sent = await self.social.send_friend_request(self.bob)
        self.assertEqual(sent.side, SIDE_SENT)
        self.assertEqual(sent.status, REQUEST_PENDING)

        await act_as(self.context, "bob@example.com")
        pending = await self.social.list_friend_requests()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].sender_id, self.alice)
        self.assertEqual(pending[0].side, SIDE_RECEIVED)
        self.assertEqual(pending[0].sender_name, "Alice")

        accepted = await self.social.accept_friend_request(pending[0].id)
        self.assertEqual(accepted.status, REQUEST_ACCEPTED)

        self.assertEqual([u.id for u in await self.social.list_friends()], [self.alice])
        self.assertEqual(await self.social.list_friend_requests(), [])
        await act_as(self.context, "alice@example.com")
        self.assertEqual([u.id for u in await self.social.list_friends()], [self.bob])
        self.assertEqual(await self.social.list_friend_requests(), [])

        for path in (received_request_path(self.bob, sent.id), sent_request_path(self.alice, sent.id)):
            self.assertEqual((await self.context.store.get(path))["status"], REQUEST_ACCEPTED)

    async def test_friend_maps_stay_symmetric(self):
        await self._befriend("alice@example.com", self.bob, "bob@example.com")
        await self._befriend("carol@example.com", self.alice, "alice@example.com")
        for user in (self.alice, self.bob, self.carol):
            for friend in await self._friend_ids(user):
                self.assertIn(user, await self._friend_ids(friend))

        await act_as(self.context, "bob@example.com")
        await self.social.remove_friend(self.alice)
        self.assertEqual(await self._friend_ids(self.bob), set())
        self.assertEqual(await self._friend_ids(self.alice), {self.carol})

    async def test_remove_friend_is_idempotent(self):
        await act_as(self.context, "alice@example.com")
        before = self.context.store.snapshot()
        await self.social.remove_friend(self.bob)
        await self.social.remove_friend(self.bob)
        self.assertEqual(self.context.store.snapshot(), before)

    async def test_reject_keeps_history_without_links(self):
        await act_as(self.context, "alice@example.com")
        request = await self.social.send_friend_request(self.bob)
        await act_as(self.context, "bob@example.com")
        rejected = await self.social.reject_friend_request(request.id)
        self.assertEqual(rejected.status, REQUEST_REJECTED)
        self.assertEqual((await self.context.store.get(sent_request_path(self.alice, request.id)))["status"], REQUEST_REJECTED)
        self.assertEqual(await self._friend_ids(self.bob), set())
        self.assertEqual(await self.social.list_friend_requests(), [])

    async def test_accept_failures_are_loud(self):
        await act_as(self.context, "bob@example.com")
        with self.assertRaises(NotFound):
            await self.social.accept_friend_request("missing")

        await act_as(self.context, "alice@example.com")
        request = await self.social.send_friend_request(self.bob)
        await act_as(self.context, "bob@example.com")
        await self.social.accept_friend_request(request.id)
        with self.assertRaises(Invalid):
            await self.social.accept_friend_request(request.id)
        with self.assertRaises(Invalid):
            await self.social.reject_friend_request(request.id)

    async def test_send_validation(self):
        await act_as(self.context, "alice@example.com")
        with self.assertRaises(Invalid):
            await self.social.send_friend_request("")
        with self.assertRaises(Invalid):
            await self.social.send_friend_request(self.alice)
        with self.assertRaises(NotFound):
            await self.social.send_friend_request("nobody")
        await self.context.identity.sign_out()
        with self.assertRaises(Unauthenticated):
            await self.social.send_friend_request(self.bob)

    async def test_pending_lookup_covers_both_directions(self):
        await act_as(self.context, "alice@example.com")
        await self.social.send_friend_request(self.bob)
        self.assertTrue(await self.social.has_pending_request_with(self.bob))
        self.assertFalse(await self.social.has_pending_request_with(self.carol))
        await act_as(self.context, "bob@example.com")
        self.assertTrue(await self.social.has_pending_request_with(self.alice))

    async def test_names_come_from_live_lookup(self):
        await act_as(self.context, "alice@example.com")
        await self.social.send_friend_request(self.bob)
        await self.context.store.set(f"users/{self.bob}/fullName", "Robert")
        await self.context.store.set(f"users/{self.alice}/fullName", "Alicia")

        (outgoing,) = await self.social.list_friend_requests()
        self.assertEqual(outgoing.receiver_name, "Robert")
        await act_as(self.context, "bob@example.com")
        (incoming,) = await self.social.list_friend_requests()
        self.assertEqual(incoming.sender_name, "Alicia")

        await self.context.store.set(f"users/{self.alice}", None)
        (incoming,) = await self.social.list_friend_requests()
        self.assertEqual(incoming.sender_name, UNKNOWN_NAME)

    async def test_undecodable_requests_are_skipped(self):
        await act_as(self.context, "bob@example.com")
        await self.context.store.set(received_request_path(self.bob, "junk"), {"status": "pending"})
        with self.assertLogs("chatgifs.social", level="WARNING"):
            self.assertEqual(await self.social.list_friend_requests(), [])

    async def test_repair_restores_half_applied_accept(self):
        await act_as(self.context, "alice@example.com")
        request = await self.social.send_friend_request(self.bob)
        # Accept landed on the receiver's copy and one friend link only.
        await self.context.store.update(
            {
                f"{received_request_path(self.bob, request.id)}/status": REQUEST_ACCEPTED,
                f"{friends_path(self.bob)}/{self.alice}": {"id": self.alice, "createdAt": 1},
            }
        )
        await act_as(self.context, "bob@example.com")
        with self.assertLogs("chatgifs.social", level="WARNING"):
            self.assertGreater(await self.social.repair_request_mirrors(), 0)
        self.assertEqual((await self.context.store.get(sent_request_path(self.alice, request.id)))["status"], REQUEST_ACCEPTED)
        self.assertEqual(await self._friend_ids(self.alice), {self.bob})
        self.assertEqual(await self.social.repair_request_mirrors(), 0)

    async def test_repair_does_not_resurrect_removed_friends(self):
        await self._befriend("alice@example.com", self.bob, "bob@example.com")
        await self.social.remove_friend(self.alice)
        self.assertEqual(await self.social.repair_request_mirrors(), 0)
        self.assertEqual(await self._friend_ids(self.bob), set())

    async def test_repair_recreates_missing_mirror(self):
        await act_as(self.context, "alice@example.com")
        request = await self.social.send_friend_request(self.bob)
        await self.context.store.set(received_request_path(self.bob, request.id), None)
        self.assertEqual(await self.social.repair_request_mirrors(), 1)
        await act_as(self.context, "bob@example.com")
        self.assertEqual([r.id for r in await self.social.list_friend_requests()], [request.id])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
