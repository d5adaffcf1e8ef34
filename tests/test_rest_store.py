import asyncio
import json
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from chatgifs.errors import Invalid, Transient, Unauthenticated
from chatgifs.rest_store import RestStore, apply_stream_event
from chatgifs.store import InMemoryStore


class FakeDatabase:
    """Realtime database REST surface backed by an :class:`InMemoryStore`."""

    def __init__(self):
        self.backend = InMemoryStore()
        self.requests = []
        self.streams = []

    def app(self):
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    async def handle(self, request):
        path = request.path.strip("/")
        if path.endswith(".json"):
            path = path[: -len(".json")]
        self.requests.append((request.method, path, request.query.get("auth")))
        if path.startswith("locked"):
            return web.json_response({"error": "Permission denied"}, status=401)
        if path.startswith("boom"):
            return web.json_response({"error": "internal"}, status=500)
        if path.startswith("missing"):
            return web.json_response({"error": "not found"}, status=404)
        if path.startswith("bad"):
            return web.json_response({"error": "Invalid data; couldn't parse JSON object"}, status=400)

        if request.method == "GET":
            if request.headers.get("Accept") == "text/event-stream":
                return await self._stream(request, path)
            return web.json_response(await self.backend.get(path))
        if request.method == "PUT":
            body = await request.json()
            await self.backend.set(path, body)
            return web.json_response(body)
        if request.method == "PATCH":
            body = await request.json()
            await self.backend.update({f"{path}/{key}" if path else key: value for key, value in body.items()})
            return web.json_response(body)
        if request.method == "DELETE":
            await self.backend.delete(path)
            return web.json_response(None)
        return web.json_response({"error": "method"}, status=405)

    async def _stream(self, request, path):
        queue = asyncio.Queue()
        self.streams.append(queue)
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        await self._send(resp, "put", {"path": "/", "data": await self.backend.get(path)})
        while True:
            event = await queue.get()
            if event is None:
                break
            await self._send(resp, *event)
        return resp

    async def _send(self, resp, event_type, data):
        await resp.write(f"event: {event_type}\ndata: {json.dumps(data)}\n\n".encode("utf-8"))

    def push(self, event_type, data):
        for queue in self.streams:
            queue.put_nowait((event_type, data))


class RestStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.fake = FakeDatabase()
        self.server = TestServer(self.fake.app())
        await self.server.start_server()
        self.store = RestStore(str(self.server.make_url("/")), token_func=lambda: "tok-1", reconnect_delay_s=0.01)

    async def asyncTearDown(self):
        await self.store.close()
        for queue in self.fake.streams:
            queue.put_nowait(None)
        await self.server.close()

    async def test_reads_and_writes_carry_the_token(self):
        await self.store.set("users/u1", {"email": "a@example.com", "fullName": "A"})
        self.assertEqual(await self.store.get("users/u1/fullName"), "A")
        await self.store.update({"users/u1/isOnline": True, "users/u2/fullName": "B"})
        self.assertEqual(
            await self.store.get("users"),
            {"u1": {"email": "a@example.com", "fullName": "A", "isOnline": True}, "u2": {"fullName": "B"}},
        )
        await self.store.delete("users/u2")
        await self.store.set("users/u1/isOnline", None)
        self.assertEqual(await self.store.get("users"), {"u1": {"email": "a@example.com", "fullName": "A"}})

        methods = [method for method, _, _ in self.fake.requests]
        self.assertEqual(methods, ["PUT", "GET", "PATCH", "GET", "DELETE", "DELETE", "GET"])
        self.assertEqual({auth for _, _, auth in self.fake.requests}, {"tok-1"})
        self.assertEqual(self.fake.requests[2][1], "")

    async def test_absent_values_read_as_none(self):
        self.assertIsNone(await self.store.get("users/nobody"))
        self.assertIsNone(await self.store.get("missing/thing"))

    async def test_status_codes_map_to_error_kinds(self):
        with self.assertRaises(Unauthenticated):
            await self.store.get("locked/a")
        with self.assertRaises(Transient):
            await self.store.set("boom/a", 1)
        with self.assertRaises(Invalid):
            await self.store.set("bad/a", 1)

    async def test_update_rejects_root_paths(self):
        with self.assertRaises(Invalid):
            await self.store.update({})
        with self.assertRaises(Invalid):
            await self.store.update({"/": 1})

    async def test_unreachable_server_is_transient(self):
        await self.server.close()
        with self.assertRaises(Transient):
            await self.store.get("users")

    async def test_stream_applies_put_and_patch_events(self):
        await self.fake.backend.set("chats/c1/messages/m0", {"content": "first"})
        deliveries = asyncio.Queue()
        subscription = self.store.subscribe("chats/c1/messages", deliveries.put_nowait)

        async def next_delivery():
            return await asyncio.wait_for(deliveries.get(), timeout=2.0)

        self.assertEqual(await next_delivery(), {"m0": {"content": "first"}})

        self.fake.push("put", {"path": "/m1", "data": {"content": "second"}})
        self.assertEqual(await next_delivery(), {"m0": {"content": "first"}, "m1": {"content": "second"}})

        self.fake.push("patch", {"path": "/", "data": {"m1/content": "edited", "m2": {"content": "third"}}})
        self.assertEqual(
            await next_delivery(),
            {"m0": {"content": "first"}, "m1": {"content": "edited"}, "m2": {"content": "third"}},
        )

        self.fake.push("keep-alive", None)
        self.fake.push("put", {"path": "/m1/content", "data": "edited"})
        self.fake.push("put", {"path": "/m0", "data": None})
        self.assertEqual(await next_delivery(), {"m1": {"content": "edited"}, "m2": {"content": "third"}})

        subscription.close()
        subscription.close()
        self.assertFalse(subscription.active)

    async def test_cancel_event_ends_the_stream(self):
        deliveries = asyncio.Queue()
        subscription = self.store.subscribe("chats/c1", deliveries.put_nowait)
        self.assertIsNone(await asyncio.wait_for(deliveries.get(), timeout=2.0))
        with self.assertLogs("chatgifs.rest_store", level="WARNING"):
            self.fake.push("cancel", None)
            await asyncio.wait_for(subscription.task, timeout=2.0)
        self.assertEqual(self.store._subscriptions, [])

    def test_requires_a_database_url(self):
        with self.assertRaises(Invalid):
            RestStore("")


class ApplyStreamEventTests(unittest.TestCase):
    def test_nested_writes_and_deletes(self):
        snapshot = apply_stream_event(None, ("a", "b"), 1)
        self.assertEqual(snapshot, {"a": {"b": 1}})
        snapshot = apply_stream_event(snapshot, ("a", "c"), {"d": 2})
        self.assertEqual(snapshot, {"a": {"b": 1, "c": {"d": 2}}})
        snapshot = apply_stream_event(snapshot, ("a", "b"), None)
        self.assertEqual(snapshot, {"a": {"c": {"d": 2}}})
        self.assertIsNone(apply_stream_event(snapshot, ("a",), None))
        self.assertEqual(apply_stream_event(snapshot, (), 5), 5)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
