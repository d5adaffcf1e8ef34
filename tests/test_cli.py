import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr

from chatgifs.cli import _load_frames, main, simulate
from chatgifs.context import in_memory_context

PASSWORD = "secret-pw"


def _run(frames, context):
    output = io.StringIO()
    simulate(frames, output, context)
    return [json.loads(line) for line in output.getvalue().splitlines()]


class SimulateTests(unittest.TestCase):
    def setUp(self):
        self.context = in_memory_context()

    def _sign_up_pair(self):
        return _run(
            [
                {"t": "user.signup", "email": "alice@example.com", "password": PASSWORD, "name": "Alice"},
                {"t": "user.signup", "email": "bob@example.com", "password": PASSWORD},
            ],
            self.context,
        )

    def test_friendship_chat_and_messages(self):
        alice, bob = [line["uid"] for line in self._sign_up_pair()]
        results = _run(
            [
                {"t": "user.signin", "email": "alice@example.com", "password": PASSWORD},
                {"t": "user.signin", "email": "bob@example.com", "password": PASSWORD},
                {"t": "friend.request", "as": "alice@example.com", "to": "bob@example.com"},
                {"t": "request.list", "as": "bob@example.com"},
                {"t": "friend.accept", "as": "bob@example.com", "from": "alice@example.com"},
                {"t": "friend.list", "as": "alice@example.com"},
                {"t": "friend.list", "as": "bob@example.com"},
                {"t": "chat.create", "as": "alice@example.com", "with": ["bob@example.com"]},
            ],
            self.context,
        )
        self.assertTrue(all(line["ok"] for line in results))
        self.assertEqual(results[2]["request"]["status"], "pending")
        self.assertEqual([r["side"] for r in results[3]["requests"]], ["received"])
        self.assertEqual(results[4]["request"]["status"], "accepted")
        self.assertEqual([f["id"] for f in results[5]["friends"]], [bob])
        self.assertEqual([f["name"] for f in results[6]["friends"]], ["Alice"])
        chat = results[7]["chat"]
        self.assertEqual(chat["participants"], [alice, bob])

        results = _run(
            [
                {"t": "user.signin", "email": "alice@example.com", "password": PASSWORD},
                {"t": "user.signin", "email": "bob@example.com", "password": PASSWORD},
                {"t": "msg.send", "as": "alice@example.com", "chat_id": chat["id"], "content": "hi"},
                {"t": "msg.send", "as": "bob@example.com", "chat_id": chat["id"], "content": "wave.gif", "type": "gif"},
                {"t": "msg.list", "chat_id": chat["id"]},
                {"t": "chat.list", "as": "alice@example.com"},
                {"t": "presence.online", "as": "bob@example.com"},
                {"t": "presence.check", "user": "bob@example.com"},
                {"t": "presence.check", "user": "alice@example.com"},
            ],
            self.context,
        )
        self.assertTrue(all(line["ok"] for line in results))
        messages = results[4]["messages"]
        self.assertEqual([(m["from"], m["type"]) for m in messages], [(alice, "text"), (bob, "gif")])
        self.assertEqual([c["id"] for c in results[5]["chats"]], [chat["id"]])
        self.assertTrue(results[6]["written"])
        self.assertTrue(results[7]["online"])
        self.assertFalse(results[8]["online"])

    def test_failed_operations_report_inline(self):
        self._sign_up_pair()
        results = _run(
            [
                {"t": "user.signin", "email": "bob@example.com", "password": "wrong-pw"},
                {"t": "user.signin", "email": "bob@example.com", "password": PASSWORD},
                {"t": "friend.request", "to": "bob@example.com"},
                {"t": "friend.accept", "from": "alice@example.com"},
                {"t": "msg.send", "chat_id": "nope", "content": "hi"},
            ],
            self.context,
        )
        self.assertEqual([line["ok"] for line in results], [False, True, False, False, False])
        self.assertEqual(results[0]["error"], "Failed to sign in. Please check your credentials.")
        self.assertEqual(results[2]["error"], "You cannot add yourself as a friend.")
        self.assertEqual(results[3]["error"], "Friend request not found.")

    def test_malformed_frames_raise(self):
        with self.assertRaises(ValueError):
            _run([{"t": "chat.explode"}], self.context)
        with self.assertRaises(ValueError):
            _run(["not a frame"], self.context)
        with self.assertRaises(ValueError):
            _run([{"t": "friend.request"}], self.context)


class LoadFramesTests(unittest.TestCase):
    def test_accepts_array_object_lines_and_empty(self):
        self.assertEqual(_load_frames(io.StringIO('[{"t": "chat.list"}]')), [{"t": "chat.list"}])
        self.assertEqual(_load_frames(io.StringIO('{"t": "chat.list"}')), [{"t": "chat.list"}])
        lines = '{"t": "chat.list"}\n\n{"t": "friend.list"}\n'
        self.assertEqual(_load_frames(io.StringIO(lines)), [{"t": "chat.list"}, {"t": "friend.list"}])
        self.assertEqual(_load_frames(io.StringIO("  \n")), [])


class MainTests(unittest.TestCase):
    def _frames_file(self, content):
        handle = tempfile.NamedTemporaryFile("w", suffix=".jsonl", delete=False)
        self.addCleanup(os.unlink, handle.name)
        with handle:
            handle.write(content)
        return handle.name

    def test_simulate_file(self):
        path = self._frames_file(
            json.dumps({"t": "user.signup", "email": "a@example.com", "password": PASSWORD}) + "\n"
            + json.dumps({"t": "presence.online"}) + "\n"
        )
        output = io.StringIO()
        self.assertEqual(main(["simulate", "-f", path], output=output), 0)
        lines = [json.loads(line) for line in output.getvalue().splitlines()]
        self.assertEqual([line["t"] for line in lines], ["user.signup", "presence.online"])

    def test_bad_input_exits_with_usage_code(self):
        path = self._frames_file('{"t": "nope"}')
        with redirect_stderr(io.StringIO()) as err:
            self.assertEqual(main(["simulate", "-f", path], output=io.StringIO()), 2)
            self.assertEqual(main(["--log-level", "chatty", "simulate", "-f", path]), 2)
            self.assertEqual(main([]), 2)
        self.assertIn("unsupported frame type", err.getvalue())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
