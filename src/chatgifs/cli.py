"""Command line entry point: frame simulation and GIF lookups."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Iterable, List, TextIO

from .config import load_config_from_env
from .context import ClientContext, in_memory_context
from .conversations import ConversationIndex
from .errors import ChatError, NotFound
from .gifs import GiphyClient
from .messages import MessageStreamReconciler
from .models import MESSAGE_TEXT, REQUEST_PENDING, SIDE_RECEIVED, Conversation, FriendRequest, User
from .presence import PresenceTracker
from .social import SocialGraph
from .store import user_path

FRAME_TYPES = (
    "user.signup",
    "user.signin",
    "friend.request",
    "friend.accept",
    "friend.reject",
    "friend.remove",
    "friend.list",
    "request.list",
    "chat.create",
    "chat.list",
    "msg.send",
    "msg.list",
    "presence.online",
    "presence.offline",
    "presence.check",
)


def _user_record(user: User) -> Dict[str, Any]:
    return {"id": user.id, "email": user.email, "name": user.full_name}


def _request_record(request: FriendRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "from": request.sender_id,
        "to": request.receiver_id,
        "status": request.status,
        "side": request.side,
    }


def _chat_record(chat: Conversation) -> Dict[str, Any]:
    return {"id": chat.id, "participants": list(chat.participants), "updatedAt": chat.updated_at}


class _Simulator:
    def __init__(self, context: ClientContext) -> None:
        self.context = context
        self.presence = PresenceTracker(context)
        self.social = SocialGraph(context)
        self.conversations = ConversationIndex(context)
        self.messages = MessageStreamReconciler(context, self.conversations)
        self._passwords: Dict[str, str] = {}
        self._uids: Dict[str, str] = {}

    def resolve(self, ref: str) -> str:
        return self._uids.get(ref.strip().lower(), ref)

    async def act_as(self, ref: str) -> None:
        email = ref.strip().lower()
        uid = self._uids.get(email)
        if uid is None or self.context.current_uid() == uid:
            return
        await self.context.identity.sign_in(email, self._passwords[email])

    async def user_signup(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        email, password = frame["email"], frame["password"]
        name = frame.get("name") or email.split("@", 1)[0]
        identity = await self.context.identity.sign_up(email, password, name)
        base = user_path(identity.uid)
        await self.context.store.update(
            {f"{base}/email": identity.email, f"{base}/fullName": name, f"{base}/createdAt": self.context.now_ms()}
        )
        self._passwords[identity.email] = password
        self._uids[identity.email] = identity.uid
        return {"uid": identity.uid}

    async def user_signin(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        identity = await self.context.identity.sign_in(frame["email"], frame["password"])
        self._passwords[identity.email] = frame["password"]
        self._uids[identity.email] = identity.uid
        return {"uid": identity.uid}

    async def friend_request(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        request = await self.social.send_friend_request(self.resolve(frame["to"]))
        return {"request": _request_record(request)}

    async def _request_id(self, frame: Dict[str, Any]) -> str:
        if "request_id" in frame:
            return frame["request_id"]
        sender = self.resolve(frame["from"])
        for request in await self.social.list_friend_requests():
            if request.side == SIDE_RECEIVED and request.sender_id == sender and request.status == REQUEST_PENDING:
                return request.id
        raise NotFound(f"no pending request from {frame['from']}", user_message="Friend request not found.")

    async def friend_accept(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        request = await self.social.accept_friend_request(await self._request_id(frame))
        return {"request": _request_record(request)}

    async def friend_reject(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        request = await self.social.reject_friend_request(await self._request_id(frame))
        return {"request": _request_record(request)}

    async def friend_remove(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        await self.social.remove_friend(self.resolve(frame["friend"]))
        return {}

    async def friend_list(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        friends = await self.social.list_friends()
        return {"friends": [_user_record(friend) for friend in sorted(friends, key=lambda f: f.email)]}

    async def request_list(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        return {"requests": [_request_record(r) for r in await self.social.list_friend_requests()]}

    async def chat_create(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        participants = [self.resolve(ref) for ref in frame["with"]]
        chat = await self.conversations.create_conversation(participants)
        return {"chat": _chat_record(chat)}

    async def chat_list(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        chats = await self.conversations.list_conversations_for_user(self.context.require_uid())
        return {"chats": [_chat_record(chat) for chat in chats]}

    async def msg_send(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        message = await self.messages.send_message(
            frame["chat_id"], frame["content"], frame.get("type", MESSAGE_TEXT)
        )
        return {"msg_id": message.id, "ts": message.timestamp}

    async def msg_list(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        messages = await self.messages.list_messages(frame["chat_id"])
        return {
            "messages": [
                {"id": m.id, "from": m.sender_id, "type": m.type, "content": m.content, "ts": m.timestamp}
                for m in messages
            ]
        }

    async def presence_online(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        return {"written": await self.presence.mark_online(self.context.require_uid())}

    async def presence_offline(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        return {"written": await self.presence.mark_offline(self.context.require_uid())}

    async def presence_check(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        return {"online": await self.presence.check_online_status(self.resolve(frame["user"]))}

    def handler_for(self, frame_type: str) -> Callable[[Dict[str, Any]], Any]:
        return getattr(self, frame_type.replace(".", "_"))


async def _simulate(frames: Iterable[dict], output: TextIO, context: ClientContext) -> None:
    simulator = _Simulator(context)
    for frame in frames:
        if not isinstance(frame, dict):
            raise ValueError(f"frame must be an object: {frame!r}")
        frame_type = frame.get("t")
        if frame_type not in FRAME_TYPES:
            raise ValueError(f"unsupported frame type: {frame_type}")
        handler = simulator.handler_for(frame_type)
        result: Dict[str, Any] = {"t": frame_type}
        try:
            if "as" in frame:
                await simulator.act_as(frame["as"])
            result.update(await handler(frame))
            result["ok"] = True
        except KeyError as exc:
            raise ValueError(f"{frame_type} frame is missing {exc}") from exc
        except ChatError as exc:
            result.update(ok=False, error=exc.display_message())
        output.write(json.dumps(result, sort_keys=True) + "\n")


def simulate(frames: Iterable[dict], output: TextIO, context: ClientContext | None = None) -> None:
    """Run JSON frames against an in-memory store and identity service."""

    asyncio.run(_simulate(frames, output, context or in_memory_context()))


def _load_frames(handle: TextIO) -> List[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: List[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    try:
        frames = _load_frames(args.file or sys.stdin)
        simulate(frames, output)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


async def _gif_lookup(args: argparse.Namespace, output: TextIO) -> None:
    config = load_config_from_env()
    client = GiphyClient(
        config.giphy_api_key,
        limit=config.gif_search_limit,
        rating=config.gif_rating,
        timeout_s=config.request_timeout_s,
    )
    try:
        if args.gif_command == "search":
            results = await client.search(args.query)
        else:
            results = await client.trending()
    finally:
        await client.close()
    for gif in results:
        output.write(json.dumps(gif.to_record(), sort_keys=True) + "\n")


def _run_gifs(args: argparse.Namespace, output: TextIO) -> int:
    try:
        asyncio.run(_gif_lookup(args, output))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except ChatError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chatgifs", description="Chat client state tools")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Run chat frames against an in-memory store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    gifs_parser = subparsers.add_parser("gifs", help="Query the GIF search provider")
    gif_commands = gifs_parser.add_subparsers(dest="gif_command", required=True)
    search_parser = gif_commands.add_parser("search", help="Search GIFs")
    search_parser.add_argument("query", help="Search terms")
    gif_commands.add_parser("trending", help="Trending GIFs")

    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return int(exc.code or 0)

    level = logging.getLevelName(args.log_level.upper())
    if not isinstance(level, int):
        print(f"error: unknown log level {args.log_level}", file=sys.stderr)
        return 2
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_gifs(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
