"""Remote store gateway interface, store layout and the in-memory gateway."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import Invalid
from .hub import PathKey, Subscription, SubscriptionHub
from .pushid import generate_push_id

logger = logging.getLogger(__name__)

_FORBIDDEN_KEY_CHARS = set(".#$[]")


class StoreSubscription(Protocol):
    def close(self) -> None: ...


class RemoteStore(Protocol):
    async def get(self, path: str) -> Any: ...

    async def set(self, path: str, value: Any) -> None: ...

    async def update(self, values: Mapping[str, Any]) -> None: ...

    async def delete(self, path: str) -> None: ...

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> StoreSubscription: ...

    def push_key(self) -> str: ...


def split_path(path: str) -> PathKey:
    segments = tuple(segment for segment in path.strip("/").split("/") if segment)
    for segment in segments:
        if _FORBIDDEN_KEY_CHARS & set(segment):
            raise Invalid(f"invalid key in path: {path!r}")
    return segments


def join_path(*segments: str) -> str:
    for segment in segments:
        if not segment or "/" in segment or _FORBIDDEN_KEY_CHARS & set(segment):
            raise Invalid(f"invalid path segment: {segment!r}")
    return "/".join(segments)


# Store layout.

def user_path(user_id: str) -> str:
    return join_path("users", user_id)


def friends_path(user_id: str) -> str:
    return join_path("users", user_id, "friends")


def friend_path(user_id: str, friend_id: str) -> str:
    return join_path("users", user_id, "friends", friend_id)


CHATS_ROOT = "chats"
USERS_ROOT = "users"


def chat_path(conversation_id: str) -> str:
    return join_path(CHATS_ROOT, conversation_id)


def messages_path(conversation_id: str) -> str:
    return join_path(CHATS_ROOT, conversation_id, "messages")


def message_path(conversation_id: str, message_id: str) -> str:
    return join_path(CHATS_ROOT, conversation_id, "messages", message_id)


def user_chats_path(user_id: str) -> str:
    return join_path("userChats", user_id)


def user_chat_path(user_id: str, conversation_id: str) -> str:
    return join_path("userChats", user_id, conversation_id)


def received_requests_path(user_id: str) -> str:
    return join_path("friendRequests", user_id)


def received_request_path(user_id: str, request_id: str) -> str:
    return join_path("friendRequests", user_id, request_id)


def sent_requests_path(user_id: str) -> str:
    return join_path("sentRequests", user_id)


def sent_request_path(user_id: str, request_id: str) -> str:
    return join_path("sentRequests", user_id, request_id)


def _normalize(value: Any) -> Any:
    """Drop null children and empty containers the way the hosted store does."""

    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            key = str(key)
            if _FORBIDDEN_KEY_CHARS & set(key) or "/" in key:
                raise Invalid(f"invalid key: {key!r}")
            normalized = _normalize(child)
            if normalized is not None:
                cleaned[key] = normalized
        return cleaned or None
    if isinstance(value, list):
        cleaned_list = [_normalize(child) for child in value]
        cleaned_list = [child for child in cleaned_list if child is not None]
        return cleaned_list or None
    return copy.deepcopy(value)


class InMemoryStore:
    """Tree-shaped store with change streams, used for tests and simulation."""

    def __init__(self, *, key_func: Callable[[], str] = generate_push_id) -> None:
        self._root: Dict[str, Any] = {}
        self._hub = SubscriptionHub()
        self._key_func = key_func

    def _read(self, keys: PathKey) -> Any:
        node: Any = self._root
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return copy.deepcopy(node) if node != {} else None

    def _write(self, keys: PathKey, value: Any) -> None:
        if not keys:
            self._root = (_normalize(value) if isinstance(value, dict) else None) or {}
            return
        value = _normalize(value)
        if value is None:
            self._remove(keys)
            return
        node = self._root
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = value

    def _remove(self, keys: PathKey) -> None:
        trail: List[tuple[Dict[str, Any], str]] = []
        node: Any = self._root
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return
            trail.append((node, key))
            node = node[key]
        parent, key = trail.pop()
        del parent[key]
        while trail and parent == {}:
            parent, key = trail.pop()
            del parent[key]

    def _broadcast(self, changed: Iterable[PathKey]) -> None:
        self._hub.broadcast(changed, self._read)

    async def get(self, path: str) -> Any:
        return self._read(split_path(path))

    async def set(self, path: str, value: Any) -> None:
        keys = split_path(path)
        logger.debug("set %s", path)
        self._write(keys, value)
        self._broadcast([keys])

    async def update(self, values: Mapping[str, Any]) -> None:
        """Apply every ``path -> value`` pair together; ``None`` deletes."""

        parsed = [(split_path(path), value) for path, value in values.items()]
        for idx, (keys, _) in enumerate(parsed):
            if not keys:
                raise Invalid("multi-path update cannot target the root")
            for other, _ in parsed[idx + 1 :]:
                shorter = min(len(keys), len(other))
                if keys[:shorter] == other[:shorter]:
                    raise Invalid("multi-path update paths must not overlap")
        logger.debug("update %s", ", ".join(values))
        for keys, value in parsed:
            self._write(keys, value)
        self._broadcast([keys for keys, _ in parsed])

    async def delete(self, path: str) -> None:
        keys = split_path(path)
        logger.debug("delete %s", path)
        self._remove(keys)
        self._broadcast([keys])

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> Subscription:
        keys = split_path(path)
        subscription = self._hub.subscribe(keys, callback)
        subscription.deliver(self._read(keys))
        return subscription

    def push_key(self) -> str:
        return self._key_func()

    def snapshot(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._root) or None

    @property
    def subscriber_count(self) -> int:
        return len(self._hub)
