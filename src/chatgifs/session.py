"""The coordinating session: sole owner of the local caches.

Components never touch these caches themselves; every mutation goes through
a :class:`ChatSession` method, which replaces a cache only after the reads
feeding it have all succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

from .context import ClientContext
from .conversations import ConversationIndex
from .errors import ChatError, Invalid, Transient
from .freshness import FreshnessTracker
from .identity import Identity
from .local_state import LocalStateStore
from .messages import MessageCache, MessageStreamReconciler, MessageSubscription
from .models import (
    MESSAGE_TEXT,
    Conversation,
    FriendRequest,
    Message,
    User,
    decode_friend_request,
    decode_user,
)
from .presence import PresenceTracker, StatusSubscription
from .scheduler import PeriodicTask, retry_fixed_delay
from .social import SocialGraph
from .store import (
    USERS_ROOT,
    chat_path,
    friend_path,
    friends_path,
    received_request_path,
    received_requests_path,
    sent_request_path,
    sent_requests_path,
    user_chat_path,
    user_chats_path,
    user_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANONYMOUS = "Anonymous"


class ChatSession:
    def __init__(self, context: ClientContext, state_store: LocalStateStore | None = None) -> None:
        self.context = context
        self.state_store = state_store or LocalStateStore(context.config.state_dir)
        self.presence = PresenceTracker(context)
        self.social = SocialGraph(context)
        self.conversations = ConversationIndex(context)
        self.reconciler = MessageStreamReconciler(context, self.conversations)

        self.user: Optional[User] = None
        self.friends: List[User] = []
        self.friend_requests: List[FriendRequest] = []
        self.recent_chats: List[Conversation] = []
        self.messages = MessageCache()
        self.online_status: Dict[str, bool] = {}
        self.current_chat: Optional[Conversation] = None
        self.last_error: Optional[str] = None
        self.freshness: Optional[FreshnessTracker] = None
        self.theme = self.state_store.load_theme()

        self._status_queue: Dict[str, bool] = {}
        self._message_subscription: Optional[MessageSubscription] = None
        self._status_subscriptions: Dict[str, StatusSubscription] = {}
        self._tasks: List[PeriodicTask] = []
        self._last_heartbeat_ms: Optional[int] = None

    # -- error surfacing ---------------------------------------------------

    async def _action(self, operation: Awaitable[T], failure_message: str) -> T:
        try:
            result = await operation
        except ChatError as exc:
            self.last_error = exc.display_message(failure_message)
            logger.info("action failed: %s", exc)
            raise
        self.last_error = None
        return result

    # -- account -----------------------------------------------------------

    async def _resolve_user(self, identity: Identity) -> User:
        record = await self.context.store.get(user_path(identity.uid))
        raw: Dict[str, Any] = record if isinstance(record, dict) else {}
        created_at = raw.get("createdAt")
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            created_at = self.context.now_ms()
        avatar = raw.get("avatar")
        friends = raw.get("friends")
        return User(
            id=identity.uid,
            email=identity.email or str(raw.get("email") or ""),
            full_name=str(raw.get("fullName") or identity.display_name or ANONYMOUS),
            created_at=created_at,
            avatar=avatar if isinstance(avatar, str) else None,
            friend_ids=tuple(sorted(friends)) if isinstance(friends, dict) else (),
        )

    async def _enter(self, identity: Identity) -> User:
        await self.stop()
        self._detach_all()
        self._clear_caches()
        try:
            self.user = await self._resolve_user(identity)
        except ChatError:
            await self._abandon()
            raise
        self.freshness = FreshnessTracker(self.state_store, identity.uid, self.context.now_ms)
        logger.info("signed in as %s", identity.uid)
        return self.user

    async def _abandon(self) -> None:
        """Leave a half-finished sign-in signed out with empty caches."""

        await self.stop()
        self._detach_all()
        self._clear_caches()
        await self.context.identity.sign_out()

    async def _load_account_data(self) -> None:
        await self.load_friends_data()
        await self.refresh_conversations()

    async def sign_in(self, email: str, password: str) -> User:
        async def enter() -> User:
            identity = await self.context.identity.sign_in(email, password)
            return await self._enter(identity)

        user = await self._action(enter(), "Failed to sign in. Please check your credentials.")
        await self._load_account_data()
        return user

    async def sign_up(self, email: str, password: str, full_name: str) -> User:
        async def register() -> User:
            identity = await self.context.identity.sign_up(email, password, full_name)
            base = user_path(identity.uid)
            try:
                await self.context.store.update(
                    {
                        f"{base}/email": identity.email,
                        f"{base}/fullName": full_name,
                        f"{base}/createdAt": self.context.now_ms(),
                    }
                )
            except ChatError:
                await self._abandon()
                raise
            return await self._enter(identity)

        user = await self._action(register(), "Failed to sign up. Please try again.")
        await self._load_account_data()
        return user

    def _clear_caches(self) -> None:
        self.user = None
        self.friends = []
        self.friend_requests = []
        self.recent_chats = []
        self.messages.clear()
        self.online_status = {}
        self.current_chat = None
        self.freshness = None
        self._status_queue = {}
        self._last_heartbeat_ms = None

    def _detach_all(self) -> None:
        self.close_conversation()
        for subscription in self._status_subscriptions.values():
            subscription.close()
        self._status_subscriptions.clear()

    async def sign_out(self) -> None:
        uid = self.context.current_uid()
        await self.stop()
        if uid is not None:
            await self.presence.mark_offline(uid)
        self._detach_all()
        await self._action(self.context.identity.sign_out(), "Failed to sign out. Please try again.")
        self._clear_caches()
        logger.info("signed out")

    async def _account_cleanup(self, uid: str) -> Dict[str, Any]:
        store = self.context.store
        updates: Dict[str, Any] = {
            user_path(uid): None,
            user_chats_path(uid): None,
            received_requests_path(uid): None,
            sent_requests_path(uid): None,
        }
        for conversation in await self.conversations.list_conversations_for_user(uid):
            updates[chat_path(conversation.id)] = None
            for participant in conversation.participants:
                if participant != uid:
                    updates[user_chat_path(participant, conversation.id)] = None

        received, sent, users = await asyncio.gather(
            store.get(received_requests_path(uid)), store.get(sent_requests_path(uid)), store.get(USERS_ROOT)
        )
        for collection, mirror in ((received, "sent"), (sent, "received")):
            if not isinstance(collection, dict):
                continue
            for child in collection.values():
                try:
                    request = decode_friend_request(child)
                except Invalid:
                    continue
                if mirror == "sent" and request.sender_id != uid:
                    updates[sent_request_path(request.sender_id, request.id)] = None
                elif mirror == "received" and request.receiver_id != uid:
                    updates[received_request_path(request.receiver_id, request.id)] = None

        if isinstance(users, dict):
            for other_id, record in users.items():
                if other_id == uid or not isinstance(record, dict):
                    continue
                friends = record.get("friends")
                if isinstance(friends, dict) and uid in friends:
                    updates[friend_path(other_id, uid)] = None
        return updates

    async def delete_account(self) -> None:
        """Remove everything the caller owns or appears in, then the identity."""

        async def delete() -> None:
            uid = self.context.require_uid()
            await self.stop()
            self._detach_all()
            updates = await self._account_cleanup(uid)
            await self.context.store.update(updates)
            await self.context.identity.delete_current()
            self.state_store.delete_user(uid)
            logger.info("deleted account %s (%d paths)", uid, len(updates))

        await self._action(delete(), "Failed to delete account. Please try again.")
        self._clear_caches()

    # -- friends -----------------------------------------------------------

    async def load_friends_data(self) -> bool:
        """Reload requests and friends together, retrying transient failures."""

        if self.context.current_uid() is None:
            return False
        config = self.context.config

        async def reload():
            await self.social.repair_request_mirrors()
            return await asyncio.gather(self.social.list_friend_requests(), self.social.list_friends())

        try:
            requests, friends = await retry_fixed_delay(
                reload,
                attempts=config.reload_max_attempts,
                delay_s=config.reload_retry_delay_s,
                retry_on=(Transient,),
                sleep=self.context.sleep,
            )
        except ChatError as exc:
            logger.error("friends reload failed: %s", exc)
            self.last_error = exc.display_message("Failed to load friends data. Please try again.")
            return False
        self.friend_requests = list(requests)
        self.friends = list(friends)
        return True

    async def send_friend_request(self, receiver_id: str) -> FriendRequest:
        async def send() -> FriendRequest:
            uid = self.context.require_uid()
            friends = await self.context.store.get(friends_path(uid))
            if isinstance(friends, dict) and receiver_id in friends:
                raise Invalid("already friends", user_message="You are already friends.")
            if await self.social.has_pending_request_with(receiver_id):
                raise Invalid("request already pending", user_message="A friend request is already pending.")
            return await self.social.send_friend_request(receiver_id)

        request = await self._action(send(), "Failed to send friend request.")
        await self.load_friends_data()
        return request

    async def accept_friend_request(self, request_id: str) -> FriendRequest:
        request = await self._action(
            self.social.accept_friend_request(request_id), "Failed to accept friend request. Please try again."
        )
        await self.load_friends_data()
        return request

    async def reject_friend_request(self, request_id: str) -> FriendRequest:
        request = await self._action(
            self.social.reject_friend_request(request_id), "Failed to reject friend request. Please try again."
        )
        await self.load_friends_data()
        return request

    async def remove_friend(self, friend_id: str) -> None:
        await self._action(self.social.remove_friend(friend_id), "Failed to remove friend. Please try again.")
        self.friends = [friend for friend in self.friends if friend.id != friend_id]
        subscription = self._status_subscriptions.pop(friend_id, None)
        if subscription is not None:
            subscription.close()

    async def search_users(self, term: str) -> List[User]:
        async def search() -> List[User]:
            uid = self.context.require_uid()
            users = await self.context.store.get(USERS_ROOT)
            if not isinstance(users, dict):
                return []
            needle = term.strip().lower()
            found: List[User] = []
            for user_id, record in users.items():
                if user_id == uid:
                    continue
                try:
                    user = decode_user(user_id, record)
                except Invalid:
                    continue
                if needle in user.email.lower() or needle in user.full_name.lower():
                    found.append(user)
            return found

        return await self._action(search(), "Failed to search users")

    # -- conversations -----------------------------------------------------

    async def refresh_conversations(self) -> List[Conversation]:
        uid = self.context.current_uid()
        if uid is None:
            return self.recent_chats
        try:
            chats = await self.conversations.list_conversations_for_user(uid)
        except ChatError as exc:
            logger.warning("conversation refresh failed: %s", exc)
            return self.recent_chats
        current = self.current_chat
        if current is not None:
            fresh = next((chat for chat in chats if chat.id == current.id), None)
            if fresh is None:
                chats.append(current)
            else:
                self.current_chat = fresh
        self.recent_chats = chats
        return chats

    def _on_messages(self, conversation_id: str, messages: List[Message]) -> None:
        previous = self.messages.latest(conversation_id)
        self.messages.replace_conversation(conversation_id, messages)
        if not messages or self.freshness is None:
            return
        newest = messages[-1]
        if previous is None or newest.id != previous.id:
            open_id = self.current_chat.id if self.current_chat is not None else None
            self.freshness.note_message(newest, open_id)

    def _queue_status(self, user_id: str, online: bool) -> None:
        self._status_queue[user_id] = online

    def _watch_status(self, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            if user_id in self._status_subscriptions:
                continue
            self._status_subscriptions[user_id] = self.presence.subscribe_to_status(
                user_id, lambda online, uid=user_id: self._queue_status(uid, online)
            )

    async def open_conversation(self, conversation: Conversation) -> None:
        uid = self.context.require_uid()
        self.close_conversation()
        self.current_chat = conversation
        if self.freshness is not None:
            self.freshness.mark_opened(conversation.id)
        self._message_subscription = self.reconciler.subscribe(conversation.id, self._on_messages)
        others = [p for p in conversation.participants if p != uid]
        self.online_status.update(await self.presence.check_many(others))
        self._watch_status(others)

    def close_conversation(self) -> None:
        subscription, self._message_subscription = self._message_subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        self.current_chat = None

    async def start_chat_with(self, friend_id: str) -> Conversation:
        """Return the conversation with ``friend_id``, creating it if none is found."""

        async def start() -> Conversation:
            uid = self.context.require_uid()
            friends = await self.context.store.get(friends_path(uid))
            if not isinstance(friends, dict) or friend_id not in friends:
                raise Invalid("not a friend", user_message="Can only create chats with friends")
            existing = await self.conversations.find_existing([friend_id])
            if existing is not None:
                return existing
            return await self.conversations.create_conversation([friend_id])

        conversation = await self._action(start(), "Failed to create chat")
        if all(chat.id != conversation.id for chat in self.recent_chats):
            self.recent_chats.insert(0, conversation)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._action(self.conversations.delete_conversation(conversation_id), "Failed to delete chat")
        if self.current_chat is not None and self.current_chat.id == conversation_id:
            self.close_conversation()
        self.messages.drop(conversation_id)
        if self.freshness is not None:
            self.freshness.forget(conversation_id)
        self.recent_chats = [chat for chat in self.recent_chats if chat.id != conversation_id]

    async def send(self, content: str, msg_type: str = MESSAGE_TEXT) -> Message:
        if self.current_chat is None:
            self.last_error = "Open a chat first."
            raise Invalid("no active conversation", user_message=self.last_error)
        return await self._action(
            self.reconciler.send_message(self.current_chat.id, content, msg_type),
            "Failed to send message. Please try again.",
        )

    async def load_messages(self, conversation_id: str) -> List[Message]:
        """Read a conversation's messages into the cache without opening it."""

        messages = await self.reconciler.list_messages(conversation_id)
        self._on_messages(conversation_id, messages)
        return messages

    def has_unread(self, conversation_id: str) -> bool:
        if self.freshness is None:
            return False
        open_id = self.current_chat.id if self.current_chat is not None else None
        return self.freshness.has_unread(conversation_id, self.messages.for_conversation(conversation_id), open_id)

    # -- presence and scheduling -------------------------------------------

    async def _heartbeat(self, uid: str) -> None:
        now_ms = self.context.now_ms()
        if self._last_heartbeat_ms is not None and now_ms - self._last_heartbeat_ms < self.presence.ttl_ms // 2:
            return
        if await self.presence.mark_online(uid):
            self._last_heartbeat_ms = now_ms

    async def refresh_presence(self) -> Dict[str, bool]:
        uid = self.context.current_uid()
        if uid is None:
            return {}
        await self._heartbeat(uid)
        watched = [friend.id for friend in self.friends]
        if self.current_chat is not None:
            watched.extend(p for p in self.current_chat.participants if p != uid)
        statuses = await self.presence.check_many(watched)
        self._status_queue.update(statuses)
        return statuses

    def flush_status_queue(self) -> int:
        queued, self._status_queue = self._status_queue, {}
        changed = sum(1 for user_id, online in queued.items() if self.online_status.get(user_id) != online)
        self.online_status.update(queued)
        return changed

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks)

    async def start(self) -> None:
        uid = self.context.require_uid()
        if self._tasks:
            return
        await self._heartbeat(uid)
        self.online_status.update(await self.presence.check_many(friend.id for friend in self.friends))
        self._watch_status(friend.id for friend in self.friends)
        config = self.context.config
        self._tasks = [
            PeriodicTask("conversations", config.conversation_poll_s, self.refresh_conversations, sleep=self.context.sleep),
            PeriodicTask("presence", config.presence_poll_s, self.refresh_presence, sleep=self.context.sleep),
            PeriodicTask("status-flush", config.status_flush_s, self.flush_status_queue, sleep=self.context.sleep),
        ]
        for task in self._tasks:
            task.start()
        logger.info("session started for %s", uid)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            await task.stop()

    # -- preferences -------------------------------------------------------

    def set_active_tab(self, tab: str) -> None:
        if self.freshness is None:
            raise Invalid("not signed in")
        self.freshness.set_active_tab(tab)

    def set_theme(self, theme: str) -> None:
        try:
            self.state_store.save_theme(theme)
        except ValueError as exc:
            raise Invalid(str(exc)) from exc
        self.theme = theme
