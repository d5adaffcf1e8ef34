from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .context import ClientContext
from .conversations import ConversationIndex
from .errors import Invalid
from .models import MESSAGE_TEXT, MESSAGE_TYPES, LastMessage, Message, decode_message
from .store import chat_path, message_path, messages_path

logger = logging.getLogger(__name__)

MessagesCallback = Callable[[str, List[Message]], None]


def decode_message_snapshot(conversation_id: str, raw: Any) -> List[Message]:
    """Decode a ``messages`` subtree, oldest first; undecodable children are skipped."""

    if not isinstance(raw, dict):
        return []
    messages: List[Message] = []
    for message_id, child in raw.items():
        try:
            messages.append(decode_message(message_id, child, conversation_id))
        except Invalid as exc:
            logger.warning("skipping message %s in %s: %s", message_id, conversation_id, exc)
    # Stable on equal timestamps; ids are time-ordered push keys.
    messages.sort(key=lambda msg: (msg.timestamp, msg.id))
    return messages


class MessageCache:
    """Messages for every conversation the session has looked at."""

    def __init__(self) -> None:
        self._by_conversation: Dict[str, List[Message]] = {}

    def replace_conversation(self, conversation_id: str, messages: Iterable[Message]) -> None:
        self._by_conversation[conversation_id] = list(messages)

    def for_conversation(self, conversation_id: str) -> List[Message]:
        return list(self._by_conversation.get(conversation_id, ()))

    def latest(self, conversation_id: str) -> Optional[Message]:
        messages = self._by_conversation.get(conversation_id)
        return messages[-1] if messages else None

    def drop(self, conversation_id: str) -> None:
        self._by_conversation.pop(conversation_id, None)

    def clear(self) -> None:
        self._by_conversation.clear()

    def conversation_ids(self) -> List[str]:
        return list(self._by_conversation)

    def __len__(self) -> int:
        return sum(len(messages) for messages in self._by_conversation.values())


class MessageSubscription:
    """One conversation's message stream; ``unsubscribe`` may be called any number of times."""

    def __init__(self, conversation_id: str, on_update: MessagesCallback) -> None:
        self.conversation_id = conversation_id
        self.deliveries = 0
        self._on_update = on_update
        self._closed = False
        self._handle = None

    @property
    def active(self) -> bool:
        return not self._closed

    def _on_snapshot(self, raw: Any) -> None:
        if self._closed:
            return
        messages = decode_message_snapshot(self.conversation_id, raw)
        self.deliveries += 1
        logger.debug("delivering %d messages for %s", len(messages), self.conversation_id)
        self._on_update(self.conversation_id, messages)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
        logger.info("detached message stream for %s", self.conversation_id)

    close = unsubscribe


class MessageStreamReconciler:
    def __init__(self, context: ClientContext, conversations: ConversationIndex | None = None) -> None:
        self._context = context
        self._conversations = conversations or ConversationIndex(context)

    def subscribe(self, conversation_id: str, on_update: MessagesCallback) -> MessageSubscription:
        """Attach to a conversation's messages.

        ``on_update(conversation_id, messages)`` receives the whole subtree,
        sorted by timestamp, on attach and after every change. Merge it into
        a :class:`MessageCache` with ``replace_conversation``.
        """

        subscription = MessageSubscription(conversation_id, on_update)
        handle = self._context.store.subscribe(messages_path(conversation_id), subscription._on_snapshot)
        subscription._handle = handle
        logger.info("attached message stream for %s", conversation_id)
        return subscription

    async def send_message(self, conversation_id: str, content: str, msg_type: str = MESSAGE_TEXT) -> Message:
        user_id = self._context.require_uid()
        if msg_type not in MESSAGE_TYPES:
            raise Invalid(f"unknown message type {msg_type!r}")
        if not isinstance(content, str) or not content.strip():
            raise Invalid("empty message", user_message="Type a message or pick a GIF first.")

        await self._conversations.load_as_participant(conversation_id)

        message = Message(
            id=self._context.store.push_key(),
            sender_id=user_id,
            content=content,
            type=msg_type,
            timestamp=self._context.now_ms(),
            conversation_id=conversation_id,
        )
        summary = LastMessage(content=content, type=msg_type, timestamp=message.timestamp)
        base = chat_path(conversation_id)
        await self._context.store.update(
            {
                message_path(conversation_id, message.id): message.to_record(),
                f"{base}/lastMessage": summary.to_record(),
                f"{base}/updatedAt": message.timestamp,
            }
        )
        logger.debug("sent %s message %s to %s", msg_type, message.id, conversation_id)
        return message

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return decode_message_snapshot(conversation_id, await self._context.store.get(messages_path(conversation_id)))
