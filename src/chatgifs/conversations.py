from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .context import ClientContext
from .errors import Invalid, NotFound
from .models import DEFAULT_CHAT_NAME, Conversation, decode_conversation
from .store import CHATS_ROOT, chat_path, user_chat_path, user_chats_path

logger = logging.getLogger(__name__)


def _stored_participants(raw: Any) -> Any:
    return raw.get("participants") if isinstance(raw, dict) else None


def salvage_participants(raw: Any) -> List[str]:
    """Unique non-empty participant ids from a stored list or keyed map."""

    stored = _stored_participants(raw)
    if isinstance(stored, dict):
        candidates = list(stored.values())
    elif isinstance(stored, list):
        candidates = stored
    else:
        candidates = []
    participants: List[str] = []
    for item in candidates:
        if isinstance(item, str) and item and item not in participants:
            participants.append(item)
    return participants


def repair_participants(raw: Any, user_id: str) -> Tuple[List[str], bool]:
    """Salvage a conversation's participants and make sure ``user_id`` is listed.

    Returns ``(participants, repaired)``; ``repaired`` is true when the stored
    value has to be rewritten.
    """

    participants = salvage_participants(raw)
    if user_id not in participants:
        participants.append(user_id)
    return participants, participants != _stored_participants(raw)


def _sort_by_recency(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda conv: conv.recency, reverse=True)


class ConversationIndex:
    """Conversations a user takes part in, newest first.

    The conversation collection is flat, so listing is a full scan filtered
    on ``participants``; creation also maintains ``userChats/{uid}`` for the
    duplicate pre-check.
    """

    def __init__(self, context: ClientContext) -> None:
        self._context = context

    @property
    def _store(self):
        return self._context.store

    async def list_conversations_for_user(self, user_id: str) -> List[Conversation]:
        chats = await self._store.get(CHATS_ROOT)
        if not isinstance(chats, dict):
            return []
        found: List[Conversation] = []
        for conversation_id, raw in chats.items():
            try:
                conversation = decode_conversation(conversation_id, raw)
            except Invalid as exc:
                logger.debug("skipping conversation %s: %s", conversation_id, exc)
                continue
            if user_id in conversation.participants:
                found.append(conversation)
        return _sort_by_recency(found)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        raw = await self._store.get(chat_path(conversation_id))
        if raw is None:
            return None
        return decode_conversation(conversation_id, raw)

    async def create_conversation(self, participant_ids: Iterable[str], name: str = DEFAULT_CHAT_NAME) -> Conversation:
        """Create a conversation between the caller and ``participant_ids``.

        Never de-duplicates: use :meth:`find_existing` first when at most one
        conversation per participant set is wanted.
        """

        user_id = self._context.require_uid()
        participants = [user_id]
        for participant in participant_ids:
            if participant and participant not in participants:
                participants.append(participant)
        if len(participants) < 2:
            raise Invalid("conversation needs another participant", user_message="Pick a friend to chat with.")

        now_ms = self._context.now_ms()
        conversation = Conversation(
            id=self._store.push_key(),
            participants=participants,
            created_at=now_ms,
            updated_at=now_ms,
            name=name,
        )
        updates: Dict[str, Any] = {chat_path(conversation.id): conversation.to_record()}
        for participant in participants:
            updates[user_chat_path(participant, conversation.id)] = True
        await self._store.update(updates)
        logger.info("created conversation %s", conversation.id)
        return conversation

    async def find_existing(self, participant_ids: Iterable[str]) -> Optional[Conversation]:
        user_id = self._context.require_uid()
        wanted = set(participant_ids) | {user_id}

        indexed = await self._store.get(user_chats_path(user_id))
        if isinstance(indexed, dict):
            for conversation_id in indexed:
                try:
                    conversation = await self.get_conversation(conversation_id)
                except Invalid:
                    continue
                if conversation is not None and set(conversation.participants) == wanted:
                    return conversation

        for conversation in await self.list_conversations_for_user(user_id):
            if set(conversation.participants) == wanted:
                return conversation
        return None

    async def delete_conversation(self, conversation_id: str) -> None:
        user_id = self._context.require_uid()
        raw = await self._store.get(chat_path(conversation_id))
        if raw is None:
            raise NotFound(f"conversation {conversation_id} not found", user_message="Chat not found.")
        participants = salvage_participants(raw)
        if user_id not in participants:
            raise Invalid(
                f"{user_id} is not a participant of {conversation_id}",
                user_message="Only participants can delete this chat.",
            )
        updates: Dict[str, Any] = {chat_path(conversation_id): None}
        for participant in participants:
            updates[user_chat_path(participant, conversation_id)] = None
        await self._store.update(updates)
        logger.info("deleted conversation %s", conversation_id)

    async def load_as_participant(self, conversation_id: str) -> Conversation:
        """Read a conversation for writing, repairing its participants first.

        A missing or malformed ``participants`` value, or one that does not
        list the caller, is rewritten before the conversation is decoded.
        """

        user_id = self._context.require_uid()
        raw = await self._store.get(chat_path(conversation_id))
        if not isinstance(raw, dict):
            raise NotFound(f"conversation {conversation_id} not found", user_message="Chat does not exist.")
        participants, repaired = repair_participants(raw, user_id)
        if repaired:
            logger.warning("repairing participants of conversation %s", conversation_id)
            await self._store.set(f"{chat_path(conversation_id)}/participants", participants)
            raw = dict(raw, participants=participants)
        return decode_conversation(conversation_id, raw)
