from __future__ import annotations

from typing import Callable, Iterable, Optional

from .local_state import LocalStateStore, UserState
from .models import MESSAGE_GIF, Message


def has_unread(
    conversation_id: str,
    messages: Iterable[Message],
    last_opened_at: Optional[int],
    current_user_id: str,
    is_currently_open: bool,
) -> bool:
    """True when the newest message in the conversation is someone else's unseen GIF.

    ``last_opened_at`` is ``None`` for a conversation that was never opened.
    """

    if is_currently_open:
        return False
    latest: Optional[Message] = None
    for message in messages:
        if message.conversation_id != conversation_id:
            continue
        if latest is None or message.timestamp >= latest.timestamp:
            latest = message
    if latest is None or latest.type != MESSAGE_GIF or latest.sender_id == current_user_id:
        return False
    return last_opened_at is None or latest.timestamp > last_opened_at


class FreshnessTracker:
    """Last-opened times and the opened set for one user, saved on every change.

    Both maps grow with the number of conversations; nothing is evicted.
    """

    def __init__(self, store: LocalStateStore, user_id: str, now_func: Callable[[], int]) -> None:
        self.user_id = user_id
        self._store = store
        self._now = now_func
        self.state: UserState = store.load_user(user_id)

    def _save(self) -> None:
        self._store.save_user(self.user_id, self.state)

    def last_opened_at(self, conversation_id: str) -> Optional[int]:
        return self.state.last_message_timestamps.get(conversation_id)

    def is_opened(self, conversation_id: str) -> bool:
        return conversation_id in self.state.opened_chats

    def mark_opened(self, conversation_id: str) -> int:
        now_ms = self._now()
        self.state.last_message_timestamps[conversation_id] = now_ms
        if conversation_id not in self.state.opened_chats:
            self.state.opened_chats.append(conversation_id)
        self._save()
        return now_ms

    def note_message(self, message: Message, open_conversation_id: Optional[str]) -> bool:
        """Advance the last-seen time for an incoming message in the open conversation."""

        if message.conversation_id != open_conversation_id or message.sender_id == self.user_id:
            return False
        seen = self.last_opened_at(message.conversation_id)
        if seen is not None and seen >= message.timestamp:
            return False
        self.state.last_message_timestamps[message.conversation_id] = message.timestamp
        self._save()
        return True

    def has_unread(
        self, conversation_id: str, messages: Iterable[Message], open_conversation_id: Optional[str]
    ) -> bool:
        return has_unread(
            conversation_id,
            messages,
            self.last_opened_at(conversation_id),
            self.user_id,
            conversation_id == open_conversation_id,
        )

    @property
    def active_tab(self) -> str:
        return self.state.active_tab

    def set_active_tab(self, tab: str) -> None:
        self.state.active_tab = tab
        self._save()

    def forget(self, conversation_id: str) -> None:
        removed = self.state.last_message_timestamps.pop(conversation_id, None) is not None
        if conversation_id in self.state.opened_chats:
            self.state.opened_chats.remove(conversation_id)
            removed = True
        if removed:
            self._save()
