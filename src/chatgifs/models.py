"""Entity types mirrored from the remote store and their decoders.

Each ``decode_*`` function validates the raw snapshot value and raises
:class:`~chatgifs.errors.Invalid` instead of returning a partially populated
object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import Invalid

MESSAGE_TEXT = "text"
MESSAGE_GIF = "gif"
MESSAGE_TYPES = (MESSAGE_TEXT, MESSAGE_GIF)

REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_REJECTED = "rejected"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_ACCEPTED, REQUEST_REJECTED)

SIDE_RECEIVED = "received"
SIDE_SENT = "sent"

DEFAULT_CHAT_NAME = "New Chat"


@dataclass(frozen=True)
class User:
    id: str
    email: str
    full_name: str
    created_at: int = 0
    avatar: Optional[str] = None
    is_online: bool = False
    last_online_update: int = 0
    last_seen: Optional[int] = None
    friend_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class LastMessage:
    content: str
    type: str
    timestamp: int

    def to_record(self) -> Dict[str, Any]:
        return {"content": self.content, "type": self.type, "timestamp": self.timestamp}


@dataclass(frozen=True)
class Conversation:
    id: str
    participants: List[str]
    created_at: int
    updated_at: int
    name: str = DEFAULT_CHAT_NAME
    last_message: Optional[LastMessage] = None

    @property
    def recency(self) -> int:
        return self.updated_at or self.created_at

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "participants": list(self.participants),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.last_message is not None:
            record["lastMessage"] = self.last_message.to_record()
        return record


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    content: str
    type: str
    timestamp: int
    conversation_id: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "senderId": self.sender_id,
            "content": self.content,
            "type": self.type,
            "timestamp": self.timestamp,
            "chatId": self.conversation_id,
        }


@dataclass(frozen=True)
class FriendRequest:
    id: str
    sender_id: str
    receiver_id: str
    status: str
    timestamp: int
    sender_name: str = ""
    receiver_name: str = ""
    sender_email: str = ""
    receiver_email: str = ""
    side: Optional[str] = field(default=None, compare=False)

    def counterpart_id(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "senderName": self.sender_name,
            "receiverName": self.receiver_name,
            "senderEmail": self.sender_email,
            "receiverEmail": self.receiver_email,
            "status": self.status,
            "timestamp": self.timestamp,
        }


def _require_mapping(raw: Any, entity: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise Invalid(f"{entity} record must be an object")
    return raw


def _require_str(raw: Dict[str, Any], key: str, entity: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise Invalid(f"{entity}.{key} must be a non-empty string")
    return value


def _optional_str(raw: Dict[str, Any], key: str, default: str = "") -> str:
    value = raw.get(key)
    return value if isinstance(value, str) else default


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _require_int(raw: Dict[str, Any], key: str, entity: str) -> int:
    parsed = _as_int(raw.get(key))
    if parsed is None:
        raise Invalid(f"{entity}.{key} must be an integer timestamp")
    return parsed


def decode_user(user_id: str, raw: Any) -> User:
    data = _require_mapping(raw, "user")
    friends = data.get("friends")
    friend_ids = tuple(sorted(friends.keys())) if isinstance(friends, dict) else ()
    avatar = data.get("avatar")
    return User(
        id=user_id,
        email=_require_str(data, "email", "user"),
        full_name=_require_str(data, "fullName", "user"),
        created_at=_as_int(data.get("createdAt")) or 0,
        avatar=avatar if isinstance(avatar, str) else None,
        is_online=data.get("isOnline") is True,
        last_online_update=_as_int(data.get("lastOnlineUpdate")) or 0,
        last_seen=_as_int(data.get("lastSeen")),
        friend_ids=friend_ids,
    )


def decode_participants(raw: Any) -> List[str]:
    # Arrays come back from the store either as lists or as index-keyed objects.
    if isinstance(raw, dict):
        try:
            raw = [raw[key] for key in sorted(raw, key=int)]
        except (TypeError, ValueError) as exc:
            raise Invalid("conversation.participants must be a list") from exc
    if not isinstance(raw, list):
        raise Invalid("conversation.participants must be a list")
    participants = [item for item in raw if isinstance(item, str) and item]
    if len(participants) != len(raw):
        raise Invalid("conversation.participants must hold user ids")
    return participants


def decode_last_message(raw: Any) -> LastMessage:
    data = _require_mapping(raw, "lastMessage")
    msg_type = data.get("type")
    if msg_type not in MESSAGE_TYPES:
        raise Invalid("lastMessage.type must be text or gif")
    content = data.get("content")
    if not isinstance(content, str):
        raise Invalid("lastMessage.content must be a string")
    return LastMessage(content=content, type=msg_type, timestamp=_require_int(data, "timestamp", "lastMessage"))


def decode_conversation(conversation_id: str, raw: Any) -> Conversation:
    data = _require_mapping(raw, "conversation")
    participants = decode_participants(data.get("participants"))
    created_at = _require_int(data, "createdAt", "conversation")
    updated_at = _as_int(data.get("updatedAt")) or created_at
    last_message = None
    if data.get("lastMessage") is not None:
        last_message = decode_last_message(data["lastMessage"])
    return Conversation(
        id=conversation_id,
        participants=participants,
        created_at=created_at,
        updated_at=updated_at,
        name=_optional_str(data, "name", "Chat") or "Chat",
        last_message=last_message,
    )


def decode_message(message_id: str, raw: Any, conversation_id: str) -> Message:
    data = _require_mapping(raw, "message")
    msg_type = data.get("type")
    if msg_type not in MESSAGE_TYPES:
        raise Invalid("message.type must be text or gif")
    content = data.get("content")
    if not isinstance(content, str):
        raise Invalid("message.content must be a string")
    return Message(
        id=message_id,
        sender_id=_require_str(data, "senderId", "message"),
        content=content,
        type=msg_type,
        timestamp=_require_int(data, "timestamp", "message"),
        conversation_id=conversation_id,
    )


def decode_friend_request(raw: Any) -> FriendRequest:
    data = _require_mapping(raw, "friendRequest")
    status = data.get("status")
    if status not in REQUEST_STATUSES:
        raise Invalid("friendRequest.status must be pending, accepted or rejected")
    timestamp = _as_int(data.get("timestamp"))
    if timestamp is None:
        timestamp = _require_int(data, "createdAt", "friendRequest")
    return FriendRequest(
        id=_require_str(data, "id", "friendRequest"),
        sender_id=_require_str(data, "senderId", "friendRequest"),
        receiver_id=_require_str(data, "receiverId", "friendRequest"),
        status=status,
        timestamp=timestamp,
        sender_name=_optional_str(data, "senderName"),
        receiver_name=_optional_str(data, "receiverName"),
        sender_email=_optional_str(data, "senderEmail"),
        receiver_email=_optional_str(data, "receiverEmail"),
    )
