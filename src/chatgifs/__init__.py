"""Client-side state reconciliation for a realtime chat with GIF messages."""

from .config import ClientConfig, load_config_from_env
from .context import ClientContext, hosted_context, in_memory_context
from .conversations import ConversationIndex
from .errors import ChatError, Invalid, NotFound, Transient, Unauthenticated
from .freshness import FreshnessTracker, has_unread
from .identity import IdentityService
from .messages import MessageCache, MessageStreamReconciler
from .presence import PresenceTracker
from .session import ChatSession
from .social import SocialGraph
from .store import InMemoryStore, RemoteStore

__all__ = [
    "ChatError",
    "ChatSession",
    "ClientConfig",
    "ClientContext",
    "ConversationIndex",
    "FreshnessTracker",
    "IdentityService",
    "InMemoryStore",
    "Invalid",
    "MessageCache",
    "MessageStreamReconciler",
    "NotFound",
    "PresenceTracker",
    "RemoteStore",
    "SocialGraph",
    "Transient",
    "Unauthenticated",
    "has_unread",
    "hosted_context",
    "in_memory_context",
    "load_config_from_env",
]
