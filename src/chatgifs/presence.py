from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable

from .context import ClientContext
from .errors import ChatError
from .store import user_path

logger = logging.getLogger(__name__)

StatusCallback = Callable[[bool], None]


def compute_online(record: Any, now_ms: int, ttl_ms: int) -> bool:
    """Liveness of a user record: explicitly online and refreshed within the TTL."""

    if not isinstance(record, dict) or record.get("isOnline") is not True:
        return False
    last_update = record.get("lastOnlineUpdate")
    if isinstance(last_update, bool) or not isinstance(last_update, (int, float)):
        return False
    return now_ms - last_update < ttl_ms


class StatusSubscription:
    """Change-stream watcher that only reports flips of the computed status."""

    def __init__(self, tracker: "PresenceTracker", user_id: str, callback: StatusCallback) -> None:
        self.user_id = user_id
        self.last_status = False
        self._tracker = tracker
        self._callback = callback
        self._subscribed = True
        self._handle = None

    def _on_snapshot(self, record: Any) -> None:
        if not self._subscribed:
            return
        status = compute_online(record, self._tracker.now_ms(), self._tracker.ttl_ms)
        if status != self.last_status:
            self.last_status = status
            self._callback(status)

    def close(self) -> None:
        self._subscribed = False
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()


class PresenceTracker:
    """Heartbeat-style presence over the user records.

    Liveness is self-expiring: a client that disappears without marking itself
    offline is still reported online until ``presence_ttl_ms`` lapses, and the
    change stream alone never reports that lapse. Callers poll
    :meth:`check_online_status` to catch it.
    """

    def __init__(self, context: ClientContext) -> None:
        self._context = context
        self.ttl_ms = context.config.presence_ttl_ms

    def now_ms(self) -> int:
        return self._context.now_ms()

    async def _write_status(self, user_id: str, online: bool) -> bool:
        now_ms = self.now_ms()
        base = user_path(user_id)
        updates: Dict[str, Any] = {f"{base}/isOnline": online, f"{base}/lastOnlineUpdate": now_ms}
        if not online:
            updates[f"{base}/lastSeen"] = now_ms
        try:
            await self._context.store.update(updates)
        except ChatError as exc:
            logger.warning("presence write for %s failed: %s", user_id, exc)
            return False
        return True

    async def mark_online(self, user_id: str) -> bool:
        return await self._write_status(user_id, True)

    async def mark_offline(self, user_id: str) -> bool:
        return await self._write_status(user_id, False)

    async def check_online_status(self, user_id: str) -> bool:
        try:
            record = await self._context.store.get(user_path(user_id))
        except ChatError as exc:
            logger.warning("presence read for %s failed: %s", user_id, exc)
            return False
        return compute_online(record, self.now_ms(), self.ttl_ms)

    async def check_many(self, user_ids: Iterable[str]) -> Dict[str, bool]:
        user_ids = list(dict.fromkeys(user_ids))
        results = await asyncio.gather(*(self.check_online_status(uid) for uid in user_ids))
        return dict(zip(user_ids, results))

    def subscribe_to_status(self, user_id: str, callback: StatusCallback) -> StatusSubscription:
        subscription = StatusSubscription(self, user_id, callback)
        subscription._handle = self._context.store.subscribe(user_path(user_id), subscription._on_snapshot)
        return subscription
