"""Friend-request lifecycle and the symmetric friends map."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .context import ClientContext
from .errors import Invalid, NotFound
from .models import (
    REQUEST_ACCEPTED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    SIDE_RECEIVED,
    SIDE_SENT,
    FriendRequest,
    User,
    decode_friend_request,
    decode_user,
)
from .store import (
    friend_path,
    friends_path,
    received_request_path,
    received_requests_path,
    sent_request_path,
    sent_requests_path,
    user_path,
)

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown User"
UNKNOWN_EMAIL = "No email"


def _decode_requests(raw: Any, collection: str) -> List[FriendRequest]:
    if not isinstance(raw, dict):
        return []
    requests: List[FriendRequest] = []
    for key, child in raw.items():
        try:
            requests.append(decode_friend_request(child))
        except Invalid as exc:
            logger.warning("skipping undecodable request %s in %s: %s", key, collection, exc)
    return requests


class SocialGraph:
    """Mediates every mutation of friend requests and friend links.

    Each request is stored twice: in the receiver's inbox
    (``friendRequests/{receiver}``) and the sender's outbox
    (``sentRequests/{sender}``). Both copies are written in one multi-path
    update so they carry the same status.
    """

    def __init__(self, context: ClientContext) -> None:
        self._context = context

    @property
    def _store(self):
        return self._context.store

    async def _lookup_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        record = await self._store.get(user_path(user_id))
        return record if isinstance(record, dict) else None

    async def send_friend_request(self, receiver_id: str) -> FriendRequest:
        sender_id = self._context.require_uid()
        receiver_id = (receiver_id or "").strip()
        if not receiver_id:
            raise Invalid("empty friend request target", user_message="Please choose someone to add.")
        if receiver_id == sender_id:
            raise Invalid("cannot befriend yourself", user_message="You cannot add yourself as a friend.")

        sender, receiver = await asyncio.gather(self._lookup_user(sender_id), self._lookup_user(receiver_id))
        if sender is None or receiver is None:
            raise NotFound("user data not found", user_message="User not found.")

        request = FriendRequest(
            id=str(uuid.uuid4()),
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=REQUEST_PENDING,
            timestamp=self._context.now_ms(),
            sender_name=str(sender.get("fullName", "")),
            receiver_name=str(receiver.get("fullName", "")),
            sender_email=str(sender.get("email", "")),
            receiver_email=str(receiver.get("email", "")),
        )
        record = request.to_record()
        await self._store.update(
            {
                received_request_path(receiver_id, request.id): record,
                sent_request_path(sender_id, request.id): record,
            }
        )
        logger.info("friend request %s sent to %s", request.id, receiver_id)
        return replace(request, side=SIDE_SENT)

    async def _pending_received(self, request_id: str) -> FriendRequest:
        user_id = self._context.require_uid()
        raw = await self._store.get(received_request_path(user_id, request_id))
        if raw is None:
            raise NotFound(f"request {request_id} not found", user_message="Friend request not found.")
        request = decode_friend_request(raw)
        if request.status != REQUEST_PENDING:
            raise Invalid(
                f"request {request_id} is already {request.status}",
                user_message=f"This friend request was already {request.status}.",
            )
        return request

    async def accept_friend_request(self, request_id: str) -> FriendRequest:
        request = await self._pending_received(request_id)
        receiver_id, sender_id = request.receiver_id, request.sender_id
        now_ms = self._context.now_ms()
        await self._store.update(
            {
                friend_path(receiver_id, sender_id): {"id": sender_id, "createdAt": now_ms},
                friend_path(sender_id, receiver_id): {"id": receiver_id, "createdAt": now_ms},
                f"{received_request_path(receiver_id, request.id)}/status": REQUEST_ACCEPTED,
                f"{sent_request_path(sender_id, request.id)}/status": REQUEST_ACCEPTED,
            }
        )
        logger.info("friend request %s accepted", request.id)
        return replace(request, status=REQUEST_ACCEPTED, side=SIDE_RECEIVED)

    async def reject_friend_request(self, request_id: str) -> FriendRequest:
        request = await self._pending_received(request_id)
        await self._store.update(
            {
                f"{received_request_path(request.receiver_id, request.id)}/status": REQUEST_REJECTED,
                f"{sent_request_path(request.sender_id, request.id)}/status": REQUEST_REJECTED,
            }
        )
        logger.info("friend request %s rejected", request.id)
        return replace(request, status=REQUEST_REJECTED, side=SIDE_RECEIVED)

    async def remove_friend(self, friend_id: str) -> None:
        user_id = self._context.require_uid()
        if not friend_id:
            raise Invalid("empty friend id")
        await self._store.update({friend_path(user_id, friend_id): None, friend_path(friend_id, user_id): None})
        logger.info("removed friend link %s <-> %s", user_id, friend_id)

    async def _all_requests(self, user_id: str) -> List[FriendRequest]:
        received_raw, sent_raw = await asyncio.gather(
            self._store.get(received_requests_path(user_id)),
            self._store.get(sent_requests_path(user_id)),
        )
        received = [replace(r, side=SIDE_RECEIVED) for r in _decode_requests(received_raw, "received")]
        sent = [replace(r, side=SIDE_SENT) for r in _decode_requests(sent_raw, "sent")]
        return received + sent

    async def _with_live_names(self, request: FriendRequest) -> FriendRequest:
        if request.side == SIDE_RECEIVED:
            other = await self._lookup_user(request.sender_id) or {}
            return replace(
                request,
                sender_name=str(other.get("fullName") or UNKNOWN_NAME),
                sender_email=str(other.get("email") or UNKNOWN_EMAIL),
            )
        other = await self._lookup_user(request.receiver_id) or {}
        return replace(
            request,
            receiver_name=str(other.get("fullName") or UNKNOWN_NAME),
            receiver_email=str(other.get("email") or UNKNOWN_EMAIL),
        )

    async def list_friend_requests(self) -> List[FriendRequest]:
        """Pending requests in both directions, with the other party's live name."""

        user_id = self._context.require_uid()
        pending = [r for r in await self._all_requests(user_id) if r.status == REQUEST_PENDING]
        return list(await asyncio.gather(*(self._with_live_names(r) for r in pending)))

    async def has_pending_request_with(self, other_id: str) -> bool:
        user_id = self._context.require_uid()
        return any(
            r.status == REQUEST_PENDING and r.counterpart_id(user_id) == other_id
            for r in await self._all_requests(user_id)
        )

    async def list_friends(self) -> List[User]:
        user_id = self._context.require_uid()
        friends = await self._store.get(friends_path(user_id))
        if not isinstance(friends, dict):
            return []
        friend_ids = list(friends)
        records = await asyncio.gather(*(self._lookup_user(fid) for fid in friend_ids))
        result: List[User] = []
        for friend_id, record in zip(friend_ids, records):
            if record is None:
                continue
            try:
                result.append(decode_user(friend_id, record))
            except Invalid as exc:
                logger.warning("skipping undecodable friend %s: %s", friend_id, exc)
        return result

    async def repair_request_mirrors(self) -> int:
        """Reconcile the caller's request copies with their mirrors.

        A logically paired write can land on one side only. Terminal status
        wins over pending, and a request repaired to accepted gets both
        friend links. Returns the number of repair writes issued.
        """

        user_id = self._context.require_uid()
        repairs = 0
        for request in await self._all_requests(user_id):
            if request.side == SIDE_RECEIVED:
                mirror_path = sent_request_path(request.sender_id, request.id)
                own_path = received_request_path(user_id, request.id)
            else:
                mirror_path = received_request_path(request.receiver_id, request.id)
                own_path = sent_request_path(user_id, request.id)
            mirror_raw = await self._store.get(mirror_path)
            try:
                mirror_status = decode_friend_request(mirror_raw).status if mirror_raw is not None else None
            except Invalid:
                mirror_status = None

            updates: Dict[str, Any] = {}
            if mirror_status is None:
                updates[mirror_path] = request.to_record()
            elif mirror_status != request.status:
                terminal = request.status if request.status != REQUEST_PENDING else mirror_status
                if request.status != terminal:
                    updates[f"{own_path}/status"] = terminal
                if mirror_status != terminal:
                    updates[f"{mirror_path}/status"] = terminal
            effective = mirror_status if request.status == REQUEST_PENDING and mirror_status else request.status
            # Links are only restored alongside a status repair; an accepted
            # request whose friendship was later removed stays removed.
            if updates and effective == REQUEST_ACCEPTED:
                a, b = request.sender_id, request.receiver_id
                links = await asyncio.gather(self._store.get(friend_path(a, b)), self._store.get(friend_path(b, a)))
                now_ms = self._context.now_ms()
                if links[0] is None:
                    updates[friend_path(a, b)] = {"id": b, "createdAt": now_ms}
                if links[1] is None:
                    updates[friend_path(b, a)] = {"id": a, "createdAt": now_ms}
            if updates:
                logger.warning("repairing friend request %s (%d writes)", request.id, len(updates))
                await self._store.update(updates)
                repairs += len(updates)
        return repairs
