from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

PathKey = Tuple[str, ...]
Callback = Callable[[Any], None]

_UNSET = object()


@dataclass(eq=False)
class Subscription:
    path: PathKey
    callback: Callback
    hub: Optional["SubscriptionHub"] = None
    last_value: Any = field(default=_UNSET, repr=False)

    @property
    def active(self) -> bool:
        return self.hub is not None

    def deliver(self, value: Any) -> None:
        if self.hub is None:
            return
        if self.last_value is not _UNSET and self.last_value == value:
            return
        self.last_value = copy.deepcopy(value)
        self.callback(value)

    def close(self) -> None:
        hub, self.hub = self.hub, None
        if hub is not None:
            hub.unsubscribe(self)


def _related(a: PathKey, b: PathKey) -> bool:
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


class SubscriptionHub:
    """Registers path subscriptions and fans snapshots out to listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[PathKey, List[Subscription]] = {}

    def subscribe(self, path: PathKey, callback: Callback) -> Subscription:
        subscription = Subscription(path=path, callback=callback, hub=self)
        self._subscriptions.setdefault(path, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.path)
        subscription.hub = None
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.path, None)

    def affected(self, changed: Iterable[PathKey]) -> List[Subscription]:
        """Return subscriptions whose subtree overlaps any changed path."""

        changed = list(changed)
        result: List[Subscription] = []
        for path, subs in list(self._subscriptions.items()):
            if any(_related(path, other) for other in changed):
                result.extend(subs)
        return result

    def broadcast(self, changed: Iterable[PathKey], read: Callable[[PathKey], Any]) -> None:
        for subscription in self.affected(changed):
            if not subscription.active:
                continue
            try:
                subscription.deliver(read(subscription.path))
            except Exception:
                logger.exception("subscriber for %s raised", "/".join(subscription.path))

    def __len__(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())
