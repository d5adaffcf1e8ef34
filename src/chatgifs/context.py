"""Process-wide handles shared by every component.

A :class:`ClientContext` is built once at start-up and passed by reference to
each component constructor; nothing reaches for module-level globals.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .config import ClientConfig
from .errors import Unauthenticated
from .identity import IdentityService, InMemoryIdentityService, RestIdentityService
from .rest_store import RestStore
from .store import InMemoryStore, RemoteStore


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ClientContext:
    store: RemoteStore
    identity: IdentityService
    config: ClientConfig = field(default_factory=ClientConfig)
    now_func: Callable[[], int] = _now_ms
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def now_ms(self) -> int:
        return self.now_func()

    def current_uid(self) -> str | None:
        current = self.identity.current
        return current.uid if current is not None else None

    def require_uid(self) -> str:
        uid = self.current_uid()
        if uid is None:
            raise Unauthenticated()
        return uid

    async def close(self) -> None:
        for handle in (self.store, self.identity):
            closer = getattr(handle, "close", None)
            if closer is not None:
                await closer()


def in_memory_context(config: ClientConfig | None = None, **kwargs) -> ClientContext:
    return ClientContext(
        store=InMemoryStore(),
        identity=InMemoryIdentityService(),
        config=config or ClientConfig(),
        **kwargs,
    )


def hosted_context(config: ClientConfig) -> ClientContext:
    identity = RestIdentityService(config.api_key, timeout_s=config.request_timeout_s)
    store = RestStore(config.database_url, token_func=identity.token, timeout_s=config.request_timeout_s)
    return ClientContext(store=store, identity=identity, config=config)
