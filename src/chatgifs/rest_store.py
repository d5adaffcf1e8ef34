"""Remote store gateway speaking the hosted realtime database REST protocol."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import aiohttp

from .errors import Invalid, Transient, Unauthenticated
from .pushid import generate_push_id
from .store import _normalize, split_path

logger = logging.getLogger(__name__)

_NO_BODY = object()
_UNSET = object()

TokenFunc = Callable[[], Optional[str]]


def apply_stream_event(snapshot: Any, keys: Tuple[str, ...], value: Any) -> Any:
    """Return ``snapshot`` with ``value`` written at ``keys`` (``None`` deletes)."""

    if not keys:
        return _normalize(value)
    base = dict(snapshot) if isinstance(snapshot, dict) else {}
    child = apply_stream_event(base.get(keys[0]), keys[1:], value)
    if child is None:
        base.pop(keys[0], None)
    else:
        base[keys[0]] = child
    return base or None


class RestSubscription:
    def __init__(self, path: str, callback: Callable[[Any], None]) -> None:
        self.path = path
        self.callback = callback
        self.snapshot: Any = None
        self.task: Optional[asyncio.Task] = None
        self._last_value: Any = _UNSET
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def deliver(self) -> None:
        if self._closed:
            return
        if self._last_value is not _UNSET and self._last_value == self.snapshot:
            return
        self._last_value = copy.deepcopy(self.snapshot)
        self.callback(copy.deepcopy(self.snapshot))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class RestStore:
    """:class:`~chatgifs.store.RemoteStore` backed by ``{base_url}/{path}.json``."""

    def __init__(
        self,
        base_url: str,
        *,
        token_func: TokenFunc = lambda: None,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
        reconnect_delay_s: float = 3.0,
        max_reconnects: int = 3,
        key_func: Callable[[], str] = generate_push_id,
    ) -> None:
        if not base_url:
            raise Invalid("database url is required")
        self.base_url = base_url.rstrip("/")
        self._token_func = token_func
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._reconnect_delay_s = reconnect_delay_s
        self._max_reconnects = max_reconnects
        self._key_func = key_func
        self._subscriptions: list[RestSubscription] = []

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
        tasks = [sub.task for sub in self._subscriptions if sub.task is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _url(self, path: str) -> str:
        keys = split_path(path)
        return f"{self.base_url}/{'/'.join(keys)}.json"

    def _params(self) -> Dict[str, str]:
        token = self._token_func()
        return {"auth": token} if token else {}

    async def _request(self, method: str, path: str, body: Any = _NO_BODY) -> Any:
        kwargs: Dict[str, Any] = {"params": self._params(), "timeout": self._timeout}
        if body is not _NO_BODY:
            kwargs["json"] = body
        try:
            async with self._get_session().request(method, self._url(path), **kwargs) as resp:
                if resp.status in (401, 403):
                    raise Unauthenticated(f"{method} {path} rejected: {resp.status}")
                if resp.status == 404 and method == "GET":
                    return None
                if resp.status >= 500:
                    raise Transient(f"{method} {path} failed: {resp.status}")
                if resp.status >= 400:
                    detail = await resp.text()
                    raise Invalid(f"{method} {path} rejected: {resp.status} {detail}")
                if method == "DELETE":
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise Transient(f"{method} {path} failed: {exc}") from exc

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def set(self, path: str, value: Any) -> None:
        logger.debug("set %s", path)
        if value is None:
            await self._request("DELETE", path)
            return
        await self._request("PUT", path, value)

    async def update(self, values: Mapping[str, Any]) -> None:
        body = {"/".join(split_path(path)): value for path, value in values.items()}
        if not body or any(not key for key in body):
            raise Invalid("multi-path update needs non-root paths")
        logger.debug("update %s", ", ".join(body))
        await self._request("PATCH", "", body)

    async def delete(self, path: str) -> None:
        logger.debug("delete %s", path)
        await self._request("DELETE", path)

    def push_key(self) -> str:
        return self._key_func()

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> RestSubscription:
        subscription = RestSubscription(path, callback)
        subscription.task = asyncio.get_running_loop().create_task(self._stream(subscription))
        self._subscriptions.append(subscription)
        return subscription

    async def _stream(self, subscription: RestSubscription) -> None:
        failures = 0
        try:
            while subscription.active:
                try:
                    received = await self._read_stream(subscription)
                    reason = "closed by server"
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    received = False
                    reason = str(exc) or type(exc).__name__
                except Unauthenticated:
                    logger.warning("stream for %s cancelled by the server", subscription.path)
                    return
                failures = 0 if received else failures + 1
                if failures > self._max_reconnects:
                    logger.error("stream for %s gave up after %d failures", subscription.path, failures)
                    return
                logger.warning("stream for %s dropped (%s); reconnecting", subscription.path, reason)
                await asyncio.sleep(self._reconnect_delay_s)
        except asyncio.CancelledError:
            pass
        finally:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    async def _read_stream(self, subscription: RestSubscription) -> bool:
        """Consume one stream connection; return whether any event arrived."""

        received = False
        headers = {"Accept": "text/event-stream"}
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout.total)
        async with self._get_session().get(
            self._url(subscription.path), params=self._params(), headers=headers, timeout=timeout
        ) as resp:
            if resp.status in (401, 403):
                raise Unauthenticated(f"stream {subscription.path} rejected: {resp.status}")
            if resp.status >= 400:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status, message="stream rejected"
                )
            event_type: Optional[str] = None
            data_lines: list[str] = []
            async for raw_line in resp.content:
                line = raw_line.decode("utf-8").rstrip("\r\n")
                if line == "":
                    if event_type is not None:
                        self._handle_event(subscription, event_type, "\n".join(data_lines))
                        received = True
                    event_type, data_lines = None, []
                    continue
                if line.startswith(":"):
                    continue
                if line.startswith("event:"):
                    event_type = line[len("event:") :].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[len("data:") :].strip())
        return received

    def _handle_event(self, subscription: RestSubscription, event_type: str, data: str) -> None:
        if event_type == "keep-alive":
            return
        if event_type in ("cancel", "auth_revoked"):
            raise Unauthenticated(f"stream {subscription.path}: {event_type}")
        if event_type not in ("put", "patch"):
            logger.debug("ignoring stream event %s", event_type)
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("undecodable %s event on %s", event_type, subscription.path)
            return
        if not isinstance(payload, dict) or not isinstance(payload.get("path"), str):
            logger.warning("malformed %s event on %s", event_type, subscription.path)
            return
        keys = split_path(payload["path"])
        if event_type == "put":
            subscription.snapshot = apply_stream_event(subscription.snapshot, keys, payload.get("data"))
        else:
            children = payload.get("data")
            if not isinstance(children, dict):
                return
            for child_path, value in children.items():
                subscription.snapshot = apply_stream_event(
                    subscription.snapshot, keys + split_path(child_path), value
                )
        try:
            subscription.deliver()
        except Exception:
            logger.exception("subscriber for %s raised", subscription.path)
