"""Identity service: who is signed in, and the account lifecycle."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiohttp

from .errors import Invalid, Transient, Unauthenticated
from .pushid import generate_push_id

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"
MIN_PASSWORD_LENGTH = 6

IdentityCallback = Callable[[Optional["Identity"]], None]

_UNAUTHENTICATED_CODES = {
    "EMAIL_NOT_FOUND",
    "INVALID_PASSWORD",
    "INVALID_LOGIN_CREDENTIALS",
    "USER_DISABLED",
    "INVALID_ID_TOKEN",
    "TOKEN_EXPIRED",
    "USER_NOT_FOUND",
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN",
}
_INVALID_CODES = {"EMAIL_EXISTS", "INVALID_EMAIL", "MISSING_PASSWORD", "MISSING_EMAIL", "WEAK_PASSWORD"}


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str
    display_name: str = ""
    token: Optional[str] = None


class IdentityService(Protocol):
    @property
    def current(self) -> Optional[Identity]: ...

    def token(self) -> Optional[str]: ...

    def on_identity_changed(self, callback: IdentityCallback) -> Callable[[], None]: ...

    async def sign_in(self, email: str, password: str) -> Identity: ...

    async def sign_up(self, email: str, password: str, display_name: str) -> Identity: ...

    async def sign_out(self) -> None: ...

    async def delete_current(self) -> None: ...


class _ListenerMixin:
    def __init__(self) -> None:
        self._current: Optional[Identity] = None
        self._listeners: List[IdentityCallback] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def token(self) -> Optional[str]:
        return self._current.token if self._current else None

    def on_identity_changed(self, callback: IdentityCallback) -> Callable[[], None]:
        self._listeners.append(callback)
        callback(self._current)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def _set_current(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for listener in list(self._listeners):
            try:
                listener(identity)
            except Exception:
                logger.exception("identity listener raised")

    def require(self) -> Identity:
        if self._current is None:
            raise Unauthenticated()
        return self._current


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)


def _validate_credentials(email: str, password: str) -> None:
    if not email or "@" not in email:
        raise Invalid("invalid email", user_message="Please enter a valid email address.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise Invalid("weak password", user_message="Password should be at least 6 characters.")


class InMemoryIdentityService(_ListenerMixin):
    """Local account registry with the same contract as the hosted service."""

    def __init__(self) -> None:
        super().__init__()
        self._accounts: Dict[str, Dict[str, Any]] = {}

    async def sign_up(self, email: str, password: str, display_name: str) -> Identity:
        email = email.strip().lower()
        _validate_credentials(email, password)
        if email in self._accounts:
            raise Invalid("email exists", user_message="An account with this email already exists.")
        salt = secrets.token_bytes(16)
        uid = generate_push_id()
        self._accounts[email] = {
            "uid": uid,
            "display_name": display_name,
            "salt": salt,
            "hash": _hash_password(password, salt),
        }
        identity = Identity(uid=uid, email=email, display_name=display_name, token=f"tok_{secrets.token_urlsafe(16)}")
        self._set_current(identity)
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        email = email.strip().lower()
        account = self._accounts.get(email)
        if account is None or not hmac.compare_digest(account["hash"], _hash_password(password, account["salt"])):
            raise Unauthenticated(
                "invalid credentials", user_message="Failed to sign in. Please check your credentials."
            )
        identity = Identity(
            uid=account["uid"],
            email=email,
            display_name=account["display_name"],
            token=f"tok_{secrets.token_urlsafe(16)}",
        )
        self._set_current(identity)
        return identity

    async def sign_out(self) -> None:
        self._set_current(None)

    async def delete_current(self) -> None:
        identity = self.require()
        self._accounts.pop(identity.email, None)
        self._set_current(None)


class RestIdentityService(_ListenerMixin):
    """Identity toolkit REST client (``accounts:*`` endpoints)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_IDENTITY_URL,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        super().__init__()
        if not api_key:
            raise Invalid("api key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/accounts:{action}"
        try:
            async with self._get_session().post(
                url, params={"key": self._api_key}, json=payload, timeout=self._timeout
            ) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise Transient(f"accounts:{action} failed: {exc}") from exc
        if status < 400:
            return body if isinstance(body, dict) else {}
        code = ""
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = str(body["error"].get("message", ""))
        code = code.split(":", 1)[0].strip()
        if code in _UNAUTHENTICATED_CODES:
            raise Unauthenticated(code, user_message="Failed to sign in. Please check your credentials.")
        if code in _INVALID_CODES:
            raise Invalid(code)
        if status >= 500:
            raise Transient(f"accounts:{action} failed: {status}")
        raise Invalid(code or f"accounts:{action} rejected: {status}")

    def _identity_from(self, body: Dict[str, Any], fallback_name: str = "") -> Identity:
        try:
            return Identity(
                uid=str(body["localId"]),
                email=str(body.get("email", "")),
                display_name=str(body.get("displayName") or fallback_name),
                token=str(body["idToken"]),
            )
        except KeyError as exc:
            raise Transient(f"identity response missing {exc}") from exc

    async def sign_in(self, email: str, password: str) -> Identity:
        body = await self._post(
            "signInWithPassword", {"email": email, "password": password, "returnSecureToken": True}
        )
        identity = self._identity_from(body)
        self._set_current(identity)
        return identity

    async def sign_up(self, email: str, password: str, display_name: str) -> Identity:
        _validate_credentials(email, password)
        body = await self._post("signUp", {"email": email, "password": password, "returnSecureToken": True})
        identity = self._identity_from(body, display_name)
        updated = await self._post(
            "update", {"idToken": identity.token, "displayName": display_name, "returnSecureToken": True}
        )
        if updated.get("idToken"):
            identity = Identity(
                uid=identity.uid, email=identity.email, display_name=display_name, token=str(updated["idToken"])
            )
        self._set_current(identity)
        return identity

    async def sign_out(self) -> None:
        self._set_current(None)

    async def delete_current(self) -> None:
        identity = self.require()
        await self._post("delete", {"idToken": identity.token})
        self._set_current(None)
