from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_STATE_DIR = Path.home() / ".chatgifs"
PRESENCE_TTL_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class ClientConfig:
    database_url: str = ""
    api_key: str = ""
    giphy_api_key: str = ""
    state_dir: Path = DEFAULT_STATE_DIR
    presence_ttl_ms: int = PRESENCE_TTL_MS
    presence_poll_s: float = 1.5
    conversation_poll_s: float = 1.5
    status_flush_s: float = 5.0
    reload_retry_delay_s: float = 3.0
    reload_max_attempts: int = 2
    request_timeout_s: float = 10.0
    gif_search_limit: int = 20
    gif_rating: str = "g"


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_config_from_env() -> ClientConfig:
    state_dir = os.environ.get("CHATGIFS_STATE_DIR")
    return ClientConfig(
        database_url=os.environ.get("CHATGIFS_DATABASE_URL", ""),
        api_key=os.environ.get("CHATGIFS_API_KEY", ""),
        giphy_api_key=os.environ.get("CHATGIFS_GIPHY_API_KEY", ""),
        state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
        presence_ttl_ms=_parse_non_negative_int("CHATGIFS_PRESENCE_TTL_MS", PRESENCE_TTL_MS),
        presence_poll_s=_parse_positive_float("CHATGIFS_PRESENCE_POLL_S", 1.5),
        conversation_poll_s=_parse_positive_float("CHATGIFS_CONVERSATION_POLL_S", 1.5),
        status_flush_s=_parse_positive_float("CHATGIFS_STATUS_FLUSH_S", 5.0),
        reload_retry_delay_s=_parse_positive_float("CHATGIFS_RELOAD_RETRY_DELAY_S", 3.0),
        reload_max_attempts=max(1, _parse_non_negative_int("CHATGIFS_RELOAD_MAX_ATTEMPTS", 2)),
        request_timeout_s=_parse_positive_float("CHATGIFS_REQUEST_TIMEOUT_S", 10.0),
        gif_search_limit=max(1, _parse_non_negative_int("CHATGIFS_GIF_SEARCH_LIMIT", 20)),
        gif_rating=os.environ.get("CHATGIFS_GIF_RATING") or "g",
    )
