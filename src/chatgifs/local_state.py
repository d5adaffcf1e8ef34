"""Persist per-user UI state and the global theme preference."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .config import DEFAULT_STATE_DIR
from .store import join_path

logger = logging.getLogger(__name__)

THEME_LIGHT = "light"
THEME_DARK = "dark"
THEMES = (THEME_LIGHT, THEME_DARK)
DEFAULT_TAB = "chats"


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_json_object(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable state file %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class UserState:
    active_tab: str = DEFAULT_TAB
    opened_chats: List[str] = field(default_factory=list)
    last_message_timestamps: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "UserState":
        state = cls()
        tab = data.get("active_tab")
        if isinstance(tab, str) and tab:
            state.active_tab = tab
        opened = data.get("opened_chats")
        if isinstance(opened, list):
            state.opened_chats = [item for item in dict.fromkeys(opened) if isinstance(item, str)]
        stamps = data.get("last_message_timestamps")
        if isinstance(stamps, dict):
            for conv_id, value in stamps.items():
                try:
                    state.last_message_timestamps[str(conv_id)] = int(value)
                except (ValueError, TypeError):
                    continue
        return state

    def to_record(self) -> Dict[str, object]:
        return {
            "active_tab": self.active_tab,
            "opened_chats": list(self.opened_chats),
            "last_message_timestamps": dict(self.last_message_timestamps),
        }


class LocalStateStore:
    def __init__(self, state_dir: Path | str = DEFAULT_STATE_DIR) -> None:
        self.state_dir = Path(state_dir).expanduser()

    def user_file(self, user_id: str) -> Path:
        # A valid store key has no "/" or ".".
        return self.state_dir / "users" / f"{join_path(user_id)}.json"

    @property
    def preferences_file(self) -> Path:
        return self.state_dir / "preferences.json"

    def load_user(self, user_id: str) -> UserState:
        return UserState.from_record(_load_json_object(self.user_file(user_id)))

    def save_user(self, user_id: str, state: UserState) -> None:
        _atomic_write_json(self.user_file(user_id), state.to_record())

    def delete_user(self, user_id: str) -> None:
        try:
            self.user_file(user_id).unlink()
        except FileNotFoundError:
            pass

    def load_theme(self) -> str:
        theme = _load_json_object(self.preferences_file).get("theme")
        return theme if theme in THEMES else THEME_LIGHT

    def save_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"theme must be one of {', '.join(THEMES)}")
        preferences = _load_json_object(self.preferences_file)
        preferences["theme"] = theme
        _atomic_write_json(self.preferences_file, preferences)
