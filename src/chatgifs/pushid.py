"""Chronologically sortable 20-character keys for appended children."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Callable, List

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def _now_ms() -> int:
    return int(time.time() * 1000)


class PushIdGenerator:
    """Generates keys that sort lexicographically in creation order.

    The first 8 characters encode the millisecond timestamp; the remaining 12
    are random, and are incremented instead of re-drawn when two keys are
    generated within the same millisecond.
    """

    def __init__(self, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._last_ms = -1
        self._last_rand: List[int] = [0] * 12
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            now_ms = self._now()
            if now_ms == self._last_ms:
                for idx in range(11, -1, -1):
                    if self._last_rand[idx] != 63:
                        self._last_rand[idx] += 1
                        break
                    self._last_rand[idx] = 0
            else:
                self._last_rand = [secrets.randbelow(64) for _ in range(12)]
            self._last_ms = now_ms

            stamp: List[str] = []
            remaining = now_ms
            for _ in range(8):
                stamp.append(PUSH_CHARS[remaining % 64])
                remaining //= 64
            if remaining != 0:
                raise ValueError("timestamp out of range for push id")
            return "".join(reversed(stamp)) + "".join(PUSH_CHARS[i] for i in self._last_rand)


generate_push_id = PushIdGenerator()
