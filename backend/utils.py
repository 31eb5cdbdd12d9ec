from __future__ import annotations

import secrets
import threading
import time
from datetime import datetime
from typing import Callable, Optional

# Same alphabet as nanoid's default.
DIARY_ID_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"
DIARY_ID_LENGTH = 8

_last_ms = 0
_ms_lock = threading.Lock()


def monotonic_ms(previous: int = 0) -> int:
    """Millisecond wall-clock timestamp that never repeats within the process.

    Used for application ids like ``{diaryId}_{ms}`` so two cards created in the
    same millisecond still get distinct ids.
    """
    global _last_ms
    with _ms_lock:
        now_ms = int(time.time() * 1000)
        try:
            prev_ms = max(int(previous) if previous else 0, _last_ms)
        except (TypeError, ValueError):
            prev_ms = _last_ms
        _last_ms = max(now_ms, prev_ms + 1)
        return _last_ms


def generate_diary_id() -> str:
    return "".join(secrets.choice(DIARY_ID_ALPHABET) for _ in range(DIARY_ID_LENGTH))


def generate_unique_diary_id(exists: Callable[[str], bool]) -> str:
    diary_id = generate_diary_id()
    while exists(diary_id):
        diary_id = generate_diary_id()
    return diary_id


def is_valid_client_id(client_id: Optional[str]) -> bool:
    return 3 <= len((client_id or "").strip()) <= 50


def is_valid_name(name: Optional[str]) -> bool:
    return 2 <= len((name or "").strip()) <= 100


def format_date(value: Optional[datetime]) -> str:
    # "Mar 4, 2025, 09:05 AM"
    if value is None:
        return ""
    return f"{value:%b} {value.day}, {value:%Y}, {value:%I:%M %p}"


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
