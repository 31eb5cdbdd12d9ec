from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import bcrypt

from . import config
from .errors import InvalidInputError, StoreOperationError
from .store import SETTINGS, get_document_store

logger = logging.getLogger(__name__)

ADMIN_SETTINGS_KEY = "admin"

LOCKOUT_SCHEDULE_SECONDS = [
    60,
    300,
    3600,
    86400,
    604800,
    2592000,
    31536000,
]
LOCKOUT_LABELS = {
    60: "1 minute",
    300: "5 minutes",
    3600: "1 hour",
    86400: "24 hours",
    604800: "1 week",
    2592000: "1 month",
    31536000: "1 year",
}
ATTEMPT_LIMIT = 3
login_lockouts: Dict[str, Dict[str, float | int]] = {}

admin_tokens: Dict[str, float] = {}
# token -> (diary id, expires at)
diary_tokens: Dict[str, Tuple[str, float]] = {}


# Passwords


def validate_password(password: str) -> Tuple[bool, Optional[str]]:
    if len(password) < 6:
        return False, "Password must be at least 6 characters long"
    if len(password) > 50:
        return False, "Password must be less than 50 characters long"
    # bcrypt only looks at the first 72 bytes.
    if len(password.encode("utf-8")) > 72:
        return False, "Password is too long"
    return True, None


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash or a password bcrypt refuses (over 72 bytes).
        return False


def verify_password_with_universal(password: str, password_hash: Optional[str] = None) -> bool:
    """Accept the diary's own password or the configured therapist password."""
    if verify_password(password, config.get_universal_diary_password_hash()):
        return True
    return verify_password(password, password_hash)


def get_admin_password_hash() -> Optional[str]:
    store = get_document_store()
    try:
        settings = store.get(SETTINGS, ADMIN_SETTINGS_KEY)
        if settings and settings.get("passwordHash"):
            return settings.get("passwordHash")
        configured = config.get_admin_password()
        if not configured:
            return None
        password_hash = hash_password(configured)
        store.set(
            SETTINGS,
            ADMIN_SETTINGS_KEY,
            {"passwordHash": password_hash, "updatedAt": datetime.now(timezone.utc)},
            merge=True,
        )
        logger.info("Seeded admin password hash from ADMIN_PASSWORD")
        return password_hash
    except Exception as exc:
        logger.exception("Failed to read admin settings")
        raise StoreOperationError("Failed to read admin settings") from exc


def verify_admin_password(password: str) -> bool:
    return verify_password(password, get_admin_password_hash())


def change_admin_password(new_password: str, confirm_password: str) -> None:
    if new_password != confirm_password:
        raise InvalidInputError("Passwords do not match")
    is_valid, message = validate_password(new_password)
    if not is_valid:
        raise InvalidInputError(message)
    try:
        get_document_store().set(
            SETTINGS,
            ADMIN_SETTINGS_KEY,
            {"passwordHash": hash_password(new_password), "updatedAt": datetime.now(timezone.utc)},
            merge=True,
        )
    except Exception as exc:
        logger.exception("Failed to change admin password")
        raise StoreOperationError("Failed to change password") from exc


# Login throttling


def format_lockout_wait(seconds: int, fallback_seconds: int) -> str:
    label = LOCKOUT_LABELS.get(fallback_seconds)
    if label:
        return label
    if seconds < 60:
        return f"{max(1, seconds)} seconds"
    if seconds < 3600:
        minutes = max(1, int((seconds + 59) / 60))
        return f"{minutes} minutes"
    if seconds < 86400:
        hours = max(1, int((seconds + 3599) / 3600))
        return f"{hours} hours"
    days = max(1, int((seconds + 86399) / 86400))
    return f"{days} days"


def check_lockout(client_key: str) -> Optional[Dict[str, object]]:
    """Return a refusal payload while ``client_key`` is locked out."""
    state = login_lockouts.get(client_key)
    if not state:
        return None
    now = time.time()
    lockout_until = float(state.get("lockout_until", 0))
    if lockout_until <= now:
        return None
    remaining = int(lockout_until - now)
    step_index = int(state.get("step", -1))
    step_index = max(0, min(step_index, len(LOCKOUT_SCHEDULE_SECONDS) - 1))
    step_duration = LOCKOUT_SCHEDULE_SECONDS[step_index]
    return {
        "ok": False,
        "message": f"Too many attempts. Try again in {format_lockout_wait(remaining, step_duration)}.",
        "retry_after_seconds": remaining,
    }


def record_failed_attempt(client_key: str, message: str) -> Dict[str, object]:
    state = login_lockouts.setdefault(
        client_key,
        {"failures": 0, "lockout_until": 0, "step": -1},
    )
    state["failures"] = int(state.get("failures", 0)) + 1
    if state["failures"] % ATTEMPT_LIMIT == 0:
        next_step = min(int(state.get("step", -1)) + 1, len(LOCKOUT_SCHEDULE_SECONDS) - 1)
        duration = LOCKOUT_SCHEDULE_SECONDS[next_step]
        state["step"] = next_step
        state["lockout_until"] = time.time() + duration
        logger.warning("Login locked out. client=%s duration=%s", client_key, duration)
        return {
            "ok": False,
            "message": f"Too many attempts. Try again in {format_lockout_wait(duration, duration)}.",
            "retry_after_seconds": int(duration),
        }
    return {"ok": False, "message": message}


def clear_failed_attempts(client_key: str) -> None:
    login_lockouts.pop(client_key, None)


# Bearer tokens


def prune_tokens(now: float) -> None:
    for token in [token for token, expires_at in admin_tokens.items() if expires_at <= now]:
        admin_tokens.pop(token, None)
    for token in [token for token, (_, expires_at) in diary_tokens.items() if expires_at <= now]:
        diary_tokens.pop(token, None)


def issue_admin_token() -> str:
    token = secrets.token_urlsafe(32)
    admin_tokens[token] = time.time() + config.ADMIN_TOKEN_TTL_SECONDS
    return token


def validate_admin_token(token: Optional[str]) -> bool:
    if not token:
        return False
    now = time.time()
    prune_tokens(now)
    expires_at = admin_tokens.get(token)
    return bool(expires_at and expires_at > now)


def issue_diary_token(diary_id: str) -> str:
    token = secrets.token_urlsafe(32)
    diary_tokens[token] = (diary_id, time.time() + config.DIARY_TOKEN_TTL_SECONDS)
    return token


def validate_diary_token(token: Optional[str], diary_id: str) -> bool:
    """Admin tokens open every diary; diary tokens open only their own."""
    if not token:
        return False
    if validate_admin_token(token):
        return True
    entry = diary_tokens.get(token)
    if not entry:
        return False
    token_diary_id, expires_at = entry
    return token_diary_id == diary_id and expires_at > time.time()


def revoke_diary_tokens(diary_id: str) -> None:
    for token in [token for token, (token_diary_id, _) in diary_tokens.items() if token_diary_id == diary_id]:
        diary_tokens.pop(token, None)
