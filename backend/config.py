import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path, override=False)

BUILD_TAG = os.getenv("BUILD_TAG", "local-dev")

FIREBASE_PROJECT_ID = (os.getenv("FIREBASE_PROJECT_ID") or "").strip() or None
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")
# "auto" picks Firestore when credentials or a project id are configured.
STORE_BACKEND = os.getenv("STORE_BACKEND", "auto").strip().lower()

AUTOSAVE_DEBOUNCE_MS = int(os.getenv("AUTOSAVE_DEBOUNCE_MS", "400"))
UNDO_HISTORY_LIMIT = int(os.getenv("UNDO_HISTORY_LIMIT", "10"))
TEXT_UNDO_HISTORY_LIMIT = int(os.getenv("TEXT_UNDO_HISTORY_LIMIT", "200"))
CARD_BODY_CHARACTER_LIMIT = int(os.getenv("CARD_BODY_CHARACTER_LIMIT", "300"))

ADMIN_TOKEN_TTL_SECONDS = int(os.getenv("ADMIN_TOKEN_TTL_SECONDS", "28800"))
DIARY_TOKEN_TTL_SECONDS = int(os.getenv("DIARY_TOKEN_TTL_SECONDS", "43200"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5173").rstrip("/")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

FRONTEND_DIST = Path(__file__).resolve().parent.parent / "frontend" / "dist"


def get_admin_password() -> str:
    return (os.getenv("ADMIN_PASSWORD") or "").strip()


def get_universal_diary_password_hash() -> str:
    return (os.getenv("UNIVERSAL_DIARY_PASSWORD_HASH") or "").strip()
