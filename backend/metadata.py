from __future__ import annotations

from typing import Any, Dict, Optional

from .models import Diary
from .utils import truncate_text

SITE_NAME = "Before After - Therapy Diary"
FALLBACK_TITLE = "Therapy Diary - Before After"
FALLBACK_DESCRIPTION = "A collaborative therapy diary web app"
DESCRIPTION_LIMIT = 160


def format_diary_title(diary: Diary) -> str:
    return f"{diary.name} (ID: {diary.client_id}) - Therapy Diary"


def format_diary_description(diary: Diary) -> str:
    return truncate_text(
        (
            f"Therapy diary for {diary.name} ({diary.gender}, ID: {diary.client_id}). "
            "Track progress and insights in this collaborative therapy journal."
        ),
        DESCRIPTION_LIMIT,
    )


def generate_diary_metadata(diary: Optional[Diary]) -> Dict[str, Any]:
    """Page metadata for a diary so browser history search finds it by client."""
    if diary is None:
        return {"title": FALLBACK_TITLE, "description": FALLBACK_DESCRIPTION}

    title = format_diary_title(diary)
    description = format_diary_description(diary)
    return {
        "title": title,
        "description": description,
        "keywords": ", ".join(
            [
                "therapy diary",
                "client journal",
                diary.name,
                diary.client_id,
                "before after therapy",
                "therapy progress",
            ]
        ),
        "openGraph": {
            "title": title,
            "description": description,
            "type": "website",
            "siteName": SITE_NAME,
        },
        "twitter": {"card": "summary", "title": title, "description": description},
        "other": {
            "color-scheme": "light",
            "client-id": diary.client_id,
            "client-name": diary.name,
        },
    }
