from __future__ import annotations

import re
from io import BytesIO, StringIO
from typing import List, Sequence

import pandas as pd
from docx import Document

from .models import Card, Diary
from .sanitize import strip_html
from .utils import format_date

DIARY_COLUMNS = ["Client ID", "Name", "Gender", "Diary URL", "Created At"]
LINE_BREAK = re.compile(r"</p>|<br\s*/?>", re.IGNORECASE)


def diaries_frame(diaries: Sequence[Diary], base_url: str) -> pd.DataFrame:
    rows = [
        {
            "Client ID": diary.client_id,
            "Name": diary.name,
            "Gender": diary.gender,
            "Diary URL": f"{base_url.rstrip('/')}{diary.url or f'/diary/{diary.id}'}",
            "Created At": format_date(diary.created_at),
        }
        for diary in diaries
    ]
    return pd.DataFrame(rows, columns=DIARY_COLUMNS)


def export_diaries_csv(diaries: Sequence[Diary], base_url: str) -> str:
    output = StringIO()
    diaries_frame(diaries, base_url).to_csv(output, index=False)
    return output.getvalue()


def export_diaries_excel(diaries: Sequence[Diary], base_url: str) -> bytes:
    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        diaries_frame(diaries, base_url).to_excel(writer, index=False, sheet_name="Diaries")
    output.seek(0)
    return output.read()


def export_diary_word(diary: Diary, cards: List[Card]) -> bytes:
    document = Document()
    document.add_heading(f"{diary.name} (ID: {diary.client_id})", level=1)
    document.add_paragraph(f"Gender: {diary.gender}")
    if diary.created_at:
        document.add_paragraph(f"Created: {format_date(diary.created_at)}")

    if not cards:
        document.add_paragraph("No cards yet.")
    for position, card in enumerate(cards, start=1):
        document.add_heading(f"{position}. {card.topic or 'Untitled'} ({card.type})", level=2)
        lines = (strip_html(part).strip() for part in LINE_BREAK.split(card.body_text))
        body = "\n".join(line for line in lines if line)
        document.add_paragraph(body or "-")

    output = BytesIO()
    document.save(output)
    output.seek(0)
    return output.read()
