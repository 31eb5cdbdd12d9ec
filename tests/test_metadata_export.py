"""Tests for page metadata and diary exports."""

from datetime import datetime, timezone
from io import BytesIO, StringIO

import pandas as pd
from docx import Document

from backend.export import DIARY_COLUMNS, export_diaries_csv, export_diaries_excel, export_diary_word
from backend.metadata import DESCRIPTION_LIMIT, FALLBACK_TITLE, generate_diary_metadata
from backend.models import Card, Diary
from backend.utils import format_date, truncate_text

CREATED = datetime(2025, 3, 4, 9, 5, tzinfo=timezone.utc)


def _diary(**overrides):
    values = dict(id="abc12345", client_id="C-1", name="Robin", gender="Female", url="/diary/abc12345")
    values.update(overrides)
    return Diary(created_at=CREATED, **values)


def test_metadata_for_diary():
    metadata = generate_diary_metadata(_diary())
    assert metadata["title"] == "Robin (ID: C-1) - Therapy Diary"
    assert "Robin" in metadata["keywords"] and "C-1" in metadata["keywords"]
    assert metadata["openGraph"]["title"] == metadata["title"]
    assert metadata["other"]["client-id"] == "C-1"


def test_metadata_description_is_capped():
    metadata = generate_diary_metadata(_diary(name="N" * 100))
    assert len(metadata["description"]) == DESCRIPTION_LIMIT
    assert metadata["description"].endswith("...")
    assert metadata["twitter"]["description"] == metadata["description"]


def test_metadata_fallback():
    assert generate_diary_metadata(None)["title"] == FALLBACK_TITLE


def test_format_date():
    assert format_date(CREATED) == "Mar 4, 2025, 09:05 AM"
    assert format_date(None) == ""


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("a longer sentence", 10) == "a longe..."


def test_csv_export():
    content = export_diaries_csv([_diary(), _diary(id="x2", client_id="C-2", url="")], "https://app.example/")
    frame = pd.read_csv(StringIO(content))
    assert list(frame.columns) == DIARY_COLUMNS
    assert frame["Diary URL"].tolist() == [
        "https://app.example/diary/abc12345",
        "https://app.example/diary/x2",
    ]
    assert frame["Created At"].tolist()[0] == "Mar 4, 2025, 09:05 AM"


def test_csv_export_without_diaries_keeps_header():
    assert export_diaries_csv([], "https://app.example").strip() == ",".join(DIARY_COLUMNS)


def test_excel_export():
    frame = pd.read_excel(BytesIO(export_diaries_excel([_diary()], "https://app.example")))
    assert frame["Client ID"].tolist() == ["C-1"]


def test_word_export_lists_cards_in_order():
    cards = [
        Card(id="c1", diary_id="abc12345", topic="Morning", body_text="<p>Calm</p><p>Tea</p>", order=1),
        Card(id="c2", diary_id="abc12345", topic="Evening", type="After", order=2),
    ]
    document = Document(BytesIO(export_diary_word(_diary(), cards)))
    texts = [paragraph.text for paragraph in document.paragraphs]
    assert "Robin (ID: C-1)" in texts
    assert texts.index("1. Morning (Before)") < texts.index("2. Evening (After)")
    assert "Calm\nTea" in texts


def test_word_export_breaks_lines_without_blank_gaps():
    cards = [Card(id="c1", diary_id="abc12345", topic="Notes", body_text="<p>One<br/>Two</p><p></p><P>Three</P>", order=1)]
    document = Document(BytesIO(export_diary_word(_diary(), cards)))
    assert "One\nTwo\nThree" in [paragraph.text for paragraph in document.paragraphs]


def test_word_export_without_cards():
    document = Document(BytesIO(export_diary_word(_diary(), [])))
    assert "No cards yet." in [paragraph.text for paragraph in document.paragraphs]
