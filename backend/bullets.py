"""Bullet-list text format for bulk before/after imports.

    1. Before item
       a. After item
       b. Another after item
    2. Next before item
"""

from __future__ import annotations

import re
from typing import Dict, List, Sequence, Tuple

from .models import AfterItem, BeforeItem, ParsedBeforeAfterData, ParsedBeforeItem

BEFORE_ITEM_RE = re.compile(r"^(\d+)\.\s+(.+)$")
AFTER_ITEM_RE = re.compile(r"^[a-z]\.\s+(.+)$")


def _content_lines(content: str) -> List[str]:
    return [line.strip() for line in (content or "").split("\n") if line.strip()]


def parse_bullet_list_content(content: str) -> ParsedBeforeAfterData:
    result = ParsedBeforeAfterData()
    current = None
    for line in _content_lines(content):
        before_match = BEFORE_ITEM_RE.match(line)
        if before_match:
            if current is not None:
                result.before_items.append(current)
            current = ParsedBeforeItem(title=before_match.group(2).strip())
            continue
        after_match = AFTER_ITEM_RE.match(line)
        if after_match and current is not None:
            current.after_items.append(after_match.group(1).strip())
    if current is not None:
        result.before_items.append(current)
    return result


def format_before_after_to_content(
    before_items: Sequence[BeforeItem],
    after_items_by_before_id: Dict[str, Sequence[AfterItem]],
) -> str:
    lines = []
    for before_index, before_item in enumerate(before_items, start=1):
        lines.append(f"{before_index}. {before_item.title}")
        for after_index, after_item in enumerate(after_items_by_before_id.get(before_item.id, [])):
            letter = chr(ord("a") + after_index)
            lines.append(f"   {letter}. {after_item.title}")
    return "\n".join(lines).strip()


def validate_bullet_list_content(content: str) -> Tuple[bool, List[str]]:
    lines = _content_lines(content)
    errors: List[str] = []
    has_before_items = False

    for number, line in enumerate(lines, start=1):
        before_match = BEFORE_ITEM_RE.match(line)
        if before_match:
            has_before_items = True
            if not before_match.group(2).strip():
                errors.append(f"Line {number}: Before item cannot be empty")
            continue

        after_match = AFTER_ITEM_RE.match(line)
        if after_match:
            if not has_before_items:
                errors.append(f"Line {number}: After item found without a parent before item")
            if not after_match.group(1).strip():
                errors.append(f"Line {number}: After item cannot be empty")
            continue

        errors.append(
            f"Line {number}: Invalid format. Expected numbered items (1. 2. 3.) "
            "or lettered sub-items (a. b. c.)"
        )

    if not has_before_items and lines:
        errors.append("At least one before item is required")

    return not errors, errors
