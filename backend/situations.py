"""Situations reference library: situation -> before-items -> after-items."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .bullets import format_before_after_to_content, parse_bullet_list_content, validate_bullet_list_content
from .errors import DiaryError, InvalidInputError, NotFoundError, StoreOperationError
from .models import AfterItem, BeforeItem, Situation
from .store import AFTER_ITEMS, BEFORE_ITEMS, SITUATIONS, StoredDocument, get_document_store
from .utils import monotonic_ms

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _find_one(collection: str, record_id: str) -> Optional[StoredDocument]:
    documents = get_document_store().query(collection, where=[("id", record_id)], limit=1)
    return documents[0] if documents else None


def _next_order(collection: str, where=()) -> float:
    highest = get_document_store().query(collection, where=where, order_by="order", descending=True, limit=1)
    return (highest[0].get("order", 0) if highest else 0) + 1


def _create(collection: str, prefix: str, title: str, description: Optional[str], parent=None) -> str:
    if not (title or "").strip():
        raise InvalidInputError("Title is required")
    record_id = f"{prefix}_{monotonic_ms()}"
    where = [parent] if parent else []
    now = _now()
    data = {
        "id": record_id,
        "title": title.strip(),
        "description": (description or "").strip(),
        "order": _next_order(collection, where),
        "createdAt": now,
        "updatedAt": now,
    }
    if parent:
        data[parent[0]] = parent[1]
    get_document_store().add(collection, data)
    return record_id


def _update(collection: str, record_id: str, title: Optional[str], description: Optional[str]) -> bool:
    updates = {"updatedAt": _now()}
    if title is not None:
        if not title.strip():
            raise InvalidInputError("Title is required")
        updates["title"] = title.strip()
    if description is not None:
        updates["description"] = description.strip()
    document = _find_one(collection, record_id)
    if document is None:
        logger.warning("Update of unknown record ignored. collection=%s id=%s", collection, record_id)
        return False
    get_document_store().update(collection, document.key, updates)
    return True


def _delete(collection: str, record_id: str) -> bool:
    document = _find_one(collection, record_id)
    if document is None:
        return False
    get_document_store().delete(collection, document.key)
    return True


def _store_call(message: str, func, *args):
    try:
        return func(*args)
    except DiaryError:
        raise
    except Exception as exc:
        logger.exception("Error: %s", message)
        raise StoreOperationError(message) from exc


# Situations


def create_situation(title: str, description: Optional[str] = None) -> str:
    return _store_call("Failed to create situation", _create, SITUATIONS, "situation", title, description)


def create_multiple_situations(titles: Sequence[str]) -> List[Situation]:
    created = []
    for title in titles:
        if not (title or "").strip():
            continue
        situation_id = create_situation(title)
        document = _store_call("Failed to create situations", _find_one, SITUATIONS, situation_id)
        if document is not None:
            created.append(Situation.from_document(document.data))
    logger.info("Created %s situations", len(created))
    return created


def update_situation(situation_id: str, title: Optional[str] = None, description: Optional[str] = None) -> bool:
    return _store_call("Failed to update situation", _update, SITUATIONS, situation_id, title, description)


def delete_situation(situation_id: str) -> bool:
    for before_item in get_before_items(situation_id):
        delete_before_item(before_item.id)
    return _store_call("Failed to delete situation", _delete, SITUATIONS, situation_id)


def get_all_situations() -> List[Situation]:
    try:
        documents = get_document_store().query(SITUATIONS, order_by="order")
    except Exception:
        logger.exception("Error getting situations")
        return []
    return [Situation.from_document(document.data) for document in documents if document.get("id")]


def cleanup_corrupted_situations() -> int:
    """Remove situation records that have lost their id or title."""
    store = get_document_store()
    try:
        corrupted = [
            document.key
            for document in store.query(SITUATIONS)
            if not document.get("id") or not str(document.get("title") or "").strip()
        ]
        if corrupted:
            store.delete_many(SITUATIONS, corrupted)
            logger.warning("Removed %s corrupted situations", len(corrupted))
    except Exception as exc:
        logger.exception("Error cleaning up situations")
        raise StoreOperationError("Failed to clean up situations") from exc
    return len(corrupted)


# Before items


def create_before_item(situation_id: str, title: str, description: Optional[str] = None) -> str:
    return _store_call(
        "Failed to create before item",
        _create,
        BEFORE_ITEMS,
        "before",
        title,
        description,
        ("situationId", situation_id),
    )


def update_before_item(before_item_id: str, title: Optional[str] = None, description: Optional[str] = None) -> bool:
    return _store_call("Failed to update before item", _update, BEFORE_ITEMS, before_item_id, title, description)


def delete_before_item(before_item_id: str) -> bool:
    for after_item in get_after_items(before_item_id):
        delete_after_item(after_item.id)
    return _store_call("Failed to delete before item", _delete, BEFORE_ITEMS, before_item_id)


def get_before_items(situation_id: str) -> List[BeforeItem]:
    try:
        documents = get_document_store().query(BEFORE_ITEMS, where=[("situationId", situation_id)], order_by="order")
    except Exception:
        logger.exception("Error getting before items. situation_id=%s", situation_id)
        return []
    return [BeforeItem.from_document(document.data) for document in documents]


# After items


def create_after_item(before_item_id: str, title: str, description: Optional[str] = None) -> str:
    return _store_call(
        "Failed to create after item",
        _create,
        AFTER_ITEMS,
        "after",
        title,
        description,
        ("beforeItemId", before_item_id),
    )


def update_after_item(after_item_id: str, title: Optional[str] = None, description: Optional[str] = None) -> bool:
    return _store_call("Failed to update after item", _update, AFTER_ITEMS, after_item_id, title, description)


def delete_after_item(after_item_id: str) -> bool:
    return _store_call("Failed to delete after item", _delete, AFTER_ITEMS, after_item_id)


def get_after_items(before_item_id: str) -> List[AfterItem]:
    try:
        documents = get_document_store().query(AFTER_ITEMS, where=[("beforeItemId", before_item_id)], order_by="order")
    except Exception:
        logger.exception("Error getting after items. before_item_id=%s", before_item_id)
        return []
    return [AfterItem.from_document(document.data) for document in documents]


# Bulk content


def get_after_items_map(before_items: Sequence[BeforeItem]) -> Dict[str, List[AfterItem]]:
    return {before_item.id: get_after_items(before_item.id) for before_item in before_items}


def get_before_after_content_for_situation(situation_id: str) -> str:
    before_items = get_before_items(situation_id)
    return format_before_after_to_content(before_items, get_after_items_map(before_items))


def save_before_after_items_from_content(situation_id: str, content: str) -> int:
    """Replace a situation's before/after items with the parsed bullet list.

    Returns the number of before-items written.
    """
    is_valid, errors = validate_bullet_list_content(content)
    if not is_valid:
        raise InvalidInputError("; ".join(errors))
    if _store_call("Failed to save before/after items", _find_one, SITUATIONS, situation_id) is None:
        raise NotFoundError("Situation not found")

    parsed = parse_bullet_list_content(content)
    for before_item in get_before_items(situation_id):
        delete_before_item(before_item.id)
    for parsed_item in parsed.before_items:
        before_item_id = create_before_item(situation_id, parsed_item.title)
        for after_title in parsed_item.after_items:
            create_after_item(before_item_id, after_title)
    logger.info(
        "Saved before/after items. situation_id=%s before_items=%s",
        situation_id,
        len(parsed.before_items),
    )
    return len(parsed.before_items)


def get_situation_tree() -> List[Dict]:
    tree = []
    for situation in get_all_situations():
        before_items = get_before_items(situation.id)
        after_items = get_after_items_map(before_items)
        tree.append(
            {
                **situation.to_json(),
                "beforeItems": [
                    {
                        **before_item.to_json(),
                        "afterItems": [item.to_json() for item in after_items.get(before_item.id, [])],
                    }
                    for before_item in before_items
                ],
                "content": format_before_after_to_content(before_items, after_items),
            }
        )
    return tree
