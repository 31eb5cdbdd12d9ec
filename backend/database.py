"""Diary and card persistence.

Records are addressed by their application-level ``id`` field, never by the
storage key, so every point operation starts with a lookup query. Writes log
store failures and re-raise them as ``StoreOperationError``; point reads log
and return ``None``/``[]``. Updates and deletes of unknown ids are silent
no-ops that return ``False``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from . import auth
from .errors import DiaryError, InvalidInputError, NotFoundError, StoreOperationError
from .models import Card, CardType, Diary, Gender
from .ordering import midpoint, move_card, next_sibling_order, sequential_orders
from .store import CARDS, DIARIES, StoredDocument, Unsubscribe, get_document_store
from .utils import generate_unique_diary_id, is_valid_client_id, is_valid_name, monotonic_ms

logger = logging.getLogger(__name__)

GENDERS = ("Male", "Female", "Other")
CARD_TYPES = ("Before", "After")
MAX_PARALLEL_WRITES = 8


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _find_one(collection: str, record_id: str) -> Optional[StoredDocument]:
    documents = get_document_store().query(collection, where=[("id", record_id)], limit=1)
    return documents[0] if documents else None


def _card_from_document(data) -> Optional[Card]:
    try:
        return Card.from_document(data)
    except ValidationError:
        logger.warning("Skipping malformed card document. id=%s", data.get("id"))
        return None


# Diaries


def _diary_id_taken(diary_id: str) -> bool:
    return _find_one(DIARIES, diary_id) is not None


def create_diary(client_id: str, name: str, gender: Gender) -> str:
    if not is_valid_client_id(client_id):
        raise InvalidInputError("Client ID must be between 3-50 characters")
    if not is_valid_name(name):
        raise InvalidInputError("Name must be between 2-100 characters")
    if gender not in GENDERS:
        raise InvalidInputError("Gender must be Male, Female or Other")
    try:
        diary_id = generate_unique_diary_id(_diary_id_taken)
        now = _now()
        get_document_store().add(
            DIARIES,
            {
                "id": diary_id,
                "clientId": client_id.strip(),
                "name": name.strip(),
                "gender": gender,
                "url": f"/diary/{diary_id}",
                "cardReadingCount": 0,
                "isLocked": False,
                "createdAt": now,
                "updatedAt": now,
            },
        )
    except Exception as exc:
        logger.exception("Error creating diary")
        raise StoreOperationError("Failed to create diary") from exc
    logger.info("Created diary. diary_id=%s", diary_id)
    return diary_id


def get_diary_document(diary_id: str) -> Optional[StoredDocument]:
    try:
        return _find_one(DIARIES, diary_id)
    except Exception:
        logger.exception("Error getting diary. diary_id=%s", diary_id)
        return None


def get_diary(diary_id: str) -> Optional[Diary]:
    document = get_diary_document(diary_id)
    if document is None:
        return None
    return Diary.from_document(document.data)


def validate_diary_access(diary_id: str, client_id: str) -> bool:
    diary = get_diary(diary_id)
    return diary is not None and diary.client_id == (client_id or "").strip()


def list_diaries(search: Optional[str] = None) -> List[Diary]:
    try:
        documents = get_document_store().query(DIARIES, order_by="createdAt", descending=True)
    except Exception as exc:
        logger.exception("Error getting all diaries")
        raise StoreOperationError("Failed to get diaries") from exc
    diaries = [Diary.from_document(document.data) for document in documents]
    term = (search or "").strip().lower()
    if not term:
        return diaries
    return [
        diary
        for diary in diaries
        if term in diary.client_id.lower() or term in diary.name.lower() or term in diary.gender.lower()
    ]


def increment_card_reading_count(diary_id: str) -> Optional[int]:
    """Bump the "cards read" counter. Returns the new count, or None for an
    unknown diary."""
    store = get_document_store()
    try:
        document = _find_one(DIARIES, diary_id)
        if document is None:
            logger.warning("Reading count for unknown diary ignored. diary_id=%s", diary_id)
            return None
        store.increment(DIARIES, document.key, "cardReadingCount", 1)
        refreshed = store.get(DIARIES, document.key)
    except Exception as exc:
        logger.exception("Error updating reading count. diary_id=%s", diary_id)
        raise StoreOperationError("Failed to update reading count") from exc
    return int(refreshed.get("cardReadingCount", 0)) if refreshed else None


def _require_diary_document(diary_id: str) -> StoredDocument:
    document = get_diary_document(diary_id)
    if document is None:
        raise NotFoundError("Diary not found")
    return document


def set_diary_lock(diary_id: str, password: str) -> None:
    is_valid, message = auth.validate_password(password)
    if not is_valid:
        raise InvalidInputError(message)
    document = _require_diary_document(diary_id)
    try:
        get_document_store().update(
            DIARIES,
            document.key,
            {"passwordHash": auth.hash_password(password), "isLocked": True, "updatedAt": _now()},
        )
    except Exception as exc:
        logger.exception("Error locking diary. diary_id=%s", diary_id)
        raise StoreOperationError("Failed to lock diary") from exc


def verify_diary_password(diary_id: str, password: str) -> bool:
    document = get_diary_document(diary_id)
    if document is None:
        return False
    return auth.verify_password_with_universal(password, document.get("passwordHash"))


def clear_diary_lock(diary_id: str, password: str) -> None:
    document = _require_diary_document(diary_id)
    if not auth.verify_password_with_universal(password, document.get("passwordHash")):
        raise InvalidInputError("Incorrect password")
    try:
        get_document_store().update(
            DIARIES,
            document.key,
            {"passwordHash": None, "isLocked": False, "updatedAt": _now()},
        )
    except Exception as exc:
        logger.exception("Error unlocking diary. diary_id=%s", diary_id)
        raise StoreOperationError("Failed to unlock diary") from exc


def delete_diary(diary_id: str) -> None:
    # Cards first, then the diary. The two phases are not atomic: a failure in
    # between leaves an empty diary behind.
    store = get_document_store()
    try:
        card_documents = store.query(CARDS, where=[("diaryId", diary_id)])
        deleted = store.delete_many(CARDS, [document.key for document in card_documents])
        diary_document = _find_one(DIARIES, diary_id)
        if diary_document is not None:
            store.delete(DIARIES, diary_document.key)
    except Exception as exc:
        logger.exception("Error deleting diary. diary_id=%s", diary_id)
        raise StoreOperationError("Failed to delete diary") from exc
    logger.info("Deleted diary. diary_id=%s cards=%s", diary_id, deleted)


# Cards


def create_card(
    diary_id: str,
    topic: str,
    body_text: str = "",
    order: float = 0,
    card_type: CardType = "Before",
) -> str:
    """Persist a new card. Placement is the caller's job: ``order`` is stored
    as given."""
    if card_type not in CARD_TYPES:
        raise InvalidInputError("Card type must be Before or After")
    card_id = f"{diary_id}_{monotonic_ms()}"
    now = _now()
    try:
        get_document_store().add(
            CARDS,
            {
                "id": card_id,
                "diaryId": diary_id,
                "topic": (topic or "").strip(),
                "type": card_type,
                "bodyText": (body_text or "").strip(),
                "order": order,
                "createdAt": now,
                "updatedAt": now,
            },
        )
    except Exception as exc:
        logger.exception("Error creating card. diary_id=%s", diary_id)
        raise StoreOperationError("Failed to create card") from exc
    return card_id


def restore_card(card: Card) -> None:
    """Write ``card`` back exactly, re-creating it under its old id if it was
    deleted."""
    store = get_document_store()
    data = card.model_dump(by_alias=True)
    data["createdAt"] = data.get("createdAt") or _now()
    data["updatedAt"] = _now()
    try:
        existing = _find_one(CARDS, card.id)
        if existing is None:
            store.add(CARDS, data)
        else:
            store.update(CARDS, existing.key, data)
    except Exception as exc:
        logger.exception("Error restoring card. card_id=%s", card.id)
        raise StoreOperationError("Failed to restore card") from exc


def get_cards(diary_id: str) -> List[Card]:
    try:
        documents = get_document_store().query(CARDS, where=[("diaryId", diary_id)], order_by="order")
    except Exception:
        logger.exception("Error getting cards. diary_id=%s", diary_id)
        return []
    return [card for card in (_card_from_document(document.data) for document in documents) if card]


def get_card(card_id: str) -> Optional[Card]:
    try:
        document = _find_one(CARDS, card_id)
    except Exception:
        logger.exception("Error getting card. card_id=%s", card_id)
        return None
    return _card_from_document(document.data) if document else None


def update_card(
    card_id: str,
    topic: Optional[str] = None,
    body_text: Optional[str] = None,
    card_type: Optional[CardType] = None,
    order: Optional[float] = None,
) -> bool:
    updates = {}
    if topic is not None:
        updates["topic"] = topic
    if body_text is not None:
        updates["bodyText"] = body_text
    if card_type is not None:
        if card_type not in CARD_TYPES:
            raise InvalidInputError("Card type must be Before or After")
        updates["type"] = card_type
    if order is not None:
        updates["order"] = order
    updates["updatedAt"] = _now()
    store = get_document_store()
    try:
        document = _find_one(CARDS, card_id)
        if document is None:
            logger.warning("Update of unknown card ignored. card_id=%s", card_id)
            return False
        store.update(CARDS, document.key, updates)
    except Exception as exc:
        logger.exception("Error updating card. card_id=%s", card_id)
        raise StoreOperationError("Failed to update card") from exc
    return True


def delete_card(card_id: str) -> bool:
    store = get_document_store()
    try:
        document = _find_one(CARDS, card_id)
        if document is None:
            logger.warning("Delete of unknown card ignored. card_id=%s", card_id)
            return False
        store.delete(CARDS, document.key)
    except Exception as exc:
        logger.exception("Error deleting card. card_id=%s", card_id)
        raise StoreOperationError("Failed to delete card") from exc
    return True


def _persist_orders(cards: Sequence[Card], context: str) -> List[Card]:
    assignments = sequential_orders(cards)
    if not assignments:
        return []
    with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_WRITES, len(assignments))) as executor:
        futures = [executor.submit(update_card, card.id, order=float(order)) for card, order in assignments]
        errors = [future.exception() for future in futures]
    failed = [error for error in errors if error is not None]
    if failed:
        logger.error("%s: %s of %s order writes failed", context, len(failed), len(assignments))
        raise StoreOperationError(f"Failed to {context}") from failed[0]
    return [card.model_copy(update={"order": float(order)}) for card, order in assignments]


def reorder_cards(
    diary_id: str,
    card_id: str,
    target_index: int,
    cards: Optional[Sequence[Card]] = None,
) -> List[Card]:
    """Move one card to ``target_index`` and renumber every card 1..n."""
    current = list(cards) if cards is not None else get_cards(diary_id)
    try:
        reordered = move_card(current, card_id, target_index)
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc
    return _persist_orders(reordered, "reorder cards")


def compact_card_order(diary_id: str) -> List[Card]:
    """Renumber a diary's cards 1..n once midpoint insertion has run out of
    floating point room."""
    cards = get_cards(diary_id)
    logger.warning("Compacting card order. diary_id=%s cards=%s", diary_id, len(cards))
    return _persist_orders(cards, "compact card order")


def duplicate_card(card_id: str) -> str:
    store = get_document_store()
    try:
        original = _find_one(CARDS, card_id)
        if original is None:
            raise NotFoundError("Card not found")
        diary_id = original.get("diaryId")
        current_order = original.get("order", 0)
        siblings = store.query(CARDS, where=[("diaryId", diary_id)], order_by="order")
        next_order = next_sibling_order([sibling.get("order") for sibling in siblings], current_order)
        new_order = midpoint(current_order, next_order)
        if new_order is None:
            compacted = compact_card_order(diary_id)
            current_order = next(card.order for card in compacted if card.id == card_id)
            next_order = next_sibling_order([card.order for card in compacted], current_order)
            new_order = midpoint(current_order, next_order)

        new_card_id = f"{diary_id}_{monotonic_ms()}"
        now = _now()
        store.add(
            CARDS,
            {
                "id": new_card_id,
                "diaryId": diary_id,
                "topic": f"{original.get('topic', '')} (Copy)",
                "type": original.get("type", "Before"),
                "bodyText": original.get("bodyText", ""),
                "order": new_order,
                "createdAt": now,
                "updatedAt": now,
            },
        )
    except DiaryError:
        raise
    except Exception as exc:
        logger.exception("Error duplicating card. card_id=%s", card_id)
        raise StoreOperationError("Failed to duplicate card") from exc
    return new_card_id


def subscribe_to_cards(diary_id: str, callback: Callable[[List[Card]], None]) -> Unsubscribe:
    """Push the diary's ordered cards to ``callback`` on every change,
    including the application's own writes."""

    def on_documents(documents: List[StoredDocument]) -> None:
        cards = [_card_from_document(document.data) for document in documents]
        callback([card for card in cards if card])

    return get_document_store().subscribe(CARDS, [("diaryId", diary_id)], "order", on_documents)
