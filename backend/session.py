"""Per-viewer card editing state: current card, debounced autosave and the two
undo/redo histories.

One ``DiarySession`` backs one open diary view. All methods run on the event
loop thread; store snapshots arriving from the store's own threads are
marshalled onto the loop before they touch any state.

Undo policy: text-level history (live keystroke edits) is always consulted
before structural history (add / duplicate / delete / reorder). The two are
separate stacks, not one interleaved timeline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from . import config, database
from .errors import DiaryError
from .models import Card, CardType
from .ordering import insertion_order
from .sanitize import sanitize_html, text_length

logger = logging.getLogger(__name__)

NEW_CARD_TOPIC = "New Topic"
EDITABLE_FIELDS = ("topic", "body_text", "type", "order")


def clone_cards(cards: List[Card]) -> List[Card]:
    return [card.model_copy(deep=True) for card in cards]


def _push_bounded(stack: List[List[Card]], snapshot: List[Card], limit: int) -> None:
    stack.append(snapshot)
    if limit > 0 and len(stack) > limit:
        del stack[: len(stack) - limit]


def _differs(left: Card, right: Card) -> bool:
    return any(getattr(left, name) != getattr(right, name) for name in EDITABLE_FIELDS)


class DiarySession:
    def __init__(
        self,
        diary_id: str,
        debounce_seconds: Optional[float] = None,
        undo_limit: Optional[int] = None,
        text_undo_limit: Optional[int] = None,
        character_limit: Optional[int] = None,
    ) -> None:
        self.diary_id = diary_id
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.AUTOSAVE_DEBOUNCE_MS / 1000
        )
        self.undo_limit = undo_limit if undo_limit is not None else config.UNDO_HISTORY_LIMIT
        self.text_undo_limit = text_undo_limit if text_undo_limit is not None else config.TEXT_UNDO_HISTORY_LIMIT
        self.character_limit = character_limit if character_limit is not None else config.CARD_BODY_CHARACTER_LIMIT

        self.cards: List[Card] = []
        self.current_index = 0
        self.undo_stack: List[List[Card]] = []
        self.redo_stack: List[List[Card]] = []
        self.text_undo_stack: List[List[Card]] = []
        self.text_redo_stack: List[List[Card]] = []
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.loaded = False
        self.closed = False

        # Debounced write waiting on the timer: one card, latest field values.
        self._pending_card_id: Optional[str] = None
        self._pending: Dict[str, Any] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        # Local edits not yet confirmed by a successful write win over
        # incoming snapshots for the same card.
        self._local_versions: Dict[str, int] = {}
        self._local_edits: Dict[str, Dict[str, Any]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe = None
        self._bootstrapping = False

    # Lifecycle

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = database.subscribe_to_cards(self.diary_id, self._on_remote_snapshot)

    def close(self) -> None:
        if self.closed:
            return
        self.flush()
        self.closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def current_card(self) -> Optional[Card]:
        if not self.cards:
            return None
        return self.cards[self.current_index]

    @property
    def can_undo(self) -> bool:
        return bool(self.text_undo_stack or self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.text_redo_stack or self.redo_stack)

    @property
    def has_pending_write(self) -> bool:
        return self._pending_card_id is not None

    # Events

    def emit(self, event: Dict[str, Any]) -> None:
        self.outbox.put_nowait(event)

    def _toast(self, level: str, message: str) -> None:
        self.emit({"type": "toast", "level": level, "message": message})

    def snapshot_event(self) -> Dict[str, Any]:
        return {
            "type": "cards:snapshot",
            "diaryId": self.diary_id,
            "cards": [card.to_json() for card in self.cards],
            "currentIndex": self.current_index,
            "canUndo": self.can_undo,
            "canRedo": self.can_redo,
        }

    # Subscription reconciliation

    def _on_remote_snapshot(self, cards: List[Card]) -> None:
        if self.closed or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self.apply_snapshot, cards)
        except RuntimeError:
            logger.debug("Snapshot after loop shutdown dropped. diary_id=%s", self.diary_id)

    def apply_snapshot(self, cards: List[Card]) -> None:
        """Replace the local card list with a pushed snapshot.

        Cards with unconfirmed local edits keep their local field values.
        """
        if self.closed:
            return
        if not cards:
            # Snapshots can be stale by the time they are applied; only seed a
            # card when the store is really empty.
            cards = database.get_cards(self.diary_id)
            if not cards:
                self.cards = []
                self.current_index = 0
                self.loaded = True
                self._bootstrap()
                return

        merged = []
        for card in cards:
            local_edits = self._local_edits.get(card.id)
            if local_edits:
                card = card.model_copy(update=local_edits)
            merged.append(card)
        self.cards = merged
        self.loaded = True
        self._bootstrapping = False
        self._clamp_index()
        self.emit(self.snapshot_event())

    def _bootstrap(self) -> None:
        if self._bootstrapping:
            return
        self._bootstrapping = True
        logger.info("Seeding first card for empty diary. diary_id=%s", self.diary_id)
        if self.add_card(record_history=False, announce=False) is None:
            self._bootstrapping = False

    def _reload(self) -> None:
        self.apply_snapshot(database.get_cards(self.diary_id))

    def _clamp_index(self) -> None:
        if not self.cards:
            self.current_index = 0
        else:
            self.current_index = max(0, min(self.current_index, len(self.cards) - 1))

    def _index_of(self, card_id: str) -> Optional[int]:
        return next((i for i, card in enumerate(self.cards) if card.id == card_id), None)

    # Live text and autosave

    def live_text_change(self, card_id: str, topic: Optional[str] = None, body_text: Optional[str] = None) -> bool:
        """Apply a keystroke-level edit locally and (re)arm the autosave timer."""
        index = self._index_of(card_id)
        if index is None:
            logger.warning("Live edit for unknown card ignored. card_id=%s", card_id)
            return False
        updates = {}
        if topic is not None and topic != self.cards[index].topic:
            updates["topic"] = topic
        if body_text is not None and body_text != self.cards[index].body_text:
            updates["body_text"] = body_text
        if not updates:
            return False

        if self._pending_card_id is not None and self._pending_card_id != card_id:
            self.flush()

        # Pre-edit list: undo returns to the text before this keystroke.
        _push_bounded(self.text_undo_stack, clone_cards(self.cards), self.text_undo_limit)
        self.text_redo_stack.clear()
        self.cards[index] = self.cards[index].model_copy(update=updates)

        self._pending_card_id = card_id
        self._pending.update(updates)
        self._local_versions[card_id] = self._local_versions.get(card_id, 0) + 1
        self._local_edits.setdefault(card_id, {}).update(updates)
        self._arm_timer()
        return True

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._write_pending()

    def flush(self) -> bool:
        """Write any debounced edit now. Returns True when a write happened."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return self._write_pending()

    def _write_pending(self) -> bool:
        if self._pending_card_id is None:
            return False
        card_id, updates = self._pending_card_id, self._pending
        version = self._local_versions.get(card_id, 0)
        self._pending_card_id, self._pending = None, {}

        fields: Dict[str, Any] = {}
        if "topic" in updates:
            fields["topic"] = updates["topic"]
        if "body_text" in updates:
            fields["body_text"] = sanitize_html(updates["body_text"])
        try:
            database.update_card(card_id, **fields)
        except DiaryError as exc:
            # Not retried; the local text stays authoritative until the next
            # successful write.
            logger.warning("Autosave failed. card_id=%s error=%s", card_id, exc)
            self._toast("error", "Failed to update card")
            return False
        if self._local_versions.get(card_id) == version:
            self._local_edits.pop(card_id, None)
        return True

    # Navigation

    def go_to(self, index: int) -> bool:
        if not self.cards:
            return False
        index = max(0, min(index, len(self.cards) - 1))
        if index == self.current_index:
            return False
        self.flush()
        self.current_index = index
        self.emit(self.snapshot_event())
        return True

    def next_card(self) -> bool:
        return self.go_to(self.current_index + 1)

    def previous_card(self) -> bool:
        return self.go_to(self.current_index - 1)

    # Structural actions

    def _record_structural(self) -> None:
        _push_bounded(self.undo_stack, clone_cards(self.cards), self.undo_limit)
        self.redo_stack.clear()

    def add_card(self, record_history: bool = True, announce: bool = True) -> Optional[str]:
        """Insert a blank card right after the current one."""
        self.flush()
        if record_history:
            self._record_structural()
        try:
            order = insertion_order(self.cards, self.current_index)
            if order is None:
                self.cards = database.compact_card_order(self.diary_id)
                order = insertion_order(self.cards, self.current_index)
            card_id = database.create_card(self.diary_id, NEW_CARD_TOPIC, "", order)
        except DiaryError as exc:
            logger.warning("Add card failed. diary_id=%s error=%s", self.diary_id, exc)
            self._toast("error", "Failed to add card")
            return None
        self._reload()
        if announce:
            self._toast("success", "Card added successfully")
        return card_id

    def duplicate_card(self) -> Optional[str]:
        current = self.current_card
        if current is None:
            return None
        self.flush()
        self._record_structural()
        try:
            new_card_id = database.duplicate_card(current.id)
        except DiaryError as exc:
            logger.warning("Duplicate card failed. card_id=%s error=%s", current.id, exc)
            self._toast("error", "Failed to duplicate card")
            return None
        self._reload()
        self._toast("success", "Card duplicated successfully")
        return new_card_id

    def delete_card(self) -> bool:
        current = self.current_card
        if current is None:
            return False
        self.flush()
        self._record_structural()
        try:
            database.delete_card(current.id)
        except DiaryError as exc:
            logger.warning("Delete card failed. card_id=%s error=%s", current.id, exc)
            self._toast("error", "Failed to delete card")
            return False
        if self.current_index >= len(self.cards) - 1 and self.current_index > 0:
            self.current_index -= 1
        self._local_edits.pop(current.id, None)
        self._reload()
        self._toast("success", "Card deleted successfully")
        return True

    def reorder(self, card_id: str, target_index: int) -> bool:
        self.flush()
        focused = self.current_card.id if self.current_card else None
        self._record_structural()
        try:
            self.cards = database.reorder_cards(self.diary_id, card_id, target_index, cards=self.cards)
        except DiaryError as exc:
            logger.warning("Reorder failed. diary_id=%s error=%s", self.diary_id, exc)
            self._toast("error", "Failed to reorder cards")
            return False
        if focused is not None:
            self.current_index = self._index_of(focused) or 0
        self.emit(self.snapshot_event())
        return True

    def save_card(
        self,
        card_id: str,
        topic: Optional[str] = None,
        body_text: Optional[str] = None,
        card_type: Optional[CardType] = None,
    ) -> bool:
        """Explicit save of a card's fields (leaving edit mode, type switch)."""
        index = self._index_of(card_id)
        if index is None:
            return False
        if body_text is not None:
            if text_length(body_text) > self.character_limit:
                self._toast("error", f"Please keep text under {self.character_limit} characters")
                return False
            body_text = sanitize_html(body_text)
        self.flush()
        try:
            database.update_card(card_id, topic=topic, body_text=body_text, card_type=card_type)
        except DiaryError as exc:
            logger.warning("Save card failed. card_id=%s error=%s", card_id, exc)
            self._toast("error", "Failed to update card")
            return False
        updates = {
            name: value
            for name, value in (("topic", topic), ("body_text", body_text), ("type", card_type))
            if value is not None
        }
        self.cards[index] = self.cards[index].model_copy(update=updates)
        return True

    def mark_read(self) -> Optional[int]:
        try:
            count = database.increment_card_reading_count(self.diary_id)
        except DiaryError:
            self._toast("error", "Failed to update reading count")
            return None
        if count is not None:
            self.emit({"type": "diary:read", "diaryId": self.diary_id, "cardReadingCount": count})
        return count

    # Undo / redo

    def undo(self) -> bool:
        self.flush()
        if self.text_undo_stack:
            target = self.text_undo_stack.pop()
            _push_bounded(self.text_redo_stack, clone_cards(self.cards), self.text_undo_limit)
            self._restore(target)
            return True
        if self.undo_stack:
            target = self.undo_stack.pop()
            _push_bounded(self.redo_stack, clone_cards(self.cards), self.undo_limit)
            self._restore(target)
            return True
        return False

    def redo(self) -> bool:
        self.flush()
        if self.text_redo_stack:
            target = self.text_redo_stack.pop()
            _push_bounded(self.text_undo_stack, clone_cards(self.cards), self.text_undo_limit)
            self._restore(target)
            return True
        if self.redo_stack:
            target = self.redo_stack.pop()
            _push_bounded(self.undo_stack, clone_cards(self.cards), self.undo_limit)
            self._restore(target)
            return True
        return False

    def _restore(self, target: List[Card]) -> None:
        """Make both the local list and the store match ``target``."""
        # History holds raw keystroke text; only sanitised bodies reach the store.
        target = [card.model_copy(update={"body_text": sanitize_html(card.body_text)}) for card in target]
        current_by_id = {card.id: card for card in self.cards}
        target_ids = {card.id for card in target}
        try:
            for card in self.cards:
                if card.id not in target_ids:
                    database.delete_card(card.id)
            for card in target:
                existing = current_by_id.get(card.id)
                if existing is None or _differs(existing, card):
                    database.restore_card(card)
        except DiaryError as exc:
            logger.warning("Restoring history failed. diary_id=%s error=%s", self.diary_id, exc)
            self._toast("error", "Failed to restore cards")
        self._local_edits.clear()
        self.cards = clone_cards(target)
        self._clamp_index()
        self.emit(self.snapshot_event())
