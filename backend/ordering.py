"""Fractional card ordering.

Cards carry a float ``order``. Inserting a card takes the midpoint between its
neighbours, so no sibling is rewritten. Only explicit drag-and-drop reorders
(and compaction, when a gap has been halved below float precision) renumber
the whole diary with sequential integers.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from .models import Card


def midpoint(lower: float, upper: float) -> Optional[float]:
    """Return a value strictly between ``lower`` and ``upper``, or None when
    floating point has run out of room between them."""
    value = (lower + upper) / 2
    if lower < value < upper:
        return value
    return None


def insertion_order(cards: Sequence[Card], index: int) -> Optional[float]:
    """Order for a new card placed right after ``cards[index]``.

    ``cards`` must already be sorted ascending by order. An empty diary starts
    at 0; after the last card the gap is taken to be 1.
    """
    if not cards:
        return 0
    index = max(0, min(index, len(cards) - 1))
    current_order = cards[index].order
    if index + 1 < len(cards):
        next_order = cards[index + 1].order
    else:
        next_order = current_order + 1
    return midpoint(current_order, next_order)


def next_sibling_order(sibling_orders: Sequence[float], order: float) -> float:
    for sibling_order in sorted(sibling_orders):
        if sibling_order > order:
            return sibling_order
    return order + 1


def append_order(cards: Sequence[Card]) -> float:
    if not cards:
        return 0
    return max(card.order for card in cards) + 1


def move_card(cards: Sequence[Card], card_id: str, target_index: int) -> List[Card]:
    """Splice ``card_id`` out of ``cards`` and back in at ``target_index``."""
    reordered = list(cards)
    source_index = next((i for i, card in enumerate(reordered) if card.id == card_id), None)
    if source_index is None:
        raise ValueError(f"Card {card_id} is not in this diary")
    dragged = reordered.pop(source_index)
    target_index = max(0, min(target_index, len(reordered)))
    reordered.insert(target_index, dragged)
    return reordered


def sequential_orders(cards: Sequence[Card]) -> List[Tuple[Card, int]]:
    return [(card, index + 1) for index, card in enumerate(cards)]
