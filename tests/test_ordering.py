"""Tests for fractional card ordering helpers."""

import pytest

from backend.models import Card
from backend.ordering import (
    append_order,
    insertion_order,
    midpoint,
    move_card,
    next_sibling_order,
    sequential_orders,
)


def _cards(*orders):
    return [Card(id=f"card-{i}", diary_id="d1", order=order) for i, order in enumerate(orders)]


class TestMidpoint:
    def test_strictly_between(self):
        for lower, upper in [(0, 1), (5, 7), (1.5, 1.75), (-3, 10)]:
            value = midpoint(lower, upper)
            assert lower < value < upper

    def test_collapsed_gap_returns_none(self):
        lower = 1.0
        upper = 1.0 + 2.220446049250313e-16
        assert midpoint(lower, upper) is None

    def test_equal_bounds_return_none(self):
        assert midpoint(3, 3) is None


class TestInsertionOrder:
    def test_empty_list_starts_at_zero(self):
        assert insertion_order([], 0) == 0

    def test_between_current_and_next(self):
        assert insertion_order(_cards(5, 7), 0) == 6

    def test_after_last_card(self):
        assert insertion_order(_cards(1, 5), 1) == 5.5

    def test_index_is_clamped(self):
        assert insertion_order(_cards(1, 2), 10) == 2.5

    def test_repeated_insertion_keeps_strict_order(self):
        cards = _cards(1, 2)
        for _ in range(30):
            order = insertion_order(cards, 0)
            assert cards[0].order < order < cards[1].order
            cards.insert(1, Card(id=f"new-{order}", diary_id="d1", order=order))


class TestSiblings:
    def test_next_sibling_is_first_greater(self):
        assert next_sibling_order([7, 5, 9], 5) == 7

    def test_no_greater_sibling_uses_gap_of_one(self):
        assert next_sibling_order([1, 3, 5], 5) == 6

    def test_append_order(self):
        assert append_order([]) == 0
        assert append_order(_cards(1, 4, 2)) == 5


class TestMoveCard:
    def test_drag_last_to_front(self):
        cards = [Card(id=name, diary_id="d1", order=i + 1) for i, name in enumerate("ABC")]
        moved = move_card(cards, "C", 0)
        assert [card.id for card in moved] == ["C", "A", "B"]
        assert [(card.id, order) for card, order in sequential_orders(moved)] == [("C", 1), ("A", 2), ("B", 3)]

    def test_target_is_clamped(self):
        cards = _cards(1, 2, 3)
        assert [card.id for card in move_card(cards, "card-0", 99)] == ["card-1", "card-2", "card-0"]

    def test_unknown_card(self):
        with pytest.raises(ValueError):
            move_card(_cards(1), "missing", 0)
