from __future__ import annotations

import unittest
from datetime import date

from lifecycle import (
    SHELF_STATUS,
    derive_status_change,
    insert_at,
    is_noop_move,
    status_for_shelf,
)
from models import Book, BookStatus

TODAY = date(2026, 3, 14)


def _book(**overrides) -> Book:
    values = {"id": "b1", "user_id": "u1", "title": "Dune", "author": "Frank Herbert"}
    values.update(overrides)
    return Book(**values)


class StatusDerivationTests(unittest.TestCase):
    def test_shelf_names_map_to_statuses(self) -> None:
        self.assertEqual(status_for_shelf("Currently Reading"), BookStatus.READING)
        self.assertEqual(status_for_shelf("Did Not Finish"), BookStatus.DNF)
        self.assertIsNone(status_for_shelf("Summer Reads"))
        self.assertEqual(len(SHELF_STATUS), 5)

    def test_reading_sets_start_date_once(self) -> None:
        started = derive_status_change(_book(), BookStatus.READING, TODAY)
        self.assertEqual(started.status, BookStatus.READING)
        self.assertEqual(started.date_started, TODAY)
        self.assertIsNone(started.date_completed)

        earlier = date(2025, 12, 1)
        resumed = derive_status_change(
            _book(status=BookStatus.DNF, date_started=earlier), BookStatus.READING, TODAY
        )
        self.assertEqual(resumed.date_started, earlier)

    def test_completed_sets_completion_date(self) -> None:
        finished = derive_status_change(_book(status=BookStatus.READING), BookStatus.COMPLETED, TODAY)
        self.assertEqual(finished.date_completed, TODAY)

    def test_leaving_completed_clears_completion_date(self) -> None:
        book = _book(status=BookStatus.COMPLETED, date_completed=date(2024, 1, 10), date_started=date(2024, 1, 1))
        moved = derive_status_change(book, BookStatus.TBR, TODAY)
        self.assertEqual(moved.status, BookStatus.TBR)
        self.assertIsNone(moved.date_completed)
        self.assertEqual(moved.date_started, date(2024, 1, 1))

    def test_same_or_missing_status_is_unchanged(self) -> None:
        book = _book(status=BookStatus.READING)
        self.assertIsNone(derive_status_change(book, BookStatus.READING, TODAY))
        self.assertIsNone(derive_status_change(book, None, TODAY))

    def test_derivation_does_not_mutate_input(self) -> None:
        book = _book()
        derive_status_change(book, BookStatus.COMPLETED, TODAY, timestamp="2026-03-14T10:00:00+00:00")
        self.assertEqual(book.status, BookStatus.TBR)
        self.assertIsNone(book.updated_at)


class RankHelperTests(unittest.TestCase):
    def test_insert_at_moves_existing_entry(self) -> None:
        self.assertEqual(insert_at(["a", "b", "c"], "a", 2), ["b", "c", "a"])
        self.assertEqual(insert_at(["a", "b", "c"], "c", 0), ["c", "a", "b"])

    def test_insert_at_clamps_to_end(self) -> None:
        self.assertEqual(insert_at(["a", "b"], "z", 99), ["a", "b", "z"])

    def test_insert_at_rejects_negative_index(self) -> None:
        with self.assertRaises(ValueError):
            insert_at(["a"], "b", -1)

    def test_noop_detection(self) -> None:
        order = ["a", "b", "c"]
        self.assertTrue(is_noop_move("s1", order, "b", "s1", 1))
        self.assertTrue(is_noop_move("s1", order, "c", "s1", 10))
        self.assertFalse(is_noop_move("s1", order, "b", "s1", 0))
        self.assertFalse(is_noop_move("s1", order, "b", "s2", 1))


if __name__ == "__main__":
    unittest.main()
