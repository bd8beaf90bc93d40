"""Rules shared by the server-side move engine and the optimistic client cache.

Both sides must predict the same outcome for a move, so the shelf -> status table,
the date derivation and the rank arithmetic all live here as pure functions.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional, Sequence, TypeVar

from models import Book, BookStatus

SHELF_STATUS: Dict[str, BookStatus] = {
    "Currently Reading": BookStatus.READING,
    "To Be Read": BookStatus.TBR,
    "Completed": BookStatus.COMPLETED,
    "Did Not Finish": BookStatus.DNF,
    "Archived": BookStatus.ARCHIVED,
}

# Seeded for every new account, in display order.
DEFAULT_SHELVES = [
    {"name": "To Be Read", "color": "#8B4513", "icon": "book"},
    {"name": "Currently Reading", "color": "#059669", "icon": "book-open"},
    {"name": "Completed", "color": "#6B7280", "icon": "check"},
    {"name": "Did Not Finish", "color": "#EF4444", "icon": "x"},
]

T = TypeVar("T")


def status_for_shelf(shelf_name: str) -> Optional[BookStatus]:
    """Return the status implied by a shelf name, or None for custom shelves."""
    return SHELF_STATUS.get(shelf_name)


def derive_status_change(
    book: Book,
    new_status: Optional[BookStatus],
    today: date,
    *,
    timestamp: Optional[str] = None,
) -> Optional[Book]:
    """Apply the status/date rules; returns the changed copy or None if unchanged."""
    if new_status is None or new_status == book.status:
        return None

    changes: Dict[str, object] = {"status": new_status}
    if timestamp is not None:
        changes["updated_at"] = timestamp
    if new_status == BookStatus.READING and book.date_started is None:
        changes["date_started"] = today
    if new_status == BookStatus.COMPLETED:
        changes["date_completed"] = today
    elif book.status == BookStatus.COMPLETED:
        changes["date_completed"] = None
    return replace(book, **changes)


def clamp_index(index: int, length: int) -> int:
    if index < 0:
        raise ValueError("position must be zero or greater")
    return min(index, length)


def insert_at(sequence: Sequence[T], item: T, index: int) -> List[T]:
    """Return a copy of ``sequence`` with ``item`` removed and re-inserted at ``index``."""
    ordered = [entry for entry in sequence if entry != item]
    ordered.insert(clamp_index(index, len(ordered)), item)
    return ordered


def is_noop_move(
    current_shelf_id: str,
    current_order: Sequence[str],
    book_id: str,
    target_shelf_id: str,
    index: int,
) -> bool:
    """True when the book already sits at ``index`` on ``target_shelf_id``."""
    if current_shelf_id != target_shelf_id:
        return False
    remaining = [entry for entry in current_order if entry != book_id]
    return list(current_order).index(book_id) == clamp_index(index, len(remaining))
