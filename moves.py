"""Atomic book moves between shelves and positions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Optional

from inventory import (
    LibraryStore,
    fetch_owned,
    fetch_position,
    save_book_status,
    shelf_order,
    utc_timestamp,
    write_shelf_order,
)
from lifecycle import derive_status_change, insert_at, is_noop_move, status_for_shelf
from models import Book, BookPosition, NotFound, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveRequest:
    book_id: str
    to_shelf_id: str
    position: int
    # Informational only; the stored position is authoritative.
    from_shelf_id: Optional[str] = None


@dataclass(frozen=True)
class MoveResult:
    position: BookPosition
    book: Optional[Book] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "book": self.book.to_dict() if self.book else None,
        }


class MoveEngine:
    """Places a book at an index on a shelf and derives its status and dates.

    The position rows of both affected shelves and the book row are written in a
    single store transaction, so a failure leaves the previous state intact.
    Ranks on every touched shelf are renumbered densely (0..n-1), and the target
    index is clamped to the end of the destination shelf.
    """

    def __init__(self, store: LibraryStore, clock: Callable[[], date] = date.today):
        self.store = store
        self.clock = clock

    def move(self, user_id: str, request: MoveRequest) -> MoveResult:
        if request.position < 0:
            raise ValidationError("position must be zero or greater")

        today = self.clock()
        with self.store.transaction() as conn:
            book = Book.from_dict(dict(fetch_owned(conn, "books", request.book_id, user_id, "Book")))
            shelf = fetch_owned(conn, "shelves", request.to_shelf_id, user_id, "Shelf")
            current = fetch_position(conn, request.book_id)
            if current is None:
                raise NotFound("Book is not on a shelf")

            if request.from_shelf_id and request.from_shelf_id != current["shelf_id"]:
                logger.debug(
                    "Move for book %s claimed shelf %s but it is on %s",
                    book.id,
                    request.from_shelf_id,
                    current["shelf_id"],
                )

            source_order = shelf_order(conn, current["shelf_id"])
            if is_noop_move(current["shelf_id"], source_order, book.id, shelf["id"], request.position):
                return MoveResult(position=BookPosition.from_dict(dict(current)))

            now = utc_timestamp()
            if current["shelf_id"] == shelf["id"]:
                write_shelf_order(conn, shelf["id"], insert_at(source_order, book.id, request.position))
            else:
                target_order = insert_at(shelf_order(conn, shelf["id"]), book.id, request.position)
                write_shelf_order(conn, shelf["id"], target_order)
                write_shelf_order(conn, current["shelf_id"], [b for b in source_order if b != book.id])
            conn.execute(
                "UPDATE book_positions SET updated_at = ? WHERE book_id = ?;",
                (now, book.id),
            )

            updated = derive_status_change(book, status_for_shelf(shelf["name"]), today, timestamp=now)
            if updated is not None:
                save_book_status(conn, updated)

            position = BookPosition.from_dict(dict(fetch_position(conn, book.id)))

        logger.info(
            "Moved book %s to shelf %s at rank %d%s",
            book.id,
            position.shelf_id,
            position.rank,
            f" (status {book.status.value} -> {updated.status.value})" if updated else "",
        )
        return MoveResult(position=position, book=updated)
