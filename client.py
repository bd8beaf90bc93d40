"""Optimistic client-side mirror of a user's board.

``BoardCache`` applies every change locally before the server confirms it and
then either adopts the server's authoritative values or restores the exact
entities it overwrote. It is meant to be driven from a single thread (UI event
handlers); each call completes its local prediction before the network call
starts.

Known limitation: when two in-flight operations touch the same entity, the
later write wins, and rolling back the earlier one restores the value it saw.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import requests

from config import Config
from lifecycle import derive_status_change, insert_at, is_noop_move, status_for_shelf
from models import (
    Book,
    BookPosition,
    BookStatus,
    LibraryError,
    NotFound,
    Shelf,
    error_from_payload,
)

logger = logging.getLogger(__name__)

Entity = Union[Book, Shelf, BookPosition]
Notifier = Callable[[str, str], None]


class ClientError(LibraryError):
    """The request never produced a usable server response."""

    kind = "ClientError"


# --------------------------------------------------------------------------- #
# Transport
# --------------------------------------------------------------------------- #
class HttpTransport:
    """Talks to the shelfboard HTTP API with a bearer token."""

    def __init__(
        self,
        base_url: str = Config.API_URL,
        token: str = Config.API_TOKEN,
        *,
        session: Optional[Any] = None,
        timeout: float = Config.CLIENT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        self._owns_session = session is None

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = self._session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ClientError(f"Unable to reach the server: {exc}") from exc

        if response.status_code == 204:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise ClientError(f"Unexpected response ({response.status_code})") from exc
        if response.status_code >= 400:
            raise error_from_payload(body if isinstance(body, dict) else {}, response.status_code)
        return body

    def create_user(self, name: str) -> Dict[str, Any]:
        body = self._request("POST", "/api/users", json={"name": name})
        self.token = body["token"]
        return body

    def load_board(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/shelves", params={"include_archived": "true"})

    def list_books(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/books")

    def move_book(self, book_id: str, from_shelf_id: str, to_shelf_id: str, position: int) -> Dict[str, Any]:
        payload = {
            "bookId": book_id,
            "fromShelfId": from_shelf_id,
            "toShelfId": to_shelf_id,
            "position": position,
        }
        return self._request("POST", "/api/books/move", json=payload)

    def add_book(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/books", json=dict(values))

    def update_book(self, book_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/api/books/{book_id}", json=dict(changes))

    def delete_book(self, book_id: str) -> None:
        self._request("DELETE", f"/api/books/{book_id}")

    def create_shelf(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/shelves", json=dict(values))

    def update_shelf(self, shelf_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/api/shelves/{shelf_id}", json=dict(changes))

    def delete_shelf(self, shelf_id: str) -> None:
        self._request("DELETE", f"/api/shelves/{shelf_id}")

    def reorder_shelves(self, shelf_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self._request("POST", "/api/shelves/reorder", json={"shelf_ids": list(shelf_ids)})

    def search(self, text: str, max_results: int = 10) -> List[Dict[str, Any]]:
        body = self._request("GET", "/api/search", params={"q": text, "max_results": max_results})
        return body.get("results", [])


# --------------------------------------------------------------------------- #
# State
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class BoardState:
    """Immutable snapshot of the board; replaced wholesale on every change.

    Positions are keyed by book id since a book sits on at most one shelf.
    """

    books: Dict[str, Book] = field(default_factory=dict)
    shelves: Dict[str, Shelf] = field(default_factory=dict)
    positions: Dict[str, BookPosition] = field(default_factory=dict)


_COLLECTIONS = {"book": "books", "shelf": "shelves", "position": "positions"}


def _get(state: BoardState, kind: str, key: str) -> Optional[Entity]:
    return getattr(state, _COLLECTIONS[kind]).get(key)


def _put(state: BoardState, kind: str, key: str, value: Optional[Entity]) -> BoardState:
    name = _COLLECTIONS[kind]
    collection = dict(getattr(state, name))
    if value is None:
        collection.pop(key, None)
    else:
        collection[key] = value
    return replace(state, **{name: collection})


class Snapshot:
    """Prior values of the entities one operation overwrote."""

    def __init__(self) -> None:
        self._saved: Dict[Tuple[str, str], Optional[Entity]] = {}

    def remember(self, state: BoardState, kind: str, key: str) -> None:
        if (kind, key) not in self._saved:
            self._saved[(kind, key)] = _get(state, kind, key)

    def restore(self, state: BoardState) -> BoardState:
        for (kind, key), value in self._saved.items():
            state = _put(state, kind, key, value)
        return state

    def __len__(self) -> int:
        return len(self._saved)


def _jsonable(values: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, BookStatus):
            value = value.value
        result[key] = value
    return result


def _log_notification(level: str, message: str) -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


# --------------------------------------------------------------------------- #
# Cache
# --------------------------------------------------------------------------- #
class BoardCache:
    """Session-scoped mirror of the server's books, shelves and positions."""

    def __init__(
        self,
        transport: Any,
        *,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], date] = date.today,
        user_id: str = "",
    ):
        self.transport = transport
        self.notify: Notifier = notifier or _log_notification
        self.clock = clock
        self.user_id = user_id
        self.state = BoardState()
        self.error: Optional[str] = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def load(self) -> bool:
        """Hydrate from the server, replacing whatever the cache held."""
        try:
            board = self.transport.load_board()
            book_rows = self.transport.list_books()
            books = {row["id"]: Book.from_dict(row) for row in book_rows}
            shelves: Dict[str, Shelf] = {}
            positions: Dict[str, BookPosition] = {}
            for entry in board:
                shelf = Shelf.from_dict(entry)
                shelves[shelf.id] = shelf
                for row in entry.get("book_positions", []):
                    position = BookPosition.from_dict(row)
                    positions[position.book_id] = position
                    if row.get("book"):
                        books.setdefault(position.book_id, Book.from_dict(row["book"]))
            state = BoardState(books=books, shelves=shelves, positions=positions)
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            self.error = str(exc)
            logger.error("Error loading board: %s", exc)
            self.notify("error", "Failed to load your books. Please refresh.")
            return False

        self.state = state
        self.error = None
        if not self.user_id and shelves:
            self.user_id = next(iter(shelves.values())).user_id
        return True

    def close(self) -> None:
        """Tear down at sign-out."""
        self.state = BoardState()
        self.error = None
        self.transport.close()

    def clear_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _write(self, snapshot: Optional[Snapshot], kind: str, key: str, value: Optional[Entity]) -> None:
        if snapshot is not None:
            snapshot.remember(self.state, kind, key)
        self.state = _put(self.state, kind, key, value)

    def _rollback(self, snapshot: Snapshot, exc: Exception, message: str) -> bool:
        self.state = snapshot.restore(self.state)
        self.error = str(exc) or message
        logger.warning("%s; restored %d entities: %s", message, len(snapshot), exc)
        self.notify("error", f"{message}. Please try again.")
        return False

    def _order(self, shelf_id: str) -> List[str]:
        on_shelf = [p for p in self.state.positions.values() if p.shelf_id == shelf_id]
        return [p.book_id for p in sorted(on_shelf, key=lambda p: p.rank)]

    def _renumber(self, snapshot: Optional[Snapshot], shelf_id: str, book_ids: Sequence[str]) -> None:
        for rank, book_id in enumerate(book_ids):
            current = self.state.positions[book_id]
            updated = replace(current, shelf_id=shelf_id, rank=rank)
            if updated != current:
                self._write(snapshot, "position", book_id, updated)

    def _refresh_shelves(self, shelf_ids: Set[str]) -> None:
        """Replace the cached positions of ``shelf_ids`` with the server's."""
        try:
            board = self.transport.load_board()
            fresh = [entry for entry in board if entry["id"] in shelf_ids]
            rows = [
                (BookPosition.from_dict(row), Book.from_dict(row["book"]) if row.get("book") else None)
                for entry in fresh
                for row in entry.get("book_positions", [])
            ]
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            self.error = str(exc)
            logger.warning("Could not refresh shelves %s: %s", sorted(shelf_ids), exc)
            return

        for entry in fresh:
            for book_id in self._order(entry["id"]):
                self._write(None, "position", book_id, None)
        for position, book in rows:
            self._write(None, "position", position.book_id, position)
            if book is not None:
                self._write(None, "book", book.id, book)

    # ------------------------------------------------------------------ #
    # Book actions
    # ------------------------------------------------------------------ #
    def move_book(self, book_id: str, to_shelf_id: str, position: int) -> bool:
        book = self.state.books.get(book_id)
        current = self.state.positions.get(book_id)
        shelf = self.state.shelves.get(to_shelf_id)
        if book is None or current is None or shelf is None or position < 0:
            self.error = "Book or shelf is not on the board"
            self.notify("error", "Failed to move book. Please try again.")
            return False

        from_shelf_id = current.shelf_id
        snapshot = Snapshot()
        source = self._order(from_shelf_id)
        if not is_noop_move(from_shelf_id, source, book_id, to_shelf_id, position):
            if from_shelf_id == to_shelf_id:
                self._renumber(snapshot, to_shelf_id, insert_at(source, book_id, position))
            else:
                self._renumber(snapshot, to_shelf_id, insert_at(self._order(to_shelf_id), book_id, position))
                self._renumber(snapshot, from_shelf_id, [b for b in source if b != book_id])
            predicted = derive_status_change(book, status_for_shelf(shelf.name), self.clock())
            if predicted is not None:
                self._write(snapshot, "book", book_id, predicted)

        try:
            response = self.transport.move_book(book_id, from_shelf_id, to_shelf_id, position)
            confirmed = BookPosition.from_dict(response["position"])
            confirmed_book = Book.from_dict(response["book"]) if response.get("book") else None
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            return self._rollback(snapshot, exc, "Failed to move book")

        predicted_position = self.state.positions.get(book_id)
        self._write(None, "position", book_id, confirmed)
        if confirmed_book is not None:
            self._write(None, "book", book_id, confirmed_book)
        if predicted_position is None or (predicted_position.shelf_id, predicted_position.rank) != (
            confirmed.shelf_id,
            confirmed.rank,
        ):
            # The server saw a different shelf order; sibling ranks are stale.
            self._refresh_shelves({from_shelf_id, to_shelf_id, confirmed.shelf_id})
        self.notify("success", "Book moved successfully!")
        return True

    def add_book(self, values: Mapping[str, Any], shelf_id: Optional[str] = None) -> Optional[Book]:
        """Add a book (optionally to the end of a shelf); returns the saved book."""
        temp_id = f"temp-{uuid.uuid4()}"
        today = self.clock()
        snapshot = Snapshot()
        try:
            temp_book = Book.from_dict(
                {
                    "status": BookStatus.TBR,
                    "date_added": today,
                    **_jsonable(values),
                    "id": temp_id,
                    "user_id": self.user_id,
                }
            )
        except (TypeError, ValueError) as exc:
            self.error = str(exc)
            self.notify("error", "Failed to add book. Please try again.")
            return None

        shelf = self.state.shelves.get(shelf_id) if shelf_id else None
        if shelf is not None:
            temp_book = derive_status_change(temp_book, status_for_shelf(shelf.name), today) or temp_book
            self._write(
                snapshot,
                "position",
                temp_id,
                BookPosition(
                    id=f"temp-{uuid.uuid4()}",
                    user_id=self.user_id,
                    book_id=temp_id,
                    shelf_id=shelf.id,
                    rank=len(self._order(shelf.id)),
                ),
            )
        self._write(snapshot, "book", temp_id, temp_book)

        payload = _jsonable(values)
        if shelf_id:
            payload["shelf_id"] = shelf_id
        try:
            response = self.transport.add_book(payload)
            saved = Book.from_dict(response["book"])
            position = BookPosition.from_dict(response["position"]) if response.get("position") else None
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            self._rollback(snapshot, exc, "Failed to add book")
            return None

        self._write(None, "book", temp_id, None)
        self._write(None, "position", temp_id, None)
        self._write(None, "book", saved.id, saved)
        if position is not None:
            self._write(None, "position", saved.id, position)
        self.notify("success", f'Added "{saved.title}" to your library!')
        return saved

    def update_book(self, book_id: str, **changes: Any) -> bool:
        book = self.state.books.get(book_id)
        if book is None:
            return self._rollback(Snapshot(), NotFound("Book not found"), "Failed to update book")

        payload = _jsonable(changes)
        snapshot = Snapshot()
        try:
            predicted = Book.from_dict({**book.to_dict(), **payload})
        except (TypeError, ValueError) as exc:
            return self._rollback(snapshot, exc, "Failed to update book")
        self._write(snapshot, "book", book_id, predicted)

        try:
            saved = Book.from_dict(self.transport.update_book(book_id, payload))
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            return self._rollback(snapshot, exc, "Failed to update book")

        self._write(None, "book", book_id, saved)
        self.notify("success", "Book updated successfully!")
        return True

    def delete_book(self, book_id: str) -> bool:
        snapshot = Snapshot()
        current = self.state.positions.get(book_id)
        self._write(snapshot, "book", book_id, None)
        self._write(snapshot, "position", book_id, None)
        if current is not None:
            self._renumber(snapshot, current.shelf_id, self._order(current.shelf_id))

        try:
            self.transport.delete_book(book_id)
        except LibraryError as exc:
            return self._rollback(snapshot, exc, "Failed to delete book")

        self.notify("success", "Book deleted successfully!")
        return True

    # ------------------------------------------------------------------ #
    # Shelf actions
    # ------------------------------------------------------------------ #
    def create_shelf(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        color: str = "#8B4513",
        icon: str = "book",
    ) -> Optional[Shelf]:
        temp_id = f"temp-{uuid.uuid4()}"
        next_rank = max((s.rank for s in self.state.shelves.values()), default=-1) + 1
        snapshot = Snapshot()
        self._write(
            snapshot,
            "shelf",
            temp_id,
            Shelf(
                id=temp_id,
                user_id=self.user_id,
                name=name,
                rank=next_rank,
                description=description,
                color=color,
                icon=icon,
            ),
        )

        values: Dict[str, Any] = {"name": name, "color": color, "icon": icon}
        if description is not None:
            values["description"] = description
        try:
            saved = Shelf.from_dict(self.transport.create_shelf(values))
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            self._rollback(snapshot, exc, "Failed to create shelf")
            return None

        self._write(None, "shelf", temp_id, None)
        self._write(None, "shelf", saved.id, saved)
        self.notify("success", f'Created shelf "{name}"!')
        return saved

    def update_shelf(self, shelf_id: str, **changes: Any) -> bool:
        shelf = self.state.shelves.get(shelf_id)
        if shelf is None:
            return self._rollback(Snapshot(), NotFound("Shelf not found"), "Failed to update shelf")

        snapshot = Snapshot()
        try:
            self._write(snapshot, "shelf", shelf_id, replace(shelf, **changes))
        except TypeError as exc:
            return self._rollback(snapshot, exc, "Failed to update shelf")

        try:
            saved = Shelf.from_dict(self.transport.update_shelf(shelf_id, changes))
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            return self._rollback(snapshot, exc, "Failed to update shelf")

        self._write(None, "shelf", shelf_id, saved)
        self.notify("success", "Shelf updated successfully!")
        return True

    def delete_shelf(self, shelf_id: str) -> bool:
        snapshot = Snapshot()
        for book_id in self._order(shelf_id):
            self._write(snapshot, "position", book_id, None)
        self._write(snapshot, "shelf", shelf_id, None)
        for rank, shelf in enumerate(self.ordered_shelves(include_archived=True)):
            if shelf.rank != rank:
                self._write(snapshot, "shelf", shelf.id, replace(shelf, rank=rank))

        try:
            self.transport.delete_shelf(shelf_id)
        except LibraryError as exc:
            return self._rollback(snapshot, exc, "Failed to delete shelf")

        self.notify("success", "Shelf deleted successfully!")
        return True

    def reorder_shelves(self, shelf_ids: Sequence[str]) -> bool:
        snapshot = Snapshot()
        for rank, shelf_id in enumerate(shelf_ids):
            shelf = self.state.shelves.get(shelf_id)
            if shelf is not None and shelf.rank != rank:
                self._write(snapshot, "shelf", shelf_id, replace(shelf, rank=rank))

        try:
            saved = [Shelf.from_dict(row) for row in self.transport.reorder_shelves(list(shelf_ids))]
        except (LibraryError, KeyError, TypeError, ValueError) as exc:
            return self._rollback(snapshot, exc, "Failed to reorder shelves")

        for shelf in saved:
            self._write(None, "shelf", shelf.id, shelf)
        self.notify("success", "Shelves reordered successfully!")
        return True

    # ------------------------------------------------------------------ #
    # Getters
    # ------------------------------------------------------------------ #
    def books_on_shelf(self, shelf_id: str) -> List[Book]:
        return [self.state.books[b] for b in self._order(shelf_id) if b in self.state.books]

    def ordered_shelves(self, *, include_archived: bool = False) -> List[Shelf]:
        shelves = [s for s in self.state.shelves.values() if include_archived or not s.is_archived]
        return sorted(shelves, key=lambda s: (s.rank, s.created_at or ""))

    def book_stats(self) -> Dict[str, int]:
        books = list(self.state.books.values())
        return {
            "total": len(books),
            "tbr": sum(1 for b in books if b.status == BookStatus.TBR),
            "reading": sum(1 for b in books if b.status == BookStatus.READING),
            "completed": sum(1 for b in books if b.status == BookStatus.COMPLETED),
        }

    def tbr_shelf(self) -> Optional[Shelf]:
        return next(
            (s for s in self.ordered_shelves() if s.name == "To Be Read" and s.is_default),
            None,
        )
