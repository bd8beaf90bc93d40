from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from config import Config
from lifecycle import DEFAULT_SHELVES, derive_status_change, status_for_shelf
from models import (
    Book,
    BookPosition,
    BookStatus,
    NotFound,
    Shelf,
    ShelfWithBooks,
    StorageError,
    Unauthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Config.DATABASE_PATH

BOOK_COLUMNS = [
    "title",
    "subtitle",
    "author",
    "publisher",
    "published_date",
    "isbn",
    "page_count",
    "language",
    "cover_url",
    "cover_thumbnail_url",
    "open_library_id",
    "status",
    "rating",
    "personal_notes",
    "date_added",
    "date_started",
    "date_completed",
]

SHELF_COLUMNS = ["name", "description", "color", "icon", "is_archived"]

_DATE_COLUMNS = {"date_added", "date_started", "date_completed"}
_NOT_NULL_BOOK_COLUMNS = {"title", "author", "language", "status", "date_added"}
_NOT_NULL_SHELF_COLUMNS = {"name", "color", "icon", "is_archived"}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_id() -> str:
    return str(uuid.uuid4())


# ------------------------------------------------------------------------------
# Row helpers shared with the move engine. They expect to run inside
# LibraryStore.transaction() and never take the store lock themselves.
# ------------------------------------------------------------------------------
def fetch_owned(
    conn: sqlite3.Connection,
    table: str,
    entity_id: str,
    user_id: str,
    label: str,
) -> sqlite3.Row:
    row = conn.execute(f"SELECT * FROM {table} WHERE id = ?;", (entity_id,)).fetchone()
    if row is None:
        raise NotFound(f"{label} not found")
    if row["user_id"] != user_id:
        raise Unauthorized(f"{label} belongs to another user")
    return row


def fetch_position(conn: sqlite3.Connection, book_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM book_positions WHERE book_id = ?;",
        (book_id,),
    ).fetchone()


def shelf_order(conn: sqlite3.Connection, shelf_id: str) -> List[str]:
    """Book ids on a shelf, rank ascending."""
    rows = conn.execute(
        "SELECT book_id FROM book_positions WHERE shelf_id = ? ORDER BY rank, created_at;",
        (shelf_id,),
    ).fetchall()
    return [row["book_id"] for row in rows]


def write_shelf_order(
    conn: sqlite3.Connection,
    shelf_id: str,
    book_ids: Sequence[str],
) -> None:
    """Place ``book_ids`` on ``shelf_id`` with dense ranks 0..n-1."""
    # Park on negative ranks first so UNIQUE(shelf_id, rank) holds at every step.
    for index, book_id in enumerate(book_ids):
        conn.execute(
            "UPDATE book_positions SET shelf_id = ?, rank = ? WHERE book_id = ?;",
            (shelf_id, -(index + 1), book_id),
        )
    for index, book_id in enumerate(book_ids):
        conn.execute(
            "UPDATE book_positions SET rank = ? WHERE book_id = ?;",
            (index, book_id),
        )


def save_book_status(conn: sqlite3.Connection, book: Book) -> None:
    conn.execute(
        """
        UPDATE books
        SET status = ?, date_started = ?, date_completed = ?, updated_at = ?
        WHERE id = ? AND user_id = ?;
        """,
        (
            book.status.value,
            _date_value(book.date_started),
            _date_value(book.date_completed),
            book.updated_at,
            book.id,
            book.user_id,
        ),
    )


def _date_value(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _clean_book_fields(values: Mapping[str, Any], *, creating: bool) -> Dict[str, Any]:
    unknown = set(values) - set(BOOK_COLUMNS)
    if unknown:
        raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")

    cleaned: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None and key in _NOT_NULL_BOOK_COLUMNS:
            raise ValidationError(f"{key} cannot be null")
        if key == "status":
            try:
                value = BookStatus(value).value
            except ValueError as exc:
                raise ValidationError(f"Invalid status: {value}") from exc
        elif key == "rating" and value is not None:
            if not isinstance(value, int) or not 1 <= value <= 5:
                raise ValidationError("rating must be an integer from 1 to 5")
        elif key == "page_count" and value is not None:
            if not isinstance(value, int) or value < 0:
                raise ValidationError("page_count must be a non-negative integer")
        elif key in _DATE_COLUMNS and value is not None:
            try:
                value = date.fromisoformat(str(value)[:10]).isoformat()
            except ValueError as exc:
                raise ValidationError(f"{key} must be an ISO date") from exc
        elif key in ("title", "author") and not (value or "").strip():
            raise ValidationError(f"{key} is required")
        cleaned[key] = value

    if creating:
        for required in ("title", "author"):
            if not (cleaned.get(required) or "").strip():
                raise ValidationError(f"{required} is required")
    return cleaned


class LibraryStore:
    """SQLite-backed store for users, books, shelves and book positions."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute("PRAGMA foreign_keys = ON;")
        self._ensure_schema()

    # --------------------------------------------------------------------- #
    # Schema
    # --------------------------------------------------------------------- #
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    token TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    subtitle TEXT,
                    author TEXT NOT NULL,
                    publisher TEXT,
                    published_date TEXT,
                    isbn TEXT,
                    page_count INTEGER,
                    language TEXT NOT NULL DEFAULT 'en',
                    cover_url TEXT,
                    cover_thumbnail_url TEXT,
                    open_library_id TEXT,
                    status TEXT NOT NULL DEFAULT 'tbr'
                        CHECK (status IN ('tbr', 'reading', 'completed', 'dnf', 'archived')),
                    rating INTEGER CHECK (rating IS NULL OR rating BETWEEN 1 AND 5),
                    personal_notes TEXT,
                    date_added TEXT NOT NULL,
                    date_started TEXT,
                    date_completed TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shelves (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    color TEXT NOT NULL DEFAULT '#8B4513',
                    icon TEXT NOT NULL DEFAULT 'book',
                    rank INTEGER NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS book_positions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    shelf_id TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    master_position INTEGER,
                    year_completed INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                    FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE,
                    FOREIGN KEY(shelf_id) REFERENCES shelves(id) ON DELETE CASCADE,
                    UNIQUE(book_id, user_id),
                    UNIQUE(shelf_id, rank)
                );
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_books_user ON books(user_id, date_added);"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_shelves_user ON shelves(user_id, rank);"
            )

    # --------------------------------------------------------------------- #
    # Utility helpers
    # --------------------------------------------------------------------- #
    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one all-or-nothing unit; sqlite failures become StorageError."""
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("BEGIN IMMEDIATE;")
                    yield self._conn
            except sqlite3.Error as exc:
                logger.error("Storage operation failed: %s", exc)
                raise StorageError("The library database could not complete the request.") from exc

    # --------------------------------------------------------------------- #
    # Users
    # --------------------------------------------------------------------- #
    def create_user(self, name: str) -> Tuple[str, str]:
        """Create an account with its default shelves. Returns (user_id, token)."""
        if not name.strip():
            raise ValidationError("name is required")
        user_id = new_id()
        token = secrets.token_urlsafe(32)
        now = utc_timestamp()
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO users (id, name, token, created_at) VALUES (?, ?, ?, ?);",
                (user_id, name.strip(), token, now),
            )
            for rank, shelf in enumerate(DEFAULT_SHELVES):
                conn.execute(
                    """
                    INSERT INTO shelves
                        (id, user_id, name, color, icon, rank, is_default, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?);
                    """,
                    (new_id(), user_id, shelf["name"], shelf["color"], shelf["icon"], rank, now, now),
                )
        logger.info("Created user %s with %d default shelves", user_id, len(DEFAULT_SHELVES))
        return user_id, token

    def get_user_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, name, created_at FROM users WHERE token = ?;",
                (token,),
            ).fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------ #
    # Shelf management
    # ------------------------------------------------------------------ #
    def list_shelves(self, user_id: str, *, include_archived: bool = True) -> List[Shelf]:
        sql = "SELECT * FROM shelves WHERE user_id = ?"
        if not include_archived:
            sql += " AND is_archived = 0"
        sql += " ORDER BY rank, created_at;"
        with self._lock:
            rows = self._conn.execute(sql, (user_id,)).fetchall()
        return [Shelf.from_dict(dict(row)) for row in rows]

    def get_shelf(self, user_id: str, shelf_id: str) -> Shelf:
        with self.transaction() as conn:
            row = fetch_owned(conn, "shelves", shelf_id, user_id, "Shelf")
        return Shelf.from_dict(dict(row))

    def create_shelf(
        self,
        user_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        color: str = "#8B4513",
        icon: str = "book",
    ) -> Shelf:
        if not name.strip():
            raise ValidationError("Shelf name is required")
        shelf_id = new_id()
        now = utc_timestamp()
        with self.transaction() as conn:
            next_rank = conn.execute(
                "SELECT COALESCE(MAX(rank), -1) + 1 FROM shelves WHERE user_id = ?;",
                (user_id,),
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO shelves
                    (id, user_id, name, description, color, icon, rank, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (shelf_id, user_id, name.strip(), description or None, color, icon, next_rank, now, now),
            )
        return self.get_shelf(user_id, shelf_id)

    def update_shelf(self, user_id: str, shelf_id: str, **changes: Any) -> Shelf:
        unknown = set(changes) - set(SHELF_COLUMNS)
        if unknown:
            raise ValidationError(f"Unknown shelf fields: {', '.join(sorted(unknown))}")
        nulls = sorted(
            column for column, value in changes.items() if value is None and column in _NOT_NULL_SHELF_COLUMNS
        )
        if nulls:
            raise ValidationError(f"{', '.join(nulls)} cannot be null")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Shelf name is required")
        with self.transaction() as conn:
            fetch_owned(conn, "shelves", shelf_id, user_id, "Shelf")
            if changes:
                assignments = [f"{column} = ?" for column in changes]
                values: List[Any] = [
                    int(value) if column == "is_archived" else value
                    for column, value in changes.items()
                ]
                assignments.append("updated_at = ?")
                values.extend([utc_timestamp(), shelf_id])
                conn.execute(
                    f"UPDATE shelves SET {', '.join(assignments)} WHERE id = ?;",
                    values,
                )
        return self.get_shelf(user_id, shelf_id)

    def delete_shelf(self, user_id: str, shelf_id: str) -> None:
        """Delete a shelf; its positions go with it and the remaining shelves close ranks."""
        with self.transaction() as conn:
            fetch_owned(conn, "shelves", shelf_id, user_id, "Shelf")
            conn.execute("DELETE FROM shelves WHERE id = ?;", (shelf_id,))
            remaining = conn.execute(
                "SELECT id FROM shelves WHERE user_id = ? ORDER BY rank, created_at;",
                (user_id,),
            ).fetchall()
            for rank, row in enumerate(remaining):
                conn.execute("UPDATE shelves SET rank = ? WHERE id = ?;", (rank, row["id"]))

    def reorder_shelves(self, user_id: str, shelf_ids: Sequence[str]) -> List[Shelf]:
        with self.transaction() as conn:
            owned = {
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM shelves WHERE user_id = ?;", (user_id,)
                ).fetchall()
            }
            if len(set(shelf_ids)) != len(shelf_ids) or set(shelf_ids) != owned:
                foreign = [shelf_id for shelf_id in shelf_ids if shelf_id not in owned]
                for shelf_id in foreign:
                    # Surface cross-tenant ids as Unauthorized rather than a shape error.
                    fetch_owned(conn, "shelves", shelf_id, user_id, "Shelf")
                raise ValidationError("shelf_ids must list each of your shelves exactly once")
            now = utc_timestamp()
            for rank, shelf_id in enumerate(shelf_ids):
                conn.execute(
                    "UPDATE shelves SET rank = ?, updated_at = ? WHERE id = ?;",
                    (rank, now, shelf_id),
                )
        return self.list_shelves(user_id)

    def list_board(self, user_id: str, *, include_archived: bool = False) -> List[ShelfWithBooks]:
        """Return every shelf (rank ascending) with its positions and books (rank ascending)."""
        board = []
        with self._lock:
            sql = "SELECT * FROM shelves WHERE user_id = ?"
            if not include_archived:
                sql += " AND is_archived = 0"
            shelf_rows = self._conn.execute(sql + " ORDER BY rank, created_at;", (user_id,)).fetchall()
            for shelf in shelf_rows:
                rows = self._conn.execute(
                    """
                    SELECT
                        p.id AS position_id,
                        p.rank AS position_rank,
                        p.master_position,
                        p.year_completed,
                        p.created_at AS position_created_at,
                        p.updated_at AS position_updated_at,
                        b.*
                    FROM book_positions p
                    JOIN books b ON b.id = p.book_id
                    WHERE p.shelf_id = ?
                    ORDER BY p.rank;
                    """,
                    (shelf["id"],),
                ).fetchall()
                entries = []
                for row in rows:
                    data = dict(row)
                    position = BookPosition(
                        id=data["position_id"],
                        user_id=user_id,
                        book_id=data["id"],
                        shelf_id=shelf["id"],
                        rank=data["position_rank"],
                        master_position=data["master_position"],
                        year_completed=data["year_completed"],
                        created_at=data["position_created_at"],
                        updated_at=data["position_updated_at"],
                    )
                    entries.append((position, Book.from_dict(data)))
                board.append(ShelfWithBooks(shelf=Shelf.from_dict(dict(shelf)), entries=tuple(entries)))
        return board

    # --------------------------------------------------------------------- #
    # Book management
    # --------------------------------------------------------------------- #
    def add_book(
        self,
        user_id: str,
        values: Mapping[str, Any],
        *,
        shelf_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Tuple[Book, Optional[BookPosition]]:
        """Insert a book and, when ``shelf_id`` is given, append it to that shelf."""
        cleaned = _clean_book_fields(values, creating=True)
        today = today or date.today()
        now = utc_timestamp()
        book_id = new_id()
        cleaned.setdefault("status", BookStatus.TBR.value)
        cleaned.setdefault("language", "en")
        cleaned.setdefault("date_added", today.isoformat())

        with self.transaction() as conn:
            shelf_row = fetch_owned(conn, "shelves", shelf_id, user_id, "Shelf") if shelf_id else None

            book = Book.from_dict({**cleaned, "id": book_id, "user_id": user_id, "created_at": now, "updated_at": now})
            if shelf_row is not None:
                derived = derive_status_change(book, status_for_shelf(shelf_row["name"]), today)
                book = derived or book

            row = {**cleaned, **book.to_dict()}
            columns = ["id", "user_id", *BOOK_COLUMNS, "created_at", "updated_at"]
            conn.execute(
                f"INSERT INTO books ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)});",
                [row.get(column) for column in columns],
            )

            position = None
            if shelf_row is not None:
                rank = conn.execute(
                    "SELECT COUNT(*) FROM book_positions WHERE shelf_id = ?;",
                    (shelf_id,),
                ).fetchone()[0]
                position = BookPosition(
                    id=new_id(),
                    user_id=user_id,
                    book_id=book_id,
                    shelf_id=shelf_row["id"],
                    rank=rank,
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO book_positions
                        (id, user_id, book_id, shelf_id, rank, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (position.id, user_id, book_id, position.shelf_id, rank, now, now),
                )
        logger.info("Added book %s for user %s (shelf=%s)", book_id, user_id, shelf_id)
        return book, position

    def get_book(self, user_id: str, book_id: str) -> Book:
        with self.transaction() as conn:
            row = fetch_owned(conn, "books", book_id, user_id, "Book")
        return Book.from_dict(dict(row))

    def list_books(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        shelf_id: Optional[str] = None,
    ) -> List[Book]:
        sql = "SELECT b.* FROM books b"
        params: List[Any] = []
        if shelf_id:
            sql += " JOIN book_positions p ON p.book_id = b.id AND p.shelf_id = ?"
            params.append(shelf_id)
        sql += " WHERE b.user_id = ?"
        params.append(user_id)
        if status:
            sql += " AND b.status = ?"
            params.append(status)
        sql += " ORDER BY b.date_added DESC, b.created_at DESC;"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def update_book(self, user_id: str, book_id: str, values: Mapping[str, Any]) -> Book:
        cleaned = _clean_book_fields(values, creating=False)
        with self.transaction() as conn:
            fetch_owned(conn, "books", book_id, user_id, "Book")
            if cleaned:
                assignments = [f"{column} = ?" for column in cleaned]
                params = list(cleaned.values())
                assignments.append("updated_at = ?")
                params.extend([utc_timestamp(), book_id])
                conn.execute(
                    f"UPDATE books SET {', '.join(assignments)} WHERE id = ?;",
                    params,
                )
        return self.get_book(user_id, book_id)

    def delete_book(self, user_id: str, book_id: str) -> None:
        """Delete a book and close the gap it leaves on its shelf."""
        with self.transaction() as conn:
            fetch_owned(conn, "books", book_id, user_id, "Book")
            position = fetch_position(conn, book_id)
            conn.execute("DELETE FROM books WHERE id = ?;", (book_id,))
            if position is not None:
                write_shelf_order(conn, position["shelf_id"], shelf_order(conn, position["shelf_id"]))

    # ------------------------------------------------------------------ #
    # Positions
    # ------------------------------------------------------------------ #
    def get_position(self, user_id: str, book_id: str) -> BookPosition:
        with self.transaction() as conn:
            fetch_owned(conn, "books", book_id, user_id, "Book")
            row = fetch_position(conn, book_id)
        if row is None:
            raise NotFound("Book is not on a shelf")
        return BookPosition.from_dict(dict(row))


# ------------------------------------------------------------------------------
# Convenience factory
# ------------------------------------------------------------------------------
def get_store(db_path: Optional[Path] = None) -> LibraryStore:
    return LibraryStore(db_path=db_path)
