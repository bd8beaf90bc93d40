from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class BookStatus(str, Enum):
    TBR = "tbr"
    READING = "reading"
    COMPLETED = "completed"
    DNF = "dnf"
    ARCHIVED = "archived"


# --------------------------------------------------------------------------- #
# Errors
# --------------------------------------------------------------------------- #
class LibraryError(Exception):
    """Base class for failures surfaced to callers of the library operations."""

    kind = "LibraryError"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "detail": self.message}


class Unauthorized(LibraryError):
    """The caller does not own the referenced entity."""

    kind = "Unauthorized"
    status_code = 403


class NotFound(LibraryError):
    kind = "NotFound"
    status_code = 404


class ValidationError(LibraryError):
    kind = "ValidationError"
    status_code = 400


class StorageError(LibraryError):
    """The backing store failed; the operation was rolled back."""

    kind = "StorageError"
    status_code = 500


ERROR_KINDS = {
    cls.kind: cls for cls in (Unauthorized, NotFound, ValidationError, StorageError)
}


def error_from_payload(payload: Mapping[str, Any], status_code: int) -> LibraryError:
    """Rebuild a LibraryError from a structured error response body."""
    kind = str(payload.get("kind") or "")
    detail = payload.get("detail")
    message = detail if isinstance(detail, str) else f"Request failed ({status_code})"
    cls = ERROR_KINDS.get(kind)
    if cls is None:
        if status_code in (401, 403):
            cls = Unauthorized
        elif status_code == 404:
            cls = NotFound
        elif status_code in (400, 422):
            cls = ValidationError
        else:
            cls = StorageError
    return cls(message)


# --------------------------------------------------------------------------- #
# Value types
# --------------------------------------------------------------------------- #
def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    # Timestamps like 2024-01-10T08:00:00 collapse to their calendar date.
    return date.fromisoformat(str(value)[:10])


def _serialize(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class _Record:
    """Shared row/JSON conversion for the frozen value types below."""

    _date_fields: Tuple[str, ...] = ()
    _bool_fields: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        values: Dict[str, Any] = {}
        for key in known:
            if key not in data:
                continue
            value = data[key]
            if key in cls._date_fields:
                value = _parse_date(value)
            elif key in cls._bool_fields:
                value = bool(value)
            values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: _serialize(value) for key, value in asdict(self).items()}  # type: ignore[call-overload]


@dataclass(frozen=True)
class Book(_Record):
    id: str
    user_id: str
    title: str
    author: str
    subtitle: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    isbn: Optional[str] = None
    page_count: Optional[int] = None
    language: str = "en"
    cover_url: Optional[str] = None
    cover_thumbnail_url: Optional[str] = None
    open_library_id: Optional[str] = None
    status: BookStatus = BookStatus.TBR
    rating: Optional[int] = None
    personal_notes: Optional[str] = None
    date_added: Optional[date] = None
    date_started: Optional[date] = None
    date_completed: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    _date_fields = ("date_added", "date_started", "date_completed")

    def __post_init__(self) -> None:
        if not isinstance(self.status, BookStatus):
            object.__setattr__(self, "status", BookStatus(self.status))


@dataclass(frozen=True)
class Shelf(_Record):
    id: str
    user_id: str
    name: str
    rank: int = 0
    description: Optional[str] = None
    color: str = "#8B4513"
    icon: str = "book"
    is_default: bool = False
    is_archived: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    _bool_fields = ("is_default", "is_archived")


@dataclass(frozen=True)
class BookPosition(_Record):
    id: str
    user_id: str
    book_id: str
    shelf_id: str
    rank: int
    master_position: Optional[int] = None
    year_completed: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ShelfWithBooks:
    """A shelf together with its positions (rank ascending) and their books."""

    shelf: Shelf
    entries: Tuple[Tuple[BookPosition, Book], ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        payload = self.shelf.to_dict()
        payload["book_positions"] = [
            {**position.to_dict(), "book": book.to_dict()} for position, book in self.entries
        ]
        return payload
