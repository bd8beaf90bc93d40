from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)

DEFAULT_API_FIELDS = [
    "key",
    "title",
    "subtitle",
    "author_name",
    "first_publish_year",
    "cover_i",
    "isbn",
    "publisher",
    "number_of_pages_median",
    "language",
]

COVER_URL_TEMPLATE = "https://covers.openlibrary.org/b/id/{cover_id}-{size}.jpg"
PAGE_SIZE = 10


class CatalogError(Exception):
    """Raised when the external catalog cannot be reached or returns garbage."""


@dataclass
class OpenLibraryQuery:
    """Encapsulates an Open Library search query."""

    general: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    limit: int = PAGE_SIZE
    fields: List[str] = field(default_factory=lambda: list(DEFAULT_API_FIELDS))

    def to_params(self, offset: int = 0) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.general:
            params["q"] = self.general
        if self.title:
            params["title"] = self.title
        if self.author:
            params["author"] = self.author
        params["limit"] = str(self.limit)
        if offset:
            params["offset"] = str(offset)
        if self.fields:
            params["fields"] = ",".join(self.fields)
        return params


def _first(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return str(value[0]) if value else None
    return str(value) if value else None


@dataclass(frozen=True)
class CatalogRecord:
    """A candidate book returned by the catalog."""

    title: str
    author: str
    authors: List[str] = field(default_factory=list)
    subtitle: Optional[str] = None
    open_library_id: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    page_count: Optional[int] = None
    language: Optional[str] = None
    cover_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "CatalogRecord":
        authors = [str(name) for name in doc.get("author_name") or [] if name]
        cover_id = doc.get("cover_i")
        pages = doc.get("number_of_pages_median")
        year = doc.get("first_publish_year")
        return cls(
            title=doc.get("title") or "Untitled",
            author=", ".join(authors) or "Unknown author",
            authors=authors,
            subtitle=doc.get("subtitle") or None,
            open_library_id=doc.get("key"),
            isbn=_first(doc.get("isbn")),
            publisher=_first(doc.get("publisher")),
            published_date=str(year) if year else None,
            page_count=pages if isinstance(pages, int) and pages > 0 else None,
            language=_first(doc.get("language")),
            cover_url=COVER_URL_TEMPLATE.format(cover_id=cover_id, size="L") if cover_id else None,
            thumbnail_url=COVER_URL_TEMPLATE.format(cover_id=cover_id, size="M") if cover_id else None,
        )

    def to_book_fields(self) -> Dict[str, Any]:
        """Fields accepted by the add-book operation."""
        values: Dict[str, Any] = {
            "title": self.title,
            "author": self.author,
            "subtitle": self.subtitle,
            "open_library_id": self.open_library_id,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "published_date": self.published_date,
            "page_count": self.page_count,
            "cover_url": self.cover_url,
            "cover_thumbnail_url": self.thumbnail_url,
        }
        if self.language:
            values["language"] = self.language
        return values

    def describe(self, index: int) -> str:
        """Return a printable description for a search result."""
        lines = [
            f"{index}. {self.title}",
            f"   Author(s): {self.author}",
        ]
        if self.published_date:
            lines.append(f"   First Published: {self.published_date}")
        if self.publisher:
            lines.append(f"   Publisher: {self.publisher}")
        if self.page_count:
            lines.append(f"   Pages: {self.page_count}")
        lines.append(f"   Cover URL: {self.cover_url or 'N/A'}")
        return "\n".join(lines)


def fetch_page(
    query: OpenLibraryQuery,
    offset: int = 0,
    *,
    session: Optional[requests.Session] = None,
) -> List[Dict[str, Any]]:
    """Fetch one page of raw records from the Open Library Search API."""
    getter = session.get if session is not None else requests.get
    try:
        response = getter(Config.CATALOG_URL, params=query.to_params(offset), timeout=Config.CATALOG_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as error:
        logger.warning("Unable to reach Open Library: %s", error)
        raise CatalogError(f"Unable to reach Open Library: {error}") from error

    docs = data.get("docs", []) if isinstance(data, dict) else []
    return [doc for doc in docs if isinstance(doc, dict)]


def search(
    text: str,
    max_results: int = PAGE_SIZE,
    *,
    session: Optional[requests.Session] = None,
) -> Iterator[CatalogRecord]:
    """Lazily yield up to ``max_results`` catalog records for a free-text query.

    Pages are requested only as the caller consumes results; the iterator is
    single-use.
    """
    if not text.strip():
        return
    query = OpenLibraryQuery(general=text.strip(), limit=min(max_results, PAGE_SIZE * 4))
    produced = 0
    offset = 0
    while produced < max_results:
        docs = fetch_page(query, offset, session=session)
        if not docs:
            return
        for doc in docs:
            yield CatalogRecord.from_doc(doc)
            produced += 1
            if produced >= max_results:
                return
        if len(docs) < query.limit:
            return
        offset += len(docs)
