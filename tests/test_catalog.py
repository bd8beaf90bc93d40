from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from catalog import COVER_URL_TEMPLATE, CatalogError, CatalogRecord, OpenLibraryQuery, search


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, pages: List[Any]):
        self.pages = list(pages)
        self.calls: List[Dict[str, str]] = []

    def get(self, url: str, params: Dict[str, str], timeout: float) -> FakeResponse:
        self.calls.append(params)
        payload = self.pages.pop(0) if self.pages else {"docs": []}
        if isinstance(payload, FakeResponse):
            return payload
        return FakeResponse(payload)


def _docs(start: int, count: int) -> Dict[str, Any]:
    return {
        "docs": [
            {"key": f"/works/OL{n}W", "title": f"Book {n}", "author_name": [f"Author {n}"]}
            for n in range(start, start + count)
        ]
    }


def test_query_params_include_paging_and_fields() -> None:
    query = OpenLibraryQuery(general="dune", limit=5)
    params = query.to_params(offset=10)
    assert params["q"] == "dune"
    assert params["limit"] == "5"
    assert params["offset"] == "10"
    assert "author_name" in params["fields"].split(",")
    assert "offset" not in query.to_params()


def test_record_from_doc_normalises_fields() -> None:
    record = CatalogRecord.from_doc(
        {
            "key": "/works/OL45804W",
            "title": "Dune",
            "author_name": ["Frank Herbert"],
            "first_publish_year": 1965,
            "cover_i": 12345,
            "isbn": ["9780441013593", "0441013597"],
            "publisher": ["Ace"],
            "number_of_pages_median": 412,
            "language": ["eng"],
        }
    )

    assert record.author == "Frank Herbert"
    assert record.isbn == "9780441013593"
    assert record.published_date == "1965"
    assert record.cover_url == COVER_URL_TEMPLATE.format(cover_id=12345, size="L")
    fields = record.to_book_fields()
    assert fields["title"] == "Dune"
    assert fields["cover_thumbnail_url"].endswith("12345-M.jpg")
    assert fields["language"] == "eng"
    assert "1. Dune" in record.describe(1)


def test_record_defaults_for_sparse_doc() -> None:
    record = CatalogRecord.from_doc({"number_of_pages_median": 0})
    assert record.title == "Untitled"
    assert record.author == "Unknown author"
    assert record.page_count is None
    assert record.cover_url is None


def test_search_is_lazy() -> None:
    session = FakeSession([_docs(0, 10), _docs(10, 10)])
    results = search("dune", 15, session=session)
    assert session.calls == []

    first = next(results)
    assert first.title == "Book 0"
    assert len(session.calls) == 1


def test_search_pages_until_max_results() -> None:
    session = FakeSession([_docs(0, 40), _docs(40, 40), _docs(80, 40)])
    records = list(search("dune", 60, session=session))

    assert [r.title for r in records][-1] == "Book 59"
    assert len(records) == 60
    assert [call.get("offset") for call in session.calls] == [None, "40"]
    assert session.calls[0]["limit"] == "40"


def test_search_stops_on_short_page() -> None:
    session = FakeSession([_docs(0, 3)])
    assert len(list(search("dune", 30, session=session))) == 3
    assert len(session.calls) == 1


def test_blank_query_makes_no_request() -> None:
    session = FakeSession([])
    assert list(search("   ", session=session)) == []
    assert session.calls == []


def test_catalog_failures_raise_catalog_error() -> None:
    with pytest.raises(CatalogError):
        list(search("dune", session=FakeSession([FakeResponse({}, status_code=503)])))
    with pytest.raises(CatalogError):
        list(search("dune", session=FakeSession([FakeResponse(ValueError("bad json"))])))
