from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pandas
import pytest

import cli
from catalog import CatalogRecord
from client import BoardCache

SHELVES = [
    {"id": "s-read", "user_id": "u1", "name": "Currently Reading", "rank": 1, "book_positions": []},
    {"id": "s-tbr", "user_id": "u1", "name": "To Be Read", "rank": 0, "book_positions": []},
]


class StaticTransport:
    def __init__(self) -> None:
        books = [
            {"id": "b1", "user_id": "u1", "title": "Dune", "author": "Frank Herbert", "status": "tbr"},
            {"id": "b2", "user_id": "u1", "title": "Emma", "author": "Jane Austen", "status": "tbr"},
            {
                "id": "b3",
                "user_id": "u1",
                "title": "Ulysses",
                "author": "James Joyce",
                "status": "reading",
                "date_started": "2026-01-05",
            },
        ]
        placements = [("b2", "s-tbr", 0), ("b1", "s-tbr", 1), ("b3", "s-read", 0)]
        self.board: List[Dict[str, Any]] = [dict(shelf, book_positions=[]) for shelf in SHELVES]
        by_id = {shelf["id"]: shelf for shelf in self.board}
        for book_id, shelf_id, rank in placements:
            by_id[shelf_id]["book_positions"].append(
                {"id": f"p-{book_id}", "user_id": "u1", "book_id": book_id, "shelf_id": shelf_id, "rank": rank}
            )
        self.books = books

    def load_board(self) -> List[Dict[str, Any]]:
        return self.board

    def list_books(self) -> List[Dict[str, Any]]:
        return self.books

    def close(self) -> None:
        pass


@pytest.fixture
def cache() -> BoardCache:
    board = BoardCache(StaticTransport())
    assert board.load()
    return board


def test_board_frame_follows_board_order(cache: BoardCache) -> None:
    frame = cli.board_frame(cache)

    assert list(frame.columns) == cli.EXPORT_COLUMNS
    assert list(frame["title"]) == ["Emma", "Dune", "Ulysses"]
    assert list(frame["shelf"]) == ["To Be Read", "To Be Read", "Currently Reading"]
    assert list(frame["rank"]) == [0, 1, 0]
    assert frame.loc[2, "date_started"] == "2026-01-05"


def test_save_spreadsheet_writes_csv(cache: BoardCache, tmp_path: Path) -> None:
    path = tmp_path / "exports" / "board.csv"
    cli.save_spreadsheet(cli.board_frame(cache), path)

    saved = pandas.read_csv(path)
    assert list(saved["title"]) == ["Emma", "Dune", "Ulysses"]
    assert list(saved["status"]) == ["tbr", "tbr", "reading"]


def test_choose_result_supports_details_and_selection(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    records = [CatalogRecord(title=f"Book {n}", author="Anon") for n in range(3)]
    answers = iter(["d 2", "x", "3"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

    chosen = cli.choose_result(records)

    assert chosen is records[2]
    output = capsys.readouterr().out
    assert '"title": "Book 1"' in output
    assert "Please enter a valid option." in output


def test_choose_shelf_handles_blank_and_out_of_range(cache: BoardCache, monkeypatch: pytest.MonkeyPatch) -> None:
    shelves = cache.ordered_shelves()
    answers = iter(["", "9", "2"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

    assert cli.choose_shelf(shelves) is None
    assert cli.choose_shelf(shelves) is None
    assert cli.choose_shelf(shelves).name == "Currently Reading"
