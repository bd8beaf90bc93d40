from __future__ import annotations

import sqlite3
from datetime import date
from pathlib import Path
from typing import Dict, List

import pytest

import moves
from inventory import LibraryStore
from models import BookStatus, NotFound, StorageError, Unauthorized, ValidationError
from moves import MoveEngine, MoveRequest

TODAY = date(2026, 3, 14)


@pytest.fixture
def store(tmp_path: Path) -> LibraryStore:
    test_store = LibraryStore(db_path=tmp_path / "moves.db")
    yield test_store
    test_store.close()


@pytest.fixture
def engine(store: LibraryStore) -> MoveEngine:
    return MoveEngine(store, clock=lambda: TODAY)


@pytest.fixture
def reader(store: LibraryStore) -> str:
    user_id, _ = store.create_user("Reader")
    return user_id


def _shelves(store: LibraryStore, user_id: str) -> Dict[str, str]:
    return {shelf.name: shelf.id for shelf in store.list_shelves(user_id)}


def _fill(store: LibraryStore, user_id: str, shelf_id: str, titles: List[str]) -> Dict[str, str]:
    ids = {}
    for title in titles:
        book, _ = store.add_book(user_id, {"title": title, "author": "Anon"}, shelf_id=shelf_id)
        ids[title] = book.id
    return ids


def _order(store: LibraryStore, user_id: str, shelf_id: str) -> List[str]:
    for entry in store.list_board(user_id, include_archived=True):
        if entry.shelf.id == shelf_id:
            ranks = [position.rank for position, _ in entry.entries]
            assert ranks == list(range(len(ranks)))
            return [book.title for _, book in entry.entries]
    raise AssertionError("shelf missing from board")


def test_move_to_reading_sets_status_and_start_date(
    store: LibraryStore, engine: MoveEngine, reader: str
) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["Dune", "Emma"])
    _fill(store, reader, shelves["Currently Reading"], ["Ulysses"])

    result = engine.move(reader, MoveRequest(books["Dune"], shelves["Currently Reading"], 0))

    assert result.position.shelf_id == shelves["Currently Reading"]
    assert result.position.rank == 0
    assert result.book.status == BookStatus.READING
    assert result.book.date_started == TODAY
    assert _order(store, reader, shelves["Currently Reading"]) == ["Dune", "Ulysses"]
    assert _order(store, reader, shelves["To Be Read"]) == ["Emma"]
    stored = store.get_book(reader, books["Dune"])
    assert stored.status == BookStatus.READING
    assert stored.date_started == TODAY


def test_move_out_of_completed_clears_completion_date(
    store: LibraryStore, engine: MoveEngine, reader: str
) -> None:
    shelves = _shelves(store, reader)
    book, _ = store.add_book(
        reader,
        {"title": "Emma", "author": "Austen", "date_started": "2024-01-01"},
        shelf_id=shelves["Completed"],
        today=date(2024, 1, 10),
    )
    assert book.date_completed == date(2024, 1, 10)

    result = engine.move(reader, MoveRequest(book.id, shelves["To Be Read"], 0))

    assert result.book.status == BookStatus.TBR
    assert result.book.date_completed is None
    stored = store.get_book(reader, book.id)
    assert stored.date_completed is None
    assert stored.date_started == date(2024, 1, 1)


def test_move_to_completed_records_completion(
    store: LibraryStore, engine: MoveEngine, reader: str
) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["Currently Reading"], ["Dune"])

    result = engine.move(reader, MoveRequest(books["Dune"], shelves["Completed"], 3))

    assert result.position.rank == 0
    assert result.book.status == BookStatus.COMPLETED
    assert result.book.date_completed == TODAY


def test_same_position_move_is_a_noop(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["A", "B", "C"])
    before = store.get_position(reader, books["B"])

    result = engine.move(reader, MoveRequest(books["B"], shelves["To Be Read"], 1))

    assert result.book is None
    assert result.position == before
    assert store.get_position(reader, books["B"]).updated_at == before.updated_at
    assert _order(store, reader, shelves["To Be Read"]) == ["A", "B", "C"]


def test_reorder_within_shelf(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    tbr = shelves["To Be Read"]
    books = _fill(store, reader, tbr, ["A", "B", "C", "D"])

    engine.move(reader, MoveRequest(books["A"], tbr, 2))
    assert _order(store, reader, tbr) == ["B", "C", "A", "D"]

    result = engine.move(reader, MoveRequest(books["D"], tbr, 0))
    assert _order(store, reader, tbr) == ["D", "B", "C", "A"]
    assert result.book is None
    assert store.get_book(reader, books["D"]).status == BookStatus.TBR


def test_index_past_end_is_clamped(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["A"])
    _fill(store, reader, shelves["Completed"], ["X", "Y"])

    result = engine.move(reader, MoveRequest(books["A"], shelves["Completed"], 50))

    assert result.position.rank == 2
    assert _order(store, reader, shelves["Completed"]) == ["X", "Y", "A"]


def test_ranks_stay_dense_over_many_moves(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    tbr, reading, done = shelves["To Be Read"], shelves["Currently Reading"], shelves["Completed"]
    books = _fill(store, reader, tbr, ["A", "B", "C", "D", "E"])

    plan = [
        ("A", reading, 0),
        ("B", reading, 0),
        ("C", done, 0),
        ("A", tbr, 1),
        ("E", reading, 1),
        ("B", done, 0),
        ("D", tbr, 0),
    ]
    for title, shelf_id, index in plan:
        engine.move(reader, MoveRequest(books[title], shelf_id, index))

    assert _order(store, reader, tbr) == ["D", "A"]
    assert _order(store, reader, reading) == ["E"]
    assert _order(store, reader, done) == ["B", "C"]


def test_custom_shelf_leaves_status_alone(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    custom = store.create_shelf(reader, "Summer Reads")
    books = _fill(store, reader, shelves["Currently Reading"], ["Dune"])

    result = engine.move(reader, MoveRequest(books["Dune"], custom.id, 0))

    assert result.book is None
    assert result.position.shelf_id == custom.id
    assert store.get_book(reader, books["Dune"]).status == BookStatus.READING


def test_foreign_shelf_is_unauthorized_and_changes_nothing(
    store: LibraryStore, engine: MoveEngine, reader: str
) -> None:
    other, _ = store.create_user("Other")
    shelves = _shelves(store, reader)
    foreign = _shelves(store, other)["Currently Reading"]
    books = _fill(store, reader, shelves["To Be Read"], ["A", "B"])

    with pytest.raises(Unauthorized):
        engine.move(reader, MoveRequest(books["A"], foreign, 0))
    with pytest.raises(Unauthorized):
        engine.move(other, MoveRequest(books["A"], foreign, 0))

    assert _order(store, reader, shelves["To Be Read"]) == ["A", "B"]
    assert _order(store, other, foreign) == []
    assert store.get_book(reader, books["A"]).status == BookStatus.TBR


def test_unknown_book_or_unshelved_book_is_not_found(
    store: LibraryStore, engine: MoveEngine, reader: str
) -> None:
    shelves = _shelves(store, reader)
    loose, _ = store.add_book(reader, {"title": "Loose", "author": "Anon"})

    with pytest.raises(NotFound):
        engine.move(reader, MoveRequest("missing-book", shelves["To Be Read"], 0))
    with pytest.raises(NotFound):
        engine.move(reader, MoveRequest(loose.id, shelves["To Be Read"], 0))
    with pytest.raises(NotFound):
        engine.move(reader, MoveRequest(loose.id, "missing-shelf", 0))


def test_negative_position_is_rejected(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["A"])

    with pytest.raises(ValidationError):
        engine.move(reader, MoveRequest(books["A"], shelves["Completed"], -1))
    assert store.get_position(reader, books["A"]).shelf_id == shelves["To Be Read"]


def test_stale_source_shelf_is_ignored(store: LibraryStore, engine: MoveEngine, reader: str) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["A"])

    result = engine.move(
        reader,
        MoveRequest(books["A"], shelves["Completed"], 0, from_shelf_id=shelves["Did Not Finish"]),
    )

    assert result.position.shelf_id == shelves["Completed"]
    assert _order(store, reader, shelves["To Be Read"]) == []


def test_storage_failure_rolls_back_the_whole_move(
    store: LibraryStore, engine: MoveEngine, reader: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    shelves = _shelves(store, reader)
    books = _fill(store, reader, shelves["To Be Read"], ["A", "B"])
    before = store.get_position(reader, books["A"])

    def _fail(conn, book) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(moves, "save_book_status", _fail)

    with pytest.raises(StorageError):
        engine.move(reader, MoveRequest(books["A"], shelves["Currently Reading"], 0))

    assert store.get_position(reader, books["A"]) == before
    assert _order(store, reader, shelves["To Be Read"]) == ["A", "B"]
    assert _order(store, reader, shelves["Currently Reading"]) == []
    assert store.get_book(reader, books["A"]).status == BookStatus.TBR
