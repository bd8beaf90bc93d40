import json
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

import pandas

from catalog import PAGE_SIZE, CatalogError, CatalogRecord, search
from client import BoardCache, HttpTransport
from config import Config
from models import LibraryError, Shelf

EXPORT_COLUMNS = [
    "shelf",
    "rank",
    "title",
    "author",
    "status",
    "rating",
    "date_added",
    "date_started",
    "date_completed",
    "isbn",
]


def print_record_fields(record: CatalogRecord) -> None:
    """Pretty-print every field of a catalog record."""
    print(json.dumps(asdict(record), indent=2, ensure_ascii=False, sort_keys=True))


def print_notification(level: str, message: str) -> None:
    prefix = "!!" if level == "error" else "ok"
    print(f"[{prefix}] {message}")


def choose_result(records: List[CatalogRecord]) -> Optional[CatalogRecord]:
    """Allow the user to browse results and select one."""
    if not records:
        print("No books matched your search.")
        return None

    offset = 0
    while offset < len(records):
        page = records[offset : offset + PAGE_SIZE]
        for idx, record in enumerate(page, start=offset + 1):
            print(record.describe(idx))
        print()
        prompt = (
            "Enter the number of a book to add it, 'd <number>' for full details, "
            "'n' to view more, 's' to skip this query: "
        )
        response = input(prompt).strip()
        normalized = response.lower()

        if normalized.startswith("d"):
            tokens = response[1:].split()
            if len(tokens) != 1 or not tokens[0].isdigit():
                print("Use the format 'd <number>' to view all fields for a result.")
                continue
            detail_index = int(tokens[0])
            if 1 <= detail_index <= len(records):
                print()
                print_record_fields(records[detail_index - 1])
                print()
            else:
                print("That selection is out of range. Please try again.")
            continue

        if normalized in {"s", "skip"}:
            return None
        if normalized in {"n", "next"}:
            offset += PAGE_SIZE
            continue
        try:
            selection = int(response)
        except ValueError:
            print("Please enter a valid option.")
            continue
        if 1 <= selection <= len(records):
            return records[selection - 1]
        print("That selection is out of range. Please try again.")

    print("No more results to show.")
    return None


def choose_shelf(shelves: List[Shelf]) -> Optional[Shelf]:
    for idx, shelf in enumerate(shelves, start=1):
        marker = " (default)" if shelf.is_default else ""
        print(f"{idx}. {shelf.name}{marker}")
    response = input("Shelf number (leave blank to skip): ").strip()
    if not response:
        return None
    if not response.isdigit() or not 1 <= int(response) <= len(shelves):
        print("That selection is out of range.")
        return None
    return shelves[int(response) - 1]


def print_board(cache: BoardCache) -> None:
    for shelf in cache.ordered_shelves():
        books = cache.books_on_shelf(shelf.id)
        print(f"\n{shelf.name} ({len(books)})")
        for rank, book in enumerate(books):
            print(f"   {rank}. {book.title} - {book.author} [{book.status.value}]")


def board_frame(cache: BoardCache) -> pandas.DataFrame:
    """One row per shelved book, shelves and ranks in board order."""
    rows = []
    for shelf in cache.ordered_shelves(include_archived=True):
        for rank, book in enumerate(cache.books_on_shelf(shelf.id)):
            values = book.to_dict()
            rows.append({"shelf": shelf.name, "rank": rank, **{key: values.get(key) for key in EXPORT_COLUMNS[2:]}})
    return pandas.DataFrame(rows, columns=EXPORT_COLUMNS)


def save_spreadsheet(frame: pandas.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)


def interactive_session(cache: BoardCache, max_results: int = 30) -> None:
    """Search the catalog and add chosen books to a shelf."""
    print("\nEnter keywords to find books on Open Library.")
    print("Type 'board' to show your shelves, 'export <file.csv>' to save them, 'quit' to exit.")

    while True:
        text = input("\nKeywords: ").strip()
        if text.lower() == "quit":
            break
        if text.lower() == "board":
            print_board(cache)
            continue
        if text.lower().startswith("export "):
            path = Path(text[len("export ") :].strip()).expanduser()
            frame = board_frame(cache)
            save_spreadsheet(frame, path)
            print(f"Saved {len(frame)} books to {path}")
            continue
        if not text:
            print("No query provided. Please try again.")
            continue

        try:
            records = list(search(text, max_results))
        except CatalogError as error:
            print(error)
            continue
        chosen = choose_result(records)
        if not chosen:
            continue

        shelf = choose_shelf(cache.ordered_shelves())
        if shelf is None:
            print("Skipped adding this book.")
            continue
        cache.add_book(chosen.to_book_fields(), shelf.id)

    print("\nSession complete.")


def main() -> None:
    transport = HttpTransport(Config.API_URL, Config.API_TOKEN)
    if not transport.token:
        name = input("No SHELFBOARD_TOKEN set. Name for a new account: ").strip()
        try:
            account = transport.create_user(name)
        except LibraryError as error:
            print(f"Unable to create an account: {error}")
            return
        print(f"Created account. Export SHELFBOARD_TOKEN={account['token']} to reuse it.")

    cache = BoardCache(transport, notifier=print_notification)
    if not cache.load():
        return
    try:
        interactive_session(cache)
    finally:
        cache.close()


if __name__ == "__main__":
    main()
