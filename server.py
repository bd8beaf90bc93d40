from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from auth import Identity, TokenAuthenticator
from catalog import CatalogError, search
from config import Config
from inventory import LibraryStore
from models import BookStatus, LibraryError
from moves import MoveEngine, MoveRequest

logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Application setup
# -----------------------------------------------------------------------------

app = FastAPI(title="Shelfboard API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store() -> LibraryStore:
    if not hasattr(get_store, "_instance"):
        get_store._instance = LibraryStore()  # type: ignore[attr-defined]
    return get_store._instance  # type: ignore[attr-defined]


def get_engine(store: LibraryStore = Depends(get_store)) -> MoveEngine:
    return MoveEngine(store)


def get_identity(
    authorization: Optional[str] = Header(None),
    store: LibraryStore = Depends(get_store),
) -> Identity:
    return TokenAuthenticator(store).authenticate(authorization)


@app.on_event("shutdown")
def _shutdown() -> None:
    store = getattr(get_store, "_instance", None)
    if isinstance(store, LibraryStore):
        store.close()


@app.exception_handler(LibraryError)
async def _library_error(request: Request, exc: LibraryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "kind": "ValidationError",
            "detail": "Invalid request data",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# -----------------------------------------------------------------------------
# Pydantic models
# -----------------------------------------------------------------------------


class UserPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class BookFields(BaseModel):
    subtitle: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    isbn: Optional[str] = None
    page_count: Optional[int] = Field(default=None, ge=0)
    language: Optional[str] = None
    cover_url: Optional[str] = None
    cover_thumbnail_url: Optional[str] = None
    open_library_id: Optional[str] = None
    status: Optional[BookStatus] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    personal_notes: Optional[str] = None
    date_added: Optional[date] = None
    date_started: Optional[date] = None
    date_completed: Optional[date] = None


class BookCreate(BookFields):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    shelf_id: Optional[UUID] = None


class BookUpdate(BookFields):
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = Field(default=None, min_length=1)


class MovePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: UUID = Field(..., alias="bookId")
    from_shelf_id: Optional[UUID] = Field(default=None, alias="fromShelfId")
    to_shelf_id: UUID = Field(..., alias="toShelfId")
    position: int = Field(..., ge=0)


class ShelfPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    color: str = Field(default="#8B4513", pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: str = "book"


class ShelfUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: Optional[str] = None
    is_archived: Optional[bool] = None


class ShelfOrderPayload(BaseModel):
    shelf_ids: List[UUID] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Helper utilities
# -----------------------------------------------------------------------------


def _book_values(payload: BaseModel, *, exclude: Optional[set] = None) -> Dict[str, Any]:
    """Payload fields the caller actually sent, as storage-ready values."""
    values = payload.model_dump(exclude_unset=True, exclude=exclude)
    for key, value in values.items():
        if isinstance(value, date):
            values[key] = value.isoformat()
        elif isinstance(value, BookStatus):
            values[key] = value.value
    return values


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@app.get("/api/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def create_user(payload: UserPayload, store: LibraryStore = Depends(get_store)) -> Dict[str, str]:
    user_id, token = store.create_user(payload.name)
    return {"user_id": user_id, "token": token}


@app.get("/api/search")
def search_catalog(
    q: str = Query(..., min_length=1, max_length=500),
    max_results: int = Query(10, ge=1, le=40),
    identity: Identity = Depends(get_identity),
) -> Dict[str, Any]:
    try:
        results = [asdict(record) for record in search(q, max_results)]
    except CatalogError as exc:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"kind": "CatalogError", "detail": str(exc)},
        )
    return {"results": results, "total": len(results)}


@app.get("/api/books")
def list_books(
    status_filter: Optional[BookStatus] = Query(None, alias="status"),
    shelf_id: Optional[UUID] = Query(None),
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    books = store.list_books(
        identity.user_id,
        status=status_filter.value if status_filter else None,
        shelf_id=str(shelf_id) if shelf_id else None,
    )
    return [book.to_dict() for book in books]


@app.post("/api/books", status_code=status.HTTP_201_CREATED)
def create_book(
    payload: BookCreate,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Dict[str, Any]:
    book, position = store.add_book(
        identity.user_id,
        _book_values(payload, exclude={"shelf_id"}),
        shelf_id=str(payload.shelf_id) if payload.shelf_id else None,
    )
    return {"book": book.to_dict(), "position": position.to_dict() if position else None}


@app.post("/api/books/move")
def move_book(
    payload: MovePayload,
    identity: Identity = Depends(get_identity),
    engine: MoveEngine = Depends(get_engine),
) -> Dict[str, Any]:
    request = MoveRequest(
        book_id=str(payload.book_id),
        to_shelf_id=str(payload.to_shelf_id),
        position=payload.position,
        from_shelf_id=str(payload.from_shelf_id) if payload.from_shelf_id else None,
    )
    return engine.move(identity.user_id, request).to_dict()


@app.get("/api/books/{book_id}")
def get_book(
    book_id: str,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Dict[str, Any]:
    return store.get_book(identity.user_id, book_id).to_dict()


@app.patch("/api/books/{book_id}")
def update_book(
    book_id: str,
    payload: BookUpdate,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Dict[str, Any]:
    return store.update_book(identity.user_id, book_id, _book_values(payload)).to_dict()


@app.delete(
    "/api/books/{book_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
def delete_book(
    book_id: str,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Response:
    store.delete_book(identity.user_id, book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/shelves")
def list_board(
    include_archived: bool = Query(False),
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    board = store.list_board(identity.user_id, include_archived=include_archived)
    return [entry.to_dict() for entry in board]


@app.post("/api/shelves", status_code=status.HTTP_201_CREATED)
def create_shelf(
    payload: ShelfPayload,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Dict[str, Any]:
    shelf = store.create_shelf(
        identity.user_id,
        payload.name,
        description=payload.description,
        color=payload.color,
        icon=payload.icon,
    )
    return shelf.to_dict()


@app.post("/api/shelves/reorder")
def reorder_shelves(
    payload: ShelfOrderPayload,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    shelves = store.reorder_shelves(identity.user_id, [str(shelf_id) for shelf_id in payload.shelf_ids])
    return [shelf.to_dict() for shelf in shelves]


@app.patch("/api/shelves/{shelf_id}")
def update_shelf(
    shelf_id: str,
    payload: ShelfUpdate,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    return store.update_shelf(identity.user_id, shelf_id, **changes).to_dict()


@app.delete(
    "/api/shelves/{shelf_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
def delete_shelf(
    shelf_id: str,
    identity: Identity = Depends(get_identity),
    store: LibraryStore = Depends(get_store),
) -> Response:
    store.delete_shelf(identity.user_id, shelf_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000, log_level=Config.LOG_LEVEL.lower())
