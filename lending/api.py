import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lending.book import CATEGORIES
from lending.config import configure_logging, settings
from lending.database import get_db_connection
from lending.errors import LendingError, PermissionDenied, StorageFailure
from lending.ledger import Ledger

logger = logging.getLogger(__name__)

_ledger: Optional[Ledger] = None
_ledger_lock = threading.Lock()


def get_ledger() -> Ledger:
    """Shared Ledger instance, created on first use."""
    global _ledger
    if _ledger is None:
        with _ledger_lock:
            if _ledger is None:
                _ledger = Ledger()
    return _ledger


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    try:
        yield
    finally:
        # Release the notification sink on shutdown
        if _ledger is not None:
            _ledger.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Errors ---
@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    headers = {"Retry-After": "1"} if isinstance(exc, StorageFailure) else None
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "validation_error", "message": problems or "Invalid request"},
    )


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Admin operations need the configured API key; a client-asserted admin flag is never trusted."""
    if api_key == settings.api_key:
        return api_key
    raise PermissionDenied("Could not validate credentials")


# --- Request bodies ---
class BookCreate(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    category: str = Field(..., description=f"One of: {', '.join(CATEGORIES)}")
    total: Optional[int] = Field(None, ge=1)
    rating: Optional[float] = Field(None, ge=0, le=5)
    cover: Optional[str] = None
    pdf: Optional[str] = None


class PatronAction(BaseModel):
    patron_id: str = Field(..., min_length=1)


class RequestResolution(BaseModel):
    status: str = Field(..., description="approved | rejected")


class PatronCreate(BaseModel):
    name: str = Field(..., min_length=1)
    is_admin: bool = False


class ReadingPosition(BaseModel):
    book_id: str = Field(..., min_length=1)
    position: int = Field(..., ge=0)


class TitleRequestCreate(BaseModel):
    patron_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    description: Optional[str] = None


# --- Health ---
@app.get("/health")
def health(ledger: Ledger = Depends(get_ledger)):
    """Lightweight health endpoint with a quick database check."""
    db_ok = True
    try:
        conn = get_db_connection(ledger.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.warning(f"Health check database check failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }


# --- Catalog ---
@app.get("/books")
def list_books(ledger: Ledger = Depends(get_ledger)):
    return [book.to_dict() for book in ledger.list_books()]


@app.post("/books", status_code=201)
def add_book(payload: BookCreate, ledger: Ledger = Depends(get_ledger), api_key: str = Depends(get_api_key)):
    book = ledger.add_book(
        title=payload.title,
        author=payload.author,
        category=payload.category,
        total=payload.total,
        rating=payload.rating,
        cover=payload.cover,
        pdf=payload.pdf,
    )
    return book.to_dict()


@app.get("/books/{book_id}")
def get_book(book_id: str, ledger: Ledger = Depends(get_ledger)):
    return ledger.get_book(book_id).to_dict()


@app.delete("/books/{book_id}")
def delete_book(book_id: str, ledger: Ledger = Depends(get_ledger), api_key: str = Depends(get_api_key)):
    ledger.remove_book(book_id)
    return {"success": True, "message": "Book deleted successfully", "deleted_book_id": book_id}


@app.get("/categories")
def list_categories(ledger: Ledger = Depends(get_ledger)):
    return ledger.categories()


@app.get("/authors")
def list_authors(ledger: Ledger = Depends(get_ledger)):
    return ledger.authors()


# --- Lending ---
@app.post("/books/{book_id}/requests")
def request_book(book_id: str, payload: PatronAction, ledger: Ledger = Depends(get_ledger)):
    request = ledger.request_book(payload.patron_id, book_id)
    return {"success": True, "message": "Book request submitted successfully", "request": request.to_dict()}


@app.patch("/books/{book_id}/requests/{request_id}")
def resolve_request(book_id: str, request_id: str, payload: RequestResolution,
                    ledger: Ledger = Depends(get_ledger), api_key: str = Depends(get_api_key)):
    book = ledger.resolve_request(book_id, request_id, payload.status)
    return {"success": True, "message": f"Request {payload.status}", "book": book.to_dict()}


@app.post("/books/{book_id}/issue")
def issue_book(book_id: str, payload: PatronAction, ledger: Ledger = Depends(get_ledger),
               api_key: str = Depends(get_api_key)):
    book, patron = ledger.direct_issue(book_id, payload.patron_id)
    return {
        "success": True,
        "message": "Book issued successfully",
        "book": book.to_dict(),
        "patron": patron.to_dict(),
    }


@app.post("/books/{book_id}/return")
def return_book(book_id: str, payload: PatronAction, ledger: Ledger = Depends(get_ledger)):
    book, patron = ledger.return_book(book_id, payload.patron_id)
    return {
        "success": True,
        "message": "Book returned successfully",
        "book": book.to_dict(),
        "patron": patron.to_dict(),
    }


@app.post("/books/{book_id}/read")
def mark_read(book_id: str, payload: PatronAction, ledger: Ledger = Depends(get_ledger)):
    read_count = ledger.mark_read(book_id, payload.patron_id)
    return {"success": True, "read_count": read_count}


@app.get("/requests/pending")
def pending_requests(patron_id: Optional[str] = Query(None), ledger: Ledger = Depends(get_ledger),
                     api_key: str = Depends(get_api_key)):
    return ledger.pending_requests(patron_id=patron_id)


# --- Patrons ---
@app.post("/patrons", status_code=201)
def register_patron(payload: PatronCreate, ledger: Ledger = Depends(get_ledger),
                    api_key: str = Depends(get_api_key)):
    return ledger.register_patron(payload.name, is_admin=payload.is_admin).to_dict()


@app.get("/patrons/{patron_id}")
def get_patron(patron_id: str, ledger: Ledger = Depends(get_ledger)):
    return ledger.get_patron(patron_id).to_dict()


@app.get("/patrons/{patron_id}/issued-books")
def issued_books(patron_id: str, ledger: Ledger = Depends(get_ledger)):
    return ledger.issued_books(patron_id)


@app.get("/patrons/{patron_id}/statistics")
def patron_statistics(patron_id: str, ledger: Ledger = Depends(get_ledger)):
    return ledger.patron_statistics(patron_id)


@app.get("/patrons/{patron_id}/reading-progress")
def get_reading_progress(patron_id: str, ledger: Ledger = Depends(get_ledger)):
    return {"reading_progress": ledger.get_reading_progress(patron_id)}


@app.put("/patrons/{patron_id}/reading-progress")
def set_reading_progress(patron_id: str, payload: ReadingPosition, ledger: Ledger = Depends(get_ledger)):
    progress = ledger.set_reading_position(patron_id, payload.book_id, payload.position)
    return {"success": True, "reading_progress": progress}


# --- Title requests ---
@app.post("/title-requests", status_code=201)
def request_title(payload: TitleRequestCreate, ledger: Ledger = Depends(get_ledger)):
    request = ledger.request_title(payload.patron_id, payload.title, payload.author, payload.description)
    return {"success": True, "message": "Request submitted successfully", "request": request.to_dict()}


@app.get("/title-requests")
def pending_title_requests(ledger: Ledger = Depends(get_ledger), api_key: str = Depends(get_api_key)):
    return [request.to_dict() for request in ledger.pending_title_requests()]


@app.patch("/title-requests/{request_id}")
def resolve_title_request(request_id: str, payload: RequestResolution, ledger: Ledger = Depends(get_ledger),
                          api_key: str = Depends(get_api_key)):
    request = ledger.resolve_title_request(request_id, payload.status)
    return {"success": True, "request": request.to_dict()}


# --- Admin ---
@app.get("/admin/consistency")
def consistency(ledger: Ledger = Depends(get_ledger), api_key: str = Depends(get_api_key)):
    violations = ledger.check_consistency()
    return {"consistent": not violations, "violations": violations}
