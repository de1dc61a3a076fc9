"""Durable storage for catalog entries, patrons and title requests.

Each store persists a whole aggregate: a book together with its lending
requests, a patron together with their issued books. Saves are versioned;
a save whose version no longer matches the stored row raises
``StaleEntityError`` so the ledger can retry the whole operation.

Every method takes an optional open connection. The ledger passes the
connection of its current transaction so writes to both aggregates land in
one commit; other callers let the store open its own.
"""
import json
import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from lending.book import Book, BookRequest
from lending.database import get_db_connection, transaction
from lending.errors import Conflict, NotFound, StaleEntityError
from lending.patron import IssuedBook, Patron
from lending.title_request import TitleRequest


class _Store:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    @contextmanager
    def _reading(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_db_connection(self.db_file)
        try:
            yield own
        finally:
            own.close()

    @contextmanager
    def _writing(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with transaction(self.db_file) as own:
            yield own


class BookStore(_Store):
    """Catalog entries and their embedded requests."""

    _COLUMNS = (
        "id, title, author, category, cover, pdf, rating, read_count, "
        "total, available, issued, version, created_at"
    )

    # ------------------------- Reads ------------------------- #
    def get(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Book:
        with self._reading(conn) as c:
            row = c.execute(f"SELECT {self._COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFound(f"Book {book_id} not found")
            requests = self._load_requests(c, [book_id])
        return self._to_book(row, requests.get(book_id, []))

    def exists(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self._reading(conn) as c:
            return c.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is not None

    def list(self, conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        """All books, most recently added first."""
        with self._reading(conn) as c:
            rows = c.execute(
                f"SELECT {self._COLUMNS} FROM books ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
            requests = self._load_requests(c, [row["id"] for row in rows])
        return [self._to_book(row, requests.get(row["id"], [])) for row in rows]

    def with_pending_requests(self, conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        with self._reading(conn) as c:
            rows = c.execute(
                f"SELECT {self._COLUMNS} FROM books WHERE id IN "
                "(SELECT DISTINCT book_id FROM book_requests WHERE status = 'pending') "
                "ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
            requests = self._load_requests(c, [row["id"] for row in rows])
        return [self._to_book(row, requests.get(row["id"], [])) for row in rows]

    def requests_for_patron(self, patron_id: str,
                            conn: Optional[sqlite3.Connection] = None) -> List[Tuple[str, BookRequest]]:
        """Every request a patron has made, as (book_id, request) pairs."""
        with self._reading(conn) as c:
            rows = c.execute(
                "SELECT * FROM book_requests WHERE patron_id = ? ORDER BY requested_at, position",
                (patron_id,),
            ).fetchall()
        return [(row["book_id"], self._to_request(row)) for row in rows]

    # ------------------------- Writes ------------------------- #
    def add(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> Book:
        try:
            with self._writing(conn) as c:
                c.execute(
                    f"INSERT INTO books ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (book.id, book.title, book.author, book.category, book.cover, book.pdf,
                     book.rating, book.read_count, book.total, book.available, book.issued,
                     book.version, book.created_at),
                )
                self._write_requests(c, book)
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Book {book.id} could not be stored: {exc}") from exc
        return book

    def save(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Persist the entry row and its full request list in one write."""
        try:
            with self._writing(conn) as c:
                cursor = c.execute(
                    "UPDATE books SET title = ?, author = ?, category = ?, cover = ?, pdf = ?, "
                    "rating = ?, read_count = ?, total = ?, available = ?, issued = ?, "
                    "version = version + 1 WHERE id = ? AND version = ?",
                    (book.title, book.author, book.category, book.cover, book.pdf, book.rating,
                     book.read_count, book.total, book.available, book.issued,
                     book.id, book.version),
                )
                if cursor.rowcount == 0:
                    if not self.exists(book.id, c):
                        raise NotFound(f"Book {book.id} not found")
                    raise StaleEntityError("book", book.id)
                c.execute("DELETE FROM book_requests WHERE book_id = ?", (book.id,))
                self._write_requests(c, book)
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Book {book.id} update rejected by storage: {exc}") from exc
        book.version += 1
        return book

    def delete(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Delete a book. Its requests and every issued record for it go too."""
        with self._writing(conn) as c:
            cursor = c.execute("DELETE FROM books WHERE id = ?", (book_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Book {book_id} not found")

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _write_requests(conn: sqlite3.Connection, book: Book) -> None:
        conn.executemany(
            "INSERT INTO book_requests (id, book_id, patron_id, patron_name, status, "
            "requested_at, resolved_at, position) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (r.id, book.id, r.patron_id, r.patron_name, r.status.value,
                 r.requested_at, r.resolved_at, position)
                for position, r in enumerate(book.requests)
            ],
        )

    def _load_requests(self, conn: sqlite3.Connection, book_ids: List[str]) -> Dict[str, List[BookRequest]]:
        grouped: Dict[str, List[BookRequest]] = {}
        if not book_ids:
            return grouped
        placeholders = ", ".join("?" for _ in book_ids)
        rows = conn.execute(
            f"SELECT * FROM book_requests WHERE book_id IN ({placeholders}) ORDER BY book_id, position",
            book_ids,
        ).fetchall()
        for row in rows:
            grouped.setdefault(row["book_id"], []).append(self._to_request(row))
        return grouped

    @staticmethod
    def _to_request(row: sqlite3.Row) -> BookRequest:
        return BookRequest.from_dict(dict(row))

    @staticmethod
    def _to_book(row: sqlite3.Row, requests: List[BookRequest]) -> Book:
        data = dict(row)
        data["requests"] = []
        book = Book.from_dict(data)
        book.requests = requests
        return book


class PatronStore(_Store):
    """Patrons and their embedded issued-book lists."""

    _COLUMNS = "id, name, is_admin, reading_progress, version, created_at"
    _ISSUED_COLUMNS = "book_id, title, cover, pdf, rating, issued_at, return_by, has_read"

    def get(self, patron_id: str, conn: Optional[sqlite3.Connection] = None) -> Patron:
        with self._reading(conn) as c:
            row = c.execute(f"SELECT {self._COLUMNS} FROM patrons WHERE id = ?", (patron_id,)).fetchone()
            if row is None:
                raise NotFound(f"Patron {patron_id} not found")
            issued = self._load_issued(c, patron_id)
        return self._to_patron(row, issued)

    def exists(self, patron_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self._reading(conn) as c:
            return c.execute("SELECT 1 FROM patrons WHERE id = ?", (patron_id,)).fetchone() is not None

    def list(self, conn: Optional[sqlite3.Connection] = None) -> List[Patron]:
        with self._reading(conn) as c:
            rows = c.execute(f"SELECT {self._COLUMNS} FROM patrons ORDER BY name, id").fetchall()
            return [self._to_patron(row, self._load_issued(c, row["id"])) for row in rows]

    def holders_of(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> List[str]:
        """Ids of the patrons currently holding ``book_id``."""
        with self._reading(conn) as c:
            rows = c.execute(
                "SELECT patron_id FROM issued_books WHERE book_id = ? ORDER BY patron_id", (book_id,)
            ).fetchall()
        return [row["patron_id"] for row in rows]

    def add(self, patron: Patron, conn: Optional[sqlite3.Connection] = None) -> Patron:
        try:
            with self._writing(conn) as c:
                c.execute(
                    f"INSERT INTO patrons ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (patron.id, patron.name, int(patron.is_admin),
                     json.dumps(patron.reading_progress), patron.version, patron.created_at),
                )
                self._write_issued(c, patron)
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Patron {patron.id} could not be stored: {exc}") from exc
        return patron

    def save(self, patron: Patron, conn: Optional[sqlite3.Connection] = None) -> Patron:
        try:
            with self._writing(conn) as c:
                cursor = c.execute(
                    "UPDATE patrons SET name = ?, is_admin = ?, reading_progress = ?, "
                    "version = version + 1 WHERE id = ? AND version = ?",
                    (patron.name, int(patron.is_admin), json.dumps(patron.reading_progress),
                     patron.id, patron.version),
                )
                if cursor.rowcount == 0:
                    if not self.exists(patron.id, c):
                        raise NotFound(f"Patron {patron.id} not found")
                    raise StaleEntityError("patron", patron.id)
                c.execute("DELETE FROM issued_books WHERE patron_id = ?", (patron.id,))
                self._write_issued(c, patron)
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Patron {patron.id} update rejected by storage: {exc}") from exc
        patron.version += 1
        return patron

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _write_issued(conn: sqlite3.Connection, patron: Patron) -> None:
        conn.executemany(
            "INSERT INTO issued_books (patron_id, book_id, title, cover, pdf, rating, "
            "issued_at, return_by, has_read, position) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (patron.id, b.book_id, b.title, b.cover, b.pdf, b.rating,
                 b.issued_at, b.return_by, int(b.has_read), position)
                for position, b in enumerate(patron.issued_books)
            ],
        )

    def _load_issued(self, conn: sqlite3.Connection, patron_id: str) -> List[IssuedBook]:
        rows = conn.execute(
            f"SELECT {self._ISSUED_COLUMNS} FROM issued_books WHERE patron_id = ? ORDER BY position",
            (patron_id,),
        ).fetchall()
        return [IssuedBook.from_dict(dict(row)) for row in rows]

    @staticmethod
    def _to_patron(row: sqlite3.Row, issued: List[IssuedBook]) -> Patron:
        data = dict(row)
        data["issued_books"] = []
        patron = Patron.from_dict(data)
        patron.issued_books = issued
        return patron


class TitleRequestStore(_Store):
    """Requests to acquire titles the catalog does not hold."""

    _COLUMNS = (
        "id, patron_id, patron_name, title, author, description, status, "
        "requested_at, resolved_at, version"
    )

    def get(self, request_id: str, conn: Optional[sqlite3.Connection] = None) -> TitleRequest:
        with self._reading(conn) as c:
            row = c.execute(f"SELECT {self._COLUMNS} FROM title_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFound(f"Title request {request_id} not found")
        return TitleRequest.from_dict(dict(row))

    def pending(self, conn: Optional[sqlite3.Connection] = None) -> List[TitleRequest]:
        """Pending title requests, newest first."""
        with self._reading(conn) as c:
            rows = c.execute(
                f"SELECT {self._COLUMNS} FROM title_requests WHERE status = 'pending' "
                "ORDER BY requested_at DESC, rowid DESC"
            ).fetchall()
        return [TitleRequest.from_dict(dict(row)) for row in rows]

    def add(self, request: TitleRequest, conn: Optional[sqlite3.Connection] = None) -> TitleRequest:
        try:
            with self._writing(conn) as c:
                c.execute(
                    f"INSERT INTO title_requests ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (request.id, request.patron_id, request.patron_name, request.title, request.author,
                     request.description, request.status.value, request.requested_at,
                     request.resolved_at, request.version),
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Title request {request.id} could not be stored: {exc}") from exc
        return request

    def save(self, request: TitleRequest, conn: Optional[sqlite3.Connection] = None) -> TitleRequest:
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE title_requests SET status = ?, resolved_at = ?, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (request.status.value, request.resolved_at, request.id, request.version),
            )
            if cursor.rowcount == 0:
                exists = c.execute("SELECT 1 FROM title_requests WHERE id = ?", (request.id,)).fetchone()
                if exists is None:
                    raise NotFound(f"Title request {request.id} not found")
                raise StaleEntityError("title request", request.id)
        request.version += 1
        return request
