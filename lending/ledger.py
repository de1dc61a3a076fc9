import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from lending import database
from lending.book import Book, BookRequest, CATEGORIES, RequestStatus
from lending.config import settings
from lending.database import initialize_database, is_transient, snapshot, transaction
from lending.errors import Conflict, NotFound, StaleEntityError, StorageFailure, ValidationError
from lending.invariants import find_violations
from lending.patron import IssuedBook, Patron
from lending.services.notifications import NotificationSink, build_notification_sink
from lending.stores import BookStore, PatronStore, TitleRequestStore
from lending.title_request import TitleRequest
from lending.validators import (
    BookValidator,
    TextValidator,
    validate_id,
    validate_position,
    validate_resolution,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityLocks:
    """In-process mutual exclusion per entity id.

    Keys are always acquired in sorted order so two operations that touch the
    same book and patron cannot deadlock. Entries are dropped once nobody
    holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        locks = [self._checkout(key) for key in ordered]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._checkin(key)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _book_key(book_id: str) -> str:
    return f"book:{book_id}"


def _patron_key(patron_id: str) -> str:
    return f"patron:{patron_id}"


class Ledger:
    """Owns every lending state transition.

    Each mutating operation reloads the affected book and/or patron, checks
    the transition, mutates both aggregates and saves them in a single
    SQLite transaction while holding per-entity locks. Versioned saves catch
    writers outside this process; the whole operation is retried when a save
    loses such a race.
    """

    def __init__(self, db_file: Optional[str] = None, notifier: Optional[NotificationSink] = None,
                 clock: Optional[Callable[[], datetime]] = None, locks: Optional[EntityLocks] = None,
                 loan_period_days: Optional[int] = None, max_retries: Optional[int] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self._initialize()
        self.books = BookStore(self.db_file)
        self.patrons = PatronStore(self.db_file)
        self.title_requests = TitleRequestStore(self.db_file)
        self.notifier = notifier if notifier is not None else build_notification_sink()
        self.clock = clock or utcnow
        self.locks = locks or EntityLocks()
        if loan_period_days is None:
            loan_period_days = settings.loan_period_days
        if max_retries is None:
            max_retries = settings.ledger_max_retries
        self.loan_period = timedelta(days=loan_period_days)
        self.max_retries = max_retries

    # ------------------------- Lending lifecycle ------------------------- #
    def request_book(self, patron_id: str, book_id: str) -> BookRequest:
        """Queue a pending request. Availability is only checked at approval."""
        patron_id = validate_id(patron_id, "patron_id")
        book_id = validate_id(book_id, "book_id")

        def op(conn: sqlite3.Connection) -> BookRequest:
            patron = self.patrons.get(patron_id, conn)
            book = self.books.get(book_id, conn)
            if book.pending_request_for(patron_id) is not None:
                raise Conflict("You already have a pending request for this book")
            request = BookRequest(patron_id, patron.name, requested_at=self._now().isoformat())
            book.requests.append(request)
            self.books.save(book, conn)
            return request

        request = self._write([_book_key(book_id)], op)
        logger.info(f"Patron {patron_id} requested book {book_id} (request {request.id})")
        self._notify("request_created", {"book_id": book_id, "patron_id": patron_id, "request_id": request.id})
        return request

    def resolve_request(self, book_id: str, request_id: str, status: str) -> Book:
        """Approve or reject a pending request.

        Approval issues the book to the patron who made the request; it fails
        with Conflict when no copy is left or the patron already holds one.
        """
        book_id = validate_id(book_id, "book_id")
        request_id = validate_id(request_id, "request_id")
        outcome = validate_resolution(status)

        # The requesting patron is only known from the stored request.
        queued = self._read(lambda conn: self.books.get(book_id, conn).find_request(request_id))
        if queued is None:
            raise NotFound(f"Request {request_id} not found")
        patron_id = queued.patron_id

        def op(conn: sqlite3.Connection) -> Book:
            book = self.books.get(book_id, conn)
            request = book.find_request(request_id)
            if request is None:
                raise NotFound(f"Request {request_id} not found")
            if not request.is_pending:
                raise Conflict(f"Request {request_id} is not pending (already {request.status.value})")

            now = self._now()
            if outcome is RequestStatus.APPROVED:
                if book.available <= 0:
                    raise Conflict("Book is no longer available")
                patron = self.patrons.get(patron_id, conn)
                if patron.holds(book_id):
                    raise Conflict("Book already issued to this patron")
                self._issue(book, patron, now)
                self.patrons.save(patron, conn)

            request.status = outcome
            request.resolved_at = now.isoformat()
            self.books.save(book, conn)
            return book

        book = self._write([_book_key(book_id), _patron_key(patron_id)], op)
        logger.info(f"Request {request_id} on book {book_id} {outcome.value}")
        self._notify("request_resolved", {
            "book_id": book_id,
            "request_id": request_id,
            "patron_id": patron_id,
            "status": outcome.value,
        })
        return book

    def approve_request(self, book_id: str, request_id: str) -> Book:
        return self.resolve_request(book_id, request_id, RequestStatus.APPROVED.value)

    def reject_request(self, book_id: str, request_id: str) -> Book:
        return self.resolve_request(book_id, request_id, RequestStatus.REJECTED.value)

    def direct_issue(self, book_id: str, patron_id: str) -> Tuple[Book, Patron]:
        """Issue a copy immediately, without a request."""
        book_id = validate_id(book_id, "book_id")
        patron_id = validate_id(patron_id, "patron_id")

        def op(conn: sqlite3.Connection) -> Tuple[Book, Patron]:
            book = self.books.get(book_id, conn)
            patron = self.patrons.get(patron_id, conn)
            if patron.holds(book_id):
                raise Conflict("Book already issued to this patron")
            if book.available <= 0:
                raise Conflict("Book is not available")
            self._issue(book, patron, self._now())
            self.books.save(book, conn)
            self.patrons.save(patron, conn)
            return book, patron

        book, patron = self._write([_book_key(book_id), _patron_key(patron_id)], op)
        logger.info(f"Book {book_id} issued directly to patron {patron_id}")
        self._notify("book_issued", {"book_id": book_id, "patron_id": patron_id})
        return book, patron

    def return_book(self, book_id: str, patron_id: str) -> Tuple[Book, Patron]:
        """Take a copy back and drop the patron's approved request for it."""
        book_id = validate_id(book_id, "book_id")
        patron_id = validate_id(patron_id, "patron_id")

        def op(conn: sqlite3.Connection) -> Tuple[Book, Patron]:
            book = self.books.get(book_id, conn)
            patron = self.patrons.get(patron_id, conn)
            if patron.release(book_id) is None:
                raise Conflict("This book was not issued to this patron")
            book.check_in()
            book.drop_approved_requests(patron_id)
            self.books.save(book, conn)
            self.patrons.save(patron, conn)
            return book, patron

        book, patron = self._write([_book_key(book_id), _patron_key(patron_id)], op)
        logger.info(f"Book {book_id} returned by patron {patron_id}")
        self._notify("book_returned", {"book_id": book_id, "patron_id": patron_id})
        return book, patron

    def mark_read(self, book_id: str, patron_id: str) -> int:
        """Count a read the first time a patron opens an issued copy."""
        book_id = validate_id(book_id, "book_id")
        patron_id = validate_id(patron_id, "patron_id")

        def op(conn: sqlite3.Connection) -> int:
            book = self.books.get(book_id, conn)
            patron = self.patrons.get(patron_id, conn)
            issued = patron.holding(book_id)
            if issued is None:
                raise Conflict("This book was not issued to this patron")
            if not issued.has_read:
                issued.has_read = True
                book.read_count += 1
                self.books.save(book, conn)
                self.patrons.save(patron, conn)
            return book.read_count

        return self._write([_book_key(book_id), _patron_key(patron_id)], op)

    # ------------------------- Catalog management ------------------------- #
    def add_book(self, title: str, author: str, category: str, total: Optional[int] = None,
                 rating: Optional[float] = None, cover: Optional[str] = None,
                 pdf: Optional[str] = None) -> Book:
        if total is None:
            total = settings.default_book_copies
        BookValidator.validate_new_book(title, author, category, total, rating)
        book = Book(
            title=title,
            author=author,
            category=category,
            total=total,
            rating=BookValidator.validate_rating(rating),
            cover=cover,
            pdf=pdf,
            created_at=self._now().isoformat(),
        )
        self._write([_book_key(book.id)], lambda conn: self.books.add(book, conn))
        logger.info(f"Book added: {book.title} by {book.author} ({book.total} copies)")
        self._notify("book_added", {"book_id": book.id, "title": book.title, "author": book.author})
        return book

    def remove_book(self, book_id: str) -> None:
        """Delete a book together with its requests and every issued record for it."""
        book_id = validate_id(book_id, "book_id")
        holders = self._read(lambda conn: self.patrons.holders_of(book_id, conn))

        def op(conn: sqlite3.Connection) -> Book:
            book = self.books.get(book_id, conn)
            for patron_id in self.patrons.holders_of(book_id, conn):
                patron = self.patrons.get(patron_id, conn)
                patron.release(book_id)
                self.patrons.save(patron, conn)
            self.books.delete(book_id, conn)
            return book

        keys = [_book_key(book_id)] + [_patron_key(p) for p in holders]
        book = self._write(keys, op)
        logger.info(f"Book removed: {book.title} ({book_id})")
        self._notify("book_removed", {"book_id": book_id, "title": book.title})

    def register_patron(self, name: str, is_admin: bool = False) -> Patron:
        if not TextValidator.validate_name(name):
            raise ValidationError("Patron name is required")
        patron = Patron(name=name, is_admin=is_admin, created_at=self._now().isoformat())
        self._write([_patron_key(patron.id)], lambda conn: self.patrons.add(patron, conn))
        logger.info(f"Patron registered: {patron.name} ({patron.id})")
        return patron

    def set_reading_position(self, patron_id: str, book_id: str, position: int) -> Dict[str, int]:
        patron_id = validate_id(patron_id, "patron_id")
        book_id = validate_id(book_id, "book_id")
        position = validate_position(position)

        def op(conn: sqlite3.Connection) -> Dict[str, int]:
            patron = self.patrons.get(patron_id, conn)
            if not self.books.exists(book_id, conn):
                raise NotFound(f"Book {book_id} not found")
            patron.reading_progress[book_id] = position
            self.patrons.save(patron, conn)
            return dict(patron.reading_progress)

        return self._write([_patron_key(patron_id)], op)

    # ------------------------- Title requests ------------------------- #
    def request_title(self, patron_id: str, title: str, author: str,
                      description: Optional[str] = None) -> TitleRequest:
        """Ask the library to acquire a title that is not in the catalog."""
        patron_id = validate_id(patron_id, "patron_id")
        if not TextValidator.validate_title(title):
            raise ValidationError("Title is required")
        if not TextValidator.validate_author(author):
            raise ValidationError("Author is required")

        def op(conn: sqlite3.Connection) -> TitleRequest:
            patron = self.patrons.get(patron_id, conn)
            request = TitleRequest(patron_id, title, author, description=description,
                                   patron_name=patron.name, requested_at=self._now().isoformat())
            return self.title_requests.add(request, conn)

        request = self._write([_patron_key(patron_id)], op)
        logger.info(f"Patron {patron_id} asked for title '{request.title}' (request {request.id})")
        self._notify("title_requested", {
            "request_id": request.id,
            "patron_id": patron_id,
            "title": request.title,
            "author": request.author,
        })
        return request

    def resolve_title_request(self, request_id: str, status: str) -> TitleRequest:
        request_id = validate_id(request_id, "request_id")
        outcome = validate_resolution(status)

        def op(conn: sqlite3.Connection) -> TitleRequest:
            request = self.title_requests.get(request_id, conn)
            if not request.is_pending:
                raise Conflict(f"Title request {request_id} is not pending (already {request.status.value})")
            request.status = outcome
            request.resolved_at = self._now().isoformat()
            return self.title_requests.save(request, conn)

        request = self._write([f"title_request:{request_id}"], op)
        logger.info(f"Title request {request_id} ('{request.title}') {outcome.value}")
        self._notify("title_request_resolved", {
            "request_id": request_id,
            "patron_id": request.patron_id,
            "title": request.title,
            "status": outcome.value,
        })
        return request

    def pending_title_requests(self) -> List[TitleRequest]:
        return self._read(lambda conn: self.title_requests.pending(conn))

    # ------------------------- Reads ------------------------- #
    def list_books(self) -> List[Book]:
        """Point-in-time view of the whole catalog, requests included."""
        return self._read(lambda conn: self.books.list(conn))

    def get_book(self, book_id: str) -> Book:
        return self._read(lambda conn: self.books.get(book_id, conn))

    def get_patron(self, patron_id: str) -> Patron:
        return self._read(lambda conn: self.patrons.get(patron_id, conn))

    def list_patrons(self) -> List[Patron]:
        return self._read(lambda conn: self.patrons.list(conn))

    def pending_requests(self, patron_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of every pending request, oldest first."""
        books = self._read(lambda conn: self.books.with_pending_requests(conn))
        summaries = [
            {
                "request_id": request.id,
                "book_id": book.id,
                "title": book.title,
                "available": book.available,
                "patron_id": request.patron_id,
                "patron_name": request.patron_name,
                "requested_at": request.requested_at,
            }
            for book in books
            for request in book.pending_requests()
            if patron_id is None or request.patron_id == patron_id
        ]
        summaries.sort(key=lambda s: s["requested_at"] or "")
        return summaries

    def issued_books(self, patron_id: str) -> List[Dict[str, Any]]:
        """A patron's issued records joined with the current book details."""

        def op(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
            patron = self.patrons.get(patron_id, conn)
            result = []
            for issued in patron.issued_books:
                entry = issued.to_dict()
                try:
                    book = self.books.get(issued.book_id, conn)
                except NotFound:
                    entry["book"] = None
                else:
                    entry["book"] = {
                        "title": book.title,
                        "author": book.author,
                        "cover": book.cover,
                        "category": book.category,
                        "rating": book.rating,
                        "pdf": book.pdf,
                    }
                result.append(entry)
            return result

        return self._read(op)

    def patron_statistics(self, patron_id: str) -> Dict[str, Any]:
        def op(conn: sqlite3.Connection) -> Dict[str, Any]:
            patron = self.patrons.get(patron_id, conn)
            requests = self.books.requests_for_patron(patron_id, conn)
            return {
                "patron_id": patron.id,
                "total_books_issued": len(patron.issued_books),
                "books_read": sum(1 for b in patron.issued_books if b.has_read),
                "pending_requests": sum(1 for _, r in requests if r.is_pending),
                "reading_history": [
                    {
                        "book_id": b.book_id,
                        "title": b.title,
                        "issued_at": b.issued_at,
                        "return_by": b.return_by,
                    }
                    for b in patron.issued_books
                ],
            }

        return self._read(op)

    def get_reading_progress(self, patron_id: str) -> Dict[str, int]:
        return dict(self.get_patron(patron_id).reading_progress)

    def categories(self) -> List[Dict[str, Any]]:
        counts: Dict[str, int] = {}
        for book in self.list_books():
            counts[book.category] = counts.get(book.category, 0) + 1
        order = {name: index for index, name in enumerate(CATEGORIES)}
        return [
            {"name": name, "count": count}
            for name, count in sorted(counts.items(), key=lambda item: order.get(item[0], len(order)))
        ]

    def authors(self) -> List[Dict[str, Any]]:
        counts: Dict[str, int] = {}
        for book in self.list_books():
            counts[book.author] = counts.get(book.author, 0) + 1
        return [
            {"name": name, "book_count": count}
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def check_consistency(self) -> List[str]:
        """Invariant violations in the current state (empty when consistent)."""
        books, patrons = self._read(lambda conn: (self.books.list(conn), self.patrons.list(conn)))
        return find_violations(books, patrons)

    # ------------------------- Internals ------------------------- #
    def _issue(self, book: Book, patron: Patron, now: datetime) -> None:
        book.check_out()
        patron.issued_books.append(IssuedBook(
            book_id=book.id,
            issued_at=now.isoformat(),
            return_by=(now + self.loan_period).isoformat(),
            **book.snapshot(),
        ))

    def _now(self) -> datetime:
        return self.clock()

    def _write(self, keys: List[str], operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``operation`` in one transaction while holding the entity locks.

        Lost optimistic-version races and busy errors are retried; anything
        raised by ``operation`` rolls the whole transaction back.
        """
        attempts = max(1, self.max_retries)
        for attempt in range(attempts):
            try:
                with self.locks.hold(*keys):
                    with transaction(self.db_file) as conn:
                        return operation(conn)
            except StaleEntityError as exc:
                if attempt == attempts - 1:
                    raise Conflict(f"The {exc.kind} was modified concurrently, please retry") from exc
                logger.warning(f"{exc}; retrying ({attempt + 1}/{attempts})")
            except sqlite3.Error as exc:
                self._retry_or_fail(exc, attempt, attempts)
        raise AssertionError("unreachable")  # pragma: no cover

    def _initialize(self) -> None:
        """Create the schema; an unreachable database surfaces as StorageFailure."""
        attempts = max(1, settings.db_retries)
        for attempt in range(attempts):
            try:
                initialize_database(self.db_file)
                return
            except sqlite3.Error as exc:
                self._retry_or_fail(exc, attempt, attempts)

    def _read(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        attempts = max(1, settings.db_retries)
        for attempt in range(attempts):
            try:
                with snapshot(self.db_file) as conn:
                    return operation(conn)
            except sqlite3.Error as exc:
                self._retry_or_fail(exc, attempt, attempts)
        raise AssertionError("unreachable")  # pragma: no cover

    def _retry_or_fail(self, exc: sqlite3.Error, attempt: int, attempts: int) -> None:
        if is_transient(exc) and attempt < attempts - 1:
            wait = settings.db_retry_backoff * (2 ** attempt)
            logger.warning(f"Database busy ({exc}); retrying in {wait:.2f}s")
            time.sleep(wait)
            return
        logger.error(f"Storage failure: {exc}")
        raise StorageFailure(f"Storage unavailable: {exc}") from exc

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        """Best effort: a failing sink never fails a committed operation."""
        try:
            self.notifier.publish(event, payload)
        except Exception as e:
            logger.warning(f"Notification {event} could not be published: {e}")

    def close(self) -> None:
        self.notifier.close()
