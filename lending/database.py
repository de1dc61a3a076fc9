import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from lending.config import settings

# Make sure .env is loaded before reading the database path, whichever module
# gets imported first.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LENDING_DB_FILE (explicit override)
# 2) lending.db in the working directory, shared by the CLI and the API
DATABASE_FILE = os.environ.get("LENDING_DB_FILE") or settings.database_file

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; writes go through ``transaction()``
    which issues its own ``BEGIN IMMEDIATE``/``COMMIT``.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def is_transient(exc: BaseException) -> bool:
    """True for lock/busy errors that are worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a write transaction.

    ``BEGIN IMMEDIATE`` takes SQLite's reserved lock up front, so two writers
    never both read a row and then both update it. Everything done on the
    yielded connection is committed together or rolled back together.
    """
    conn = get_db_connection(db_file)
    try:
        _begin_immediate(conn)
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def _begin_immediate(conn: sqlite3.Connection) -> None:
    """BEGIN IMMEDIATE with exponential backoff on busy errors."""
    retries = max(1, settings.db_retries)
    for attempt in range(retries):
        try:
            conn.execute("BEGIN IMMEDIATE")
            return
        except sqlite3.OperationalError as exc:
            if not is_transient(exc) or attempt == retries - 1:
                raise
            wait = settings.db_retry_backoff * (2 ** attempt)
            logger.warning(f"Database busy on BEGIN, retrying in {wait:.2f}s ({attempt + 1}/{retries})")
            time.sleep(wait)


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the lending schema if it does not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                cover TEXT,
                pdf TEXT,
                rating REAL NOT NULL DEFAULT 0 CHECK(rating >= 0 AND rating <= 5),
                read_count INTEGER NOT NULL DEFAULT 0 CHECK(read_count >= 0),
                total INTEGER NOT NULL CHECK(total >= 0),
                available INTEGER NOT NULL CHECK(available >= 0),
                issued INTEGER NOT NULL DEFAULT 0 CHECK(issued >= 0),
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS patrons (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                is_admin INTEGER NOT NULL DEFAULT 0,
                reading_progress TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS book_requests (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                patron_id TEXT NOT NULL,
                patron_name TEXT,
                status TEXT NOT NULL CHECK(status IN ('pending', 'approved', 'rejected')),
                requested_at TEXT NOT NULL,
                resolved_at TEXT,
                position INTEGER NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (patron_id) REFERENCES patrons(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS issued_books (
                patron_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                title TEXT NOT NULL,
                cover TEXT,
                pdf TEXT,
                rating REAL,
                issued_at TEXT NOT NULL,
                return_by TEXT NOT NULL,
                has_read INTEGER NOT NULL DEFAULT 0,
                position INTEGER NOT NULL,
                PRIMARY KEY (patron_id, book_id),
                FOREIGN KEY (patron_id) REFERENCES patrons(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS title_requests (
                id TEXT PRIMARY KEY,
                patron_id TEXT NOT NULL,
                patron_name TEXT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL CHECK(status IN ('pending', 'approved', 'rejected')),
                requested_at TEXT NOT NULL,
                resolved_at TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (patron_id) REFERENCES patrons(id) ON DELETE CASCADE
            );

            -- one pending request per (book, patron)
            CREATE UNIQUE INDEX IF NOT EXISTS uq_book_requests_pending
                ON book_requests(book_id, patron_id) WHERE status = 'pending';

            CREATE INDEX IF NOT EXISTS idx_book_requests_book ON book_requests(book_id);
            CREATE INDEX IF NOT EXISTS idx_book_requests_patron ON book_requests(patron_id);
            CREATE INDEX IF NOT EXISTS idx_book_requests_status ON book_requests(status);
            CREATE INDEX IF NOT EXISTS idx_issued_books_book ON issued_books(book_id);
            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_category ON books(category);
            CREATE INDEX IF NOT EXISTS idx_title_requests_status ON title_requests(status, requested_at);
            """
        )
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables if needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")


@contextmanager
def snapshot(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a read transaction.

    All reads made on it see one consistent point in time.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            if conn.in_transaction:
                conn.execute("COMMIT")
    finally:
        conn.close()
