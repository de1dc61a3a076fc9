"""Consistency rules every ledger operation must preserve.

These are pure functions over a snapshot of books and patrons. The test
suite asserts them after every scenario and the ledger exposes them
read-only through ``Ledger.check_consistency()``.
"""
from collections import Counter
from typing import Iterable, List

from lending.book import Book
from lending.patron import Patron


def counter_violations(books: Iterable[Book]) -> List[str]:
    """available + issued == total, and neither counter is negative."""
    problems = []
    for book in books:
        if book.available < 0:
            problems.append(f"book {book.id}: available is negative ({book.available})")
        if book.issued < 0:
            problems.append(f"book {book.id}: issued is negative ({book.issued})")
        if book.available + book.issued != book.total:
            problems.append(
                f"book {book.id}: available {book.available} + issued {book.issued} != total {book.total}"
            )
    return problems


def holder_violations(books: Iterable[Book], patrons: Iterable[Patron]) -> List[str]:
    """A book's issued counter equals the number of patrons holding it."""
    holders = Counter(issued.book_id for patron in patrons for issued in patron.issued_books)
    problems = []
    for book in books:
        if book.issued != holders.get(book.id, 0):
            problems.append(
                f"book {book.id}: issued {book.issued} but held by {holders.get(book.id, 0)} patron(s)"
            )
    return problems


def pending_violations(books: Iterable[Book]) -> List[str]:
    """At most one pending request per (book, patron)."""
    problems = []
    for book in books:
        pending = Counter(r.patron_id for r in book.requests if r.is_pending)
        for patron_id, count in pending.items():
            if count > 1:
                problems.append(f"book {book.id}: patron {patron_id} has {count} pending requests")
    return problems


def holding_violations(patrons: Iterable[Patron]) -> List[str]:
    """A patron holds any given book at most once."""
    problems = []
    for patron in patrons:
        held = Counter(issued.book_id for issued in patron.issued_books)
        for book_id, count in held.items():
            if count > 1:
                problems.append(f"patron {patron.id}: holds book {book_id} {count} times")
    return problems


def find_violations(books: Iterable[Book], patrons: Iterable[Patron]) -> List[str]:
    books = list(books)
    patrons = list(patrons)
    return (
        counter_violations(books)
        + holder_violations(books, patrons)
        + pending_violations(books)
        + holding_violations(patrons)
    )


def assert_consistent(books: Iterable[Book], patrons: Iterable[Patron]) -> None:
    problems = find_violations(books, patrons)
    assert not problems, "; ".join(problems)
