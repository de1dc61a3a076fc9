import threading

import pytest

from lending.errors import Conflict
from lending.invariants import assert_consistent
from lending.ledger import EntityLocks, Ledger


def _race(calls):
    """Run each call on its own thread, released together. Returns (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    lock = threading.Lock()

    def worker(call):
        barrier.wait()
        try:
            value = call()
        except Exception as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


@pytest.fixture
def last_copy(ledger, alice, bob):
    book = ledger.add_book("Emma", "Jane Austen", "Romance", total=1)
    first = ledger.request_book(alice.id, book.id)
    second = ledger.request_book(bob.id, book.id)
    return book, first, second


def test_concurrent_approvals_issue_the_last_copy_once(ledger, last_copy):
    book, first, second = last_copy

    results, errors = _race([
        lambda: ledger.approve_request(book.id, first.id),
        lambda: ledger.approve_request(book.id, second.id),
    ])

    assert len(results) == 1
    assert len(errors) == 1 and isinstance(errors[0], Conflict)
    stored = ledger.get_book(book.id)
    assert (stored.available, stored.issued) == (0, 1)
    assert len(stored.pending_requests()) == 1
    assert_consistent(ledger.list_books(), ledger.list_patrons())


def test_concurrent_approvals_across_ledger_instances(ledger, db_file, sink, last_copy):
    # Separate instances share no in-process locks; only the database serializes them.
    book, first, second = last_copy
    other = Ledger(db_file=db_file, notifier=sink, locks=EntityLocks())

    results, errors = _race([
        lambda: ledger.approve_request(book.id, first.id),
        lambda: other.approve_request(book.id, second.id),
    ])

    assert len(results) == 1
    assert len(errors) == 1 and isinstance(errors[0], Conflict)
    assert ledger.get_book(book.id).available == 0
    assert_consistent(ledger.list_books(), ledger.list_patrons())


def test_concurrent_requests_from_one_patron_leave_one_pending(ledger, book, alice):
    results, errors = _race([lambda: ledger.request_book(alice.id, book.id) for _ in range(4)])

    assert len(results) == 1
    assert len(errors) == 3
    assert all(isinstance(e, Conflict) for e in errors)
    assert len(ledger.get_book(book.id).pending_requests()) == 1


def test_operations_on_different_books_run_independently(ledger, alice, bob):
    books = [ledger.add_book(f"Volume {n}", "Some Author", "History", total=1) for n in range(4)]
    patrons = [alice, bob, ledger.register_patron("Carol"), ledger.register_patron("Dave")]

    results, errors = _race([
        (lambda b=b, p=p: ledger.direct_issue(b.id, p.id)) for b, p in zip(books, patrons)
    ])

    assert errors == []
    assert len(results) == 4
    assert all(b.available == 0 for b in ledger.list_books())
    assert_consistent(ledger.list_books(), ledger.list_patrons())
    assert len(ledger.locks) == 0
