import pytest

from lending.book import Book, BookRequest
from lending.invariants import (
    assert_consistent,
    counter_violations,
    find_violations,
    holder_violations,
    holding_violations,
    pending_violations,
)
from lending.patron import IssuedBook, Patron


def _issued(book_id):
    return IssuedBook(book_id, "Dune", "2024-01-01", "2024-01-15")


def test_consistent_state_has_no_violations():
    book = Book("Dune", "Frank Herbert", "Fiction", total=2, available=1, issued=1, id="b1")
    patron = Patron("Alice", issued_books=[_issued("b1")])
    assert find_violations([book], [patron]) == []
    assert_consistent([book], [patron])


def test_counter_violations():
    drifted = Book("Dune", "Frank Herbert", "Fiction", total=2, available=2, issued=1, id="b1")
    negative = Book("Emma", "Jane Austen", "Romance", total=1, available=-1, issued=2, id="b2")
    problems = counter_violations([drifted, negative])
    assert any("b1" in p and "!= total" in p for p in problems)
    assert any("b2" in p and "negative" in p for p in problems)


def test_holder_violations():
    book = Book("Dune", "Frank Herbert", "Fiction", total=2, available=1, issued=1, id="b1")
    assert holder_violations([book], []) == ["book b1: issued 1 but held by 0 patron(s)"]


def test_pending_and_holding_violations():
    book = Book("Dune", "Frank Herbert", "Fiction", total=2, id="b1")
    book.requests = [BookRequest("p1"), BookRequest("p1"), BookRequest("p2")]
    assert len(pending_violations([book])) == 1

    patron = Patron("Alice", issued_books=[_issued("b1"), _issued("b1")], id="p1")
    assert holding_violations([patron]) == ["patron p1: holds book b1 2 times"]


def test_assert_consistent_raises_with_every_problem():
    book = Book("Dune", "Frank Herbert", "Fiction", total=2, available=2, issued=1, id="b1")
    with pytest.raises(AssertionError) as excinfo:
        assert_consistent([book], [])
    assert "!= total" in str(excinfo.value)
    assert "held by 0" in str(excinfo.value)
