from __future__ import annotations

import json
from typing import Dict, List, Optional

from lending.book import new_id


class IssuedBook:
    """A book currently lent to a patron, with display fields copied at issue time."""

    def __init__(self, book_id: str, title: str, issued_at: str, return_by: str,
                 cover: str | None = None, pdf: str | None = None,
                 rating: float | None = None, has_read: bool = False) -> None:
        self.book_id = book_id
        self.title = title
        self.cover = cover
        self.pdf = pdf
        self.rating = rating
        self.issued_at = issued_at
        self.return_by = return_by
        self.has_read = has_read

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "cover": self.cover,
            "pdf": self.pdf,
            "rating": self.rating,
            "issued_at": self.issued_at,
            "return_by": self.return_by,
            "has_read": self.has_read,
        }

    @staticmethod
    def from_dict(data: dict) -> "IssuedBook":
        return IssuedBook(
            book_id=data["book_id"],
            title=data["title"],
            cover=data.get("cover"),
            pdf=data.get("pdf"),
            rating=data.get("rating"),
            issued_at=data["issued_at"],
            return_by=data["return_by"],
            has_read=bool(data.get("has_read")),
        )


class Patron:
    """A borrowing user and the books they currently hold."""

    def __init__(self, name: str, is_admin: bool = False,
                 issued_books: List[IssuedBook] | None = None,
                 reading_progress: Dict[str, int] | str | None = None,
                 created_at: str | None = None, version: int = 1,
                 id: str | None = None) -> None:
        self.id = id or new_id()
        self.name = name.strip()
        self.is_admin = bool(is_admin)
        self.issued_books: List[IssuedBook] = list(issued_books or [])
        # SQLite keeps the progress map as a JSON string
        if isinstance(reading_progress, str):
            reading_progress = json.loads(reading_progress or "{}")
        self.reading_progress: Dict[str, int] = dict(reading_progress or {})
        self.created_at = created_at
        self.version = version

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} ({len(self.issued_books)} issued)"

    def holding(self, book_id: str) -> Optional[IssuedBook]:
        for issued in self.issued_books:
            if issued.book_id == book_id:
                return issued
        return None

    def holds(self, book_id: str) -> bool:
        return self.holding(book_id) is not None

    def release(self, book_id: str) -> Optional[IssuedBook]:
        """Remove and return the issued record for ``book_id``, if any."""
        issued = self.holding(book_id)
        if issued is not None:
            self.issued_books = [b for b in self.issued_books if b.book_id != book_id]
        return issued

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_admin": self.is_admin,
            "issued_books": [b.to_dict() for b in self.issued_books],
            "reading_progress": dict(self.reading_progress),
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Patron":
        return Patron(
            id=data["id"],
            name=data["name"],
            is_admin=bool(data.get("is_admin")),
            issued_books=[IssuedBook.from_dict(b) for b in data.get("issued_books") or []],
            reading_progress=data.get("reading_progress"),
            created_at=data.get("created_at"),
            version=data.get("version", 1),
        )
