from __future__ import annotations

import uuid
from enum import Enum
from typing import List, Optional


CATEGORIES = (
    "Fiction",
    "Non-Fiction",
    "Science",
    "History",
    "Romance",
    "Mystery",
    "Fantasy",
    "Biography",
    "Self-Help",
    "Technology",
)


class RequestStatus(str, Enum):
    """Lifecycle of a lending request: pending -> approved | rejected."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def new_id() -> str:
    return uuid.uuid4().hex


class BookRequest:
    """A patron's ask to borrow one catalog entry. Owned by its Book."""

    def __init__(self, patron_id: str, patron_name: str | None = None,
                 status: RequestStatus | str = RequestStatus.PENDING,
                 requested_at: str | None = None, resolved_at: str | None = None,
                 id: str | None = None) -> None:
        self.id = id or new_id()
        self.patron_id = patron_id
        self.patron_name = patron_name
        self.status = RequestStatus(status)
        self.requested_at = requested_at
        self.resolved_at = resolved_at

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "patron_name": self.patron_name,
            "status": self.status.value,
            "requested_at": self.requested_at,
            "resolved_at": self.resolved_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "BookRequest":
        return BookRequest(
            id=data["id"],
            patron_id=data["patron_id"],
            patron_name=data.get("patron_name"),
            status=data.get("status", RequestStatus.PENDING.value),
            requested_at=data.get("requested_at"),
            resolved_at=data.get("resolved_at"),
        )


class Book:
    """One catalog entry: a title, its copy inventory and its lending requests."""

    def __init__(self, title: str, author: str, category: str, total: int,
                 available: int | None = None, issued: int = 0,
                 cover: str | None = None, pdf: str | None = None,
                 rating: float = 0, read_count: int = 0,
                 requests: List[BookRequest] | None = None,
                 created_at: str | None = None, version: int = 1,
                 id: str | None = None) -> None:
        self.id = id or new_id()
        self.title = title.strip()
        self.author = author.strip()
        self.category = category
        self.total = total
        self.available = total if available is None else available
        self.issued = issued
        self.cover = cover
        self.pdf = pdf
        self.rating = rating
        self.read_count = read_count
        self.requests: List[BookRequest] = list(requests or [])
        self.created_at = created_at
        self.version = version

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available}/{self.total} available)"

    # ------------------------- Requests ------------------------- #
    def find_request(self, request_id: str) -> Optional[BookRequest]:
        for request in self.requests:
            if request.id == request_id:
                return request
        return None

    def pending_request_for(self, patron_id: str) -> Optional[BookRequest]:
        for request in self.requests:
            if request.patron_id == patron_id and request.is_pending:
                return request
        return None

    def pending_requests(self) -> List[BookRequest]:
        return [r for r in self.requests if r.is_pending]

    def drop_approved_requests(self, patron_id: str) -> int:
        """Remove approved requests of one patron. Returns how many were removed."""
        kept = [
            r for r in self.requests
            if not (r.patron_id == patron_id and r.status is RequestStatus.APPROVED)
        ]
        removed = len(self.requests) - len(kept)
        self.requests = kept
        return removed

    # ------------------------- Inventory ------------------------- #
    def check_out(self) -> None:
        self.available -= 1
        self.issued += 1

    def check_in(self) -> None:
        self.available += 1
        # Tolerates counters that drifted before this return.
        self.issued = max(0, self.issued - 1)

    def snapshot(self) -> dict:
        """Display fields copied onto a patron's issued-book record."""
        return {"title": self.title, "cover": self.cover, "pdf": self.pdf, "rating": self.rating}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "cover": self.cover,
            "pdf": self.pdf,
            "rating": self.rating,
            "read_count": self.read_count,
            "total": self.total,
            "available": self.available,
            "issued": self.issued,
            "requests": [r.to_dict() for r in self.requests],
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data["category"],
            total=data["total"],
            available=data.get("available"),
            issued=data.get("issued", 0),
            cover=data.get("cover"),
            pdf=data.get("pdf"),
            rating=data.get("rating") or 0,
            read_count=data.get("read_count") or 0,
            requests=[BookRequest.from_dict(r) for r in data.get("requests") or []],
            created_at=data.get("created_at"),
            version=data.get("version", 1),
        )
