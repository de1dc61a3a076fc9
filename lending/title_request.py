from __future__ import annotations

from lending.book import RequestStatus, new_id


class TitleRequest:
    """A patron's ask for the library to acquire a title it does not hold yet."""

    def __init__(self, patron_id: str, title: str, author: str,
                 description: str | None = None, patron_name: str | None = None,
                 status: RequestStatus | str = RequestStatus.PENDING,
                 requested_at: str | None = None, resolved_at: str | None = None,
                 version: int = 1, id: str | None = None) -> None:
        self.id = id or new_id()
        self.patron_id = patron_id
        self.patron_name = patron_name
        self.title = title.strip()
        self.author = author.strip()
        self.description = description.strip() if description else None
        self.status = RequestStatus(status)
        self.requested_at = requested_at
        self.resolved_at = resolved_at
        self.version = version

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.status.value})"

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "patron_name": self.patron_name,
            "title": self.title,
            "author": self.author,
            "description": self.description,
            "status": self.status.value,
            "requested_at": self.requested_at,
            "resolved_at": self.resolved_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "TitleRequest":
        return TitleRequest(
            id=data["id"],
            patron_id=data["patron_id"],
            patron_name=data.get("patron_name"),
            title=data["title"],
            author=data["author"],
            description=data.get("description"),
            status=data.get("status", RequestStatus.PENDING.value),
            requested_at=data.get("requested_at"),
            resolved_at=data.get("resolved_at"),
            version=data.get("version", 1),
        )
