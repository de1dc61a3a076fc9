from typing import Optional

from lending.book import CATEGORIES, RequestStatus
from lending.errors import ValidationError


class TextValidator:
    """Basic text validations for titles, authors and names."""

    @staticmethod
    def _is_non_empty_alpha(text: Optional[str]) -> bool:
        if text is None:
            return False
        t = text.strip()
        if not t:
            return False
        # reject purely numeric / punctuation-only values
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator._is_non_empty_alpha(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        return bool(name and name.strip())


class BookValidator:
    """Validates the fields of a new catalog entry, raising ValidationError."""

    @staticmethod
    def validate_category(category: Optional[str]) -> str:
        if category not in CATEGORIES:
            raise ValidationError(
                f"Unknown category {category!r}; expected one of: {', '.join(CATEGORIES)}"
            )
        return category

    @staticmethod
    def validate_rating(rating: Optional[float]) -> float:
        if rating is None:
            return 0
        try:
            value = float(rating)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Rating must be a number, got {rating!r}") from exc
        if not 0 <= value <= 5:
            raise ValidationError("Rating must be between 0 and 5")
        return value

    @staticmethod
    def validate_total(total: Optional[int]) -> int:
        if isinstance(total, bool) or not isinstance(total, int):
            raise ValidationError("Total copies must be an integer")
        if total < 1:
            raise ValidationError("Total copies must be at least 1")
        return total

    @staticmethod
    def validate_new_book(title: Optional[str], author: Optional[str], category: Optional[str],
                          total: Optional[int], rating: Optional[float]) -> None:
        if not TextValidator.validate_title(title):
            raise ValidationError("Title is required")
        if not TextValidator.validate_author(author):
            raise ValidationError("Author is required")
        BookValidator.validate_category(category)
        BookValidator.validate_total(total)
        BookValidator.validate_rating(rating)


def validate_resolution(status: Optional[str]) -> RequestStatus:
    """Only approved/rejected are valid outcomes for a pending request."""
    if status not in (RequestStatus.APPROVED.value, RequestStatus.REJECTED.value):
        raise ValidationError(f"Invalid status {status!r}; expected 'approved' or 'rejected'")
    return RequestStatus(status)


def validate_id(value: Optional[str], label: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def validate_position(position: Optional[int]) -> int:
    if isinstance(position, bool) or not isinstance(position, int) or position < 0:
        raise ValidationError("Reading position must be a non-negative integer")
    return position
