"""Error taxonomy shared by the stores, the ledger and the API layer.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API reports it with, so callers can tell the causes apart without
parsing messages.
"""


class LendingError(Exception):
    code = "lending_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class NotFound(LendingError, LookupError):
    """A referenced book, patron or request id does not exist."""

    code = "not_found"
    status_code = 404


class Conflict(LendingError):
    """The requested transition would violate a lending invariant."""

    code = "conflict"
    status_code = 409


class ValidationError(LendingError, ValueError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 422


class StorageFailure(LendingError):
    """The database is unavailable. Safe to retry."""

    code = "storage_failure"
    status_code = 503
    retryable = True


class PermissionDenied(LendingError):
    code = "forbidden"
    status_code = 403


class StaleEntityError(Exception):
    """Raised by a store when a versioned save lost a race.

    Internal to the ledger's retry loop; never reaches API callers.
    """

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} {entity_id} was modified concurrently")
        self.kind = kind
        self.entity_id = entity_id
