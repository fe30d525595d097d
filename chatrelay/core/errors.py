from __future__ import annotations


class RelayError(Exception):
    """Base for errors reported back to the originating connection."""

    code = "INTERNAL"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class Unauthenticated(RelayError):
    code = "UNAUTHENTICATED"


class InvalidMessage(RelayError):
    code = "INVALID_MESSAGE"


class NotFound(RelayError):
    code = "NOT_FOUND"


class InvalidRequest(RelayError):
    code = "INVALID_REQUEST"


class UnknownType(RelayError):
    code = "UNKNOWN_TYPE"


class ConflictRetry(Exception):
    """A unique constraint rejected an insert; the caller should re-read."""

    def __init__(self, collection: str, detail: str = "") -> None:
        super().__init__(f"{collection}: {detail}" if detail else collection)
        self.collection = collection


class StoreUnavailable(Exception):
    """The storage collaborator could not be opened."""


__all__ = [
    "RelayError",
    "Unauthenticated",
    "InvalidMessage",
    "NotFound",
    "InvalidRequest",
    "UnknownType",
    "ConflictRetry",
    "StoreUnavailable",
]
