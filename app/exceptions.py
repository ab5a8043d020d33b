"""Error taxonomy for link resolution, click ingestion and analytics.

Resolution outcomes (not found, forbidden, password required, unauthorized)
are normally returned as :class:`app.resolver.Resolution` values; the
exceptions below cover the cases that must interrupt the caller.

Hierarchy
=========
::
    URLShortenerError
    ├─ NotFoundError
    ├─ ForbiddenError            (carries a DenialReason)
    ├─ UnauthorizedError
    ├─ InvalidArgumentError      (also a ValueError)
    │   └─ InvalidCharacterError
    ├─ ConflictError             (also a ValueError)
    ├─ StorageError
    └─ EnrichmentError           (never leaves the ingestion worker)
"""

from app.enums import DenialReason

__all__ = [
    "URLShortenerError",
    "NotFoundError",
    "ForbiddenError",
    "UnauthorizedError",
    "InvalidArgumentError",
    "InvalidCharacterError",
    "ConflictError",
    "StorageError",
    "EnrichmentError",
]


class URLShortenerError(Exception):
    """Base class for all service errors."""


class NotFoundError(URLShortenerError):
    def __init__(self, resource: str, key: object) -> None:
        super().__init__(f"{resource} '{key}' not found")
        self.resource = resource
        self.key = key


class ForbiddenError(URLShortenerError):
    def __init__(self, reason: DenialReason) -> None:
        super().__init__(f"Link is not resolvable: {reason.value}")
        self.reason = reason


class UnauthorizedError(URLShortenerError):
    """Password mismatch. The message never reveals whether the code exists."""

    def __init__(self) -> None:
        super().__init__("Invalid short code or password")


class InvalidArgumentError(URLShortenerError, ValueError):
    pass


class InvalidCharacterError(InvalidArgumentError):
    def __init__(self, character: str) -> None:
        super().__init__(f"Invalid character '{character}' in encoded string")
        self.character = character


class ConflictError(URLShortenerError, ValueError):
    pass


class StorageError(URLShortenerError):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(message)
        self.operation = operation


class EnrichmentError(URLShortenerError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
