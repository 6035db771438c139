"""
Exception classes for karafriends.

Exception Hierarchy:
    KarafriendsError (base)
        PersistenceError - session snapshot could not be written or read
        AcquisitionError - a media fetch failed
        CatalogUnavailableError - a catalog backend is not configured
"""


class KarafriendsError(Exception):
    """Base exception for all karafriends errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class PersistenceError(KarafriendsError):
    """Raised when the session snapshot cannot be written or restored."""


class AcquisitionError(KarafriendsError):
    """Raised by a fetcher when media cannot be acquired."""


class CatalogUnavailableError(KarafriendsError):
    """Raised when a request needs a catalog that has not been configured."""
