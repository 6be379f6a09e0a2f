# lockdown_scanner/exceptions.py
from typing import Any, Optional


class ScannerError(Exception):
    """Base class for every error raised by the scanning engine."""


class InvalidInput(ScannerError):
    """Malformed scan request or unparsable repository URL."""


class UpstreamServiceError(ScannerError):
    """An external dependency (source host, vulnerability database) failed.

    `partial` carries whatever was collected before the failure so callers
    can degrade instead of discarding work.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, partial: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.partial = partial


class HostUnreachableError(UpstreamServiceError):
    """The upstream host could not be reached at all."""


class RepositoryNotFound(ScannerError):
    """The source host does not know the repository, or hides it from us."""


class ParseError(ScannerError):
    """A single manifest or source file could not be parsed."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class PersistenceError(ScannerError):
    """The storage collaborator failed to read or write."""


class ScanCancelled(ScannerError):
    """The caller abandoned the scan before it finished."""
