"""Error kinds raised by the upload services and their HTTP mapping."""
from enum import Enum
from typing import Iterable, Optional

from fastapi import status


class ErrorKind(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    INCOMPLETE_UPLOAD = "INCOMPLETE_UPLOAD"
    IO_FAILURE = "IO_FAILURE"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INCOMPLETE_UPLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.IO_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.DEPENDENCY_UNAVAILABLE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class UploadError(Exception):
    """Base class for every error the upload subsystem reports to clients."""

    kind: ErrorKind = ErrorKind.IO_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(UploadError):
    """Missing or malformed headers, or a missing file field."""

    kind = ErrorKind.INVALID_INPUT


class IncompleteUploadError(UploadError):
    """
    The session's chunk set does not equal {1..total_chunks}.
    Nothing is touched; the client should query status and resume.
    """

    kind = ErrorKind.INCOMPLETE_UPLOAD

    def __init__(self, missing: Iterable[int], unexpected: Optional[Iterable[int]] = None):
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected or [])
        message = "Not all chunks have been uploaded"
        if self.missing:
            message += f"; missing: {self.missing}"
        if self.unexpected:
            message += f"; unexpected: {self.unexpected}"
        super().__init__(message)


class StorageIOError(UploadError):
    """Blob write/read/copy failure."""

    kind = ErrorKind.IO_FAILURE


class DependencyUnavailableError(UploadError):
    """The chunk index (Redis) could not be reached."""

    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
