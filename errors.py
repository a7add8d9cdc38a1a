"""Error taxonomy for loan and copy operations.

Every error carries the HTTP status it maps to; ``main`` registers a single
handler for ``LibraryError`` that turns it into ``{"detail": message}``.
"""

from http import HTTPStatus


class LibraryError(Exception):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Malformed or missing input."""
    status_code = HTTPStatus.BAD_REQUEST


class NotFoundError(LibraryError):
    status_code = HTTPStatus.NOT_FOUND


class CopyUnavailableError(LibraryError):
    """The copy is not available at request time."""
    status_code = HTTPStatus.BAD_REQUEST


class ConflictError(LibraryError):
    """A guarded transition found its precondition no longer holds."""
    status_code = HTTPStatus.CONFLICT


class PermissionDenied(LibraryError):
    status_code = HTTPStatus.FORBIDDEN


class ReconciliationWarning(UserWarning):
    """The loan was updated but its copy could not be released.

    Returned next to the loan rather than raised, so it stays outside
    ``LibraryError`` and never reaches the error handler.
    """

    def __init__(self, message: str, copy_id: str, cause: LibraryError) -> None:
        super().__init__(message)
        self.message = message
        self.copy_id = copy_id
        self.cause = cause
