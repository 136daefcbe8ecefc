"""Typed failures raised by the catalog and circulation layers.

Each error carries a user-facing message and the HTTP status the API
renders it with, so routes never need to translate them by hand.
"""


class LibraryError(Exception):
    status_code = 400
    code = 'library_error'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class NotFoundError(LibraryError):
    status_code = 404
    code = 'not_found'


class ValidationError(LibraryError):
    status_code = 400
    code = 'validation_error'


class AlreadyBorrowedError(LibraryError):
    status_code = 409
    code = 'already_borrowed'


class AlreadyPendingError(LibraryError):
    status_code = 409
    code = 'already_pending'


class UnavailableError(LibraryError):
    status_code = 409
    code = 'unavailable'


class UnsupportedOperationError(LibraryError):
    status_code = 400
    code = 'unsupported_operation'


class InvalidStateError(LibraryError):
    status_code = 409
    code = 'invalid_state'


class ForbiddenError(LibraryError):
    status_code = 403
    code = 'forbidden'
