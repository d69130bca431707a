class BoardStateError(Exception):
    """Base error for board state requests; carries the HTTP status to answer with."""

    status_code = 500
    default_message = 'Failed to process board state.'

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self):
        return {'success': False, 'error': self.message}


class ValidationError(BoardStateError):
    status_code = 422
    default_message = 'Invalid board state payload.'


class AuthorizationError(BoardStateError):
    status_code = 403
    default_message = 'Not authorized'

    @classmethod
    def not_authenticated(cls):
        return cls('Not authenticated', status_code=401)


class PersistenceError(BoardStateError):
    status_code = 500
    default_message = 'Failed to persist board state.'


class BroadcastError(BoardStateError):
    """Raised by notifiers; always swallowed by the caller."""

    default_message = 'Failed to broadcast board state.'
