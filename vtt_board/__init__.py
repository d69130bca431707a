"""Board state sync for a multiplayer virtual tabletop."""
from .errors import AuthorizationError, BoardStateError, PersistenceError, ValidationError
from .server import create_app

__all__ = [
    'AuthorizationError',
    'BoardStateError',
    'PersistenceError',
    'ValidationError',
    'create_app',
]
