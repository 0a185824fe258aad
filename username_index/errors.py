"""Exception hierarchy for the username existence index."""

class UsernameIndexError(Exception):
    """Base exception for all username index errors."""

class NotReadyError(UsernameIndexError):
    """Raised when the index is queried before initialize() completed."""

class StoreUnavailableError(UsernameIndexError):
    """Raised when the authoritative store failed or timed out."""

class InvalidUsernameError(UsernameIndexError, ValueError):
    """Raised for empty, non-string or oversized usernames."""

class UsernameTakenError(UsernameIndexError):
    """Raised when the store rejects a username that already exists."""

class UserNotFoundError(UsernameIndexError):
    """Raised when an update targets a user id the store does not hold."""
