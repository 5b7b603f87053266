"""
Error taxonomy for the relay.

Store errors describe what went wrong talking to the database; service
errors describe what the caller (HTTP client or delivery queue) sees.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay operations."""

    retryable: bool = False

    def __init__(self, message: str = "", retryable: bool | None = None):
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  STORE
# ══════════════════════════════════════════════════════════════

class StorageUnavailable(RelayError):
    retryable = True


class StorageWriteError(RelayError):
    pass


class MessageNotFound(RelayError):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


# ══════════════════════════════════════════════════════════════
#  SERVICE
# ══════════════════════════════════════════════════════════════

class ValidationError(RelayError):
    """Client input is malformed. Carries every violation, not just the first."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


class PersistenceFailure(RelayError):
    retryable = True

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)


class DataIntegrityError(RelayError):
    """A delivery job references a message that no longer exists."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} referenced by job does not exist")


class QueueUnavailable(RelayError):
    retryable = True

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)
