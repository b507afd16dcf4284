"""Custom exception hierarchy for ThreadRank."""


class ThreadRankError(Exception):
    """Base exception for all ThreadRank errors."""

    def __init__(self, message: str = "An error occurred in ThreadRank"):
        self.message = message
        super().__init__(self.message)


class VoteError(ThreadRankError):
    """Base exception for vote-related errors."""

    def __init__(self, message: str = "A vote error occurred"):
        super().__init__(message)


class InvalidVoteValue(VoteError):
    """Vote value outside {-1, 0, +1}. Programmer error, never persisted."""

    def __init__(self, value=None, message: str = ""):
        self.value = value
        super().__init__(message or f"Invalid vote value: {value!r}")


class CommentError(ThreadRankError):
    """Base exception for comment-related errors."""

    def __init__(self, message: str = "A comment error occurred"):
        super().__init__(message)


class MaxDepthExceeded(CommentError):
    """Reply would nest deeper than the allowed comment depth."""

    def __init__(self, message: str = "Maximum comment nesting depth reached"):
        super().__init__(message)


class InvalidCommentError(CommentError):
    """Comment content or references are invalid."""

    def __init__(self, message: str = "Comment is invalid"):
        super().__init__(message)


class PersistenceFailure(ThreadRankError):
    """Base exception for transient store failures. Triggers rollback."""

    def __init__(self, message: str = "Persistence call failed"):
        super().__init__(message)


class StoreUnavailableError(PersistenceFailure):
    """Store could not be reached."""

    def __init__(self, message: str = "Store is unavailable"):
        super().__init__(message)


class StoreRateLimitError(PersistenceFailure):
    """HTTP 429 - Store rate limit exceeded."""

    def __init__(self, message: str = "Store rate limit exceeded"):
        super().__init__(message)


class StoreRequestError(PersistenceFailure):
    """Store rejected the request."""

    def __init__(self, message: str = "Store rejected the request", status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class DatabaseError(PersistenceFailure):
    """Local database operation failed."""

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message)


class DuplicateMutationRejected(ThreadRankError):
    """A mutation is already pending or cooling down for the target."""

    def __init__(self, target_id: str = "", message: str = ""):
        self.target_id = target_id
        super().__init__(message or f"Mutation already in progress for {target_id}")


class DataError(ThreadRankError):
    """Base exception for data-related errors."""

    def __init__(self, message: str = "A data error occurred"):
        super().__init__(message)


class ConfigError(DataError):
    """Configuration is invalid or missing."""

    def __init__(self, message: str = "Configuration error"):
        super().__init__(message)
