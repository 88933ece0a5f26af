"""
Error taxonomy for matching passes.

Every error carries the stage that failed and whether the caller may retry,
so the API can report enough detail for a retry decision. An empty candidate
pool is not an error; it is reported through MatchingOutcome.
"""


class MatchingError(Exception):
    """Base class for all matching failures."""

    stage: str = "matching"
    retryable: bool = False

    def __init__(self, message: str, stage: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        if retryable is not None:
            self.retryable = retryable


# Input errors: surfaced immediately, no partial work performed

class InvalidRequestError(MatchingError):
    stage = "input"


class RequestNotFoundError(MatchingError):
    stage = "input"


class MatchNotFoundError(MatchingError):
    stage = "input"


# External model errors: retryable, never retried inside the engine

class ModelCallError(MatchingError):
    stage = "ai_rerank"
    retryable = True


class ModelTimeoutError(ModelCallError):
    pass


class ModelUnavailableError(ModelCallError):
    """Circuit breaker is open for the model provider."""


class SchemaValidationError(ModelCallError):
    """Model output does not conform to the expected schema."""


# Persistence errors

class PersistenceError(MatchingError):
    stage = "persist"
    retryable = True


class MatchConflictError(PersistenceError):
    """A concurrent writer won the race for the same match or request."""

    retryable = False


class AtomicityError(PersistenceError):
    """The store could not apply an update atomically."""


class CursorConflictError(AtomicityError):
    """The rotation cursor moved between selection and commit."""
