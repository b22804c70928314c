"""
Error taxonomy shared by the store facade, the mutator pipeline and the
controllers.

The ``retryable`` flag is what the scheduling layer uses to decide between a
rate-limited requeue and dropping the request until the next event.
"""


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvariantViolationError(ReconcileError):
    """The desired object violates a structural precondition."""


class TypeMismatchError(ReconcileError):
    """A pipeline or the store was handed an object of the wrong kind."""


class PipelineOrderError(ValueError):
    """A mutator requires something no earlier mutator provides."""


class StoreError(ReconcileError):
    """The object store rejected a request."""

    def __init__(self, message: str, status: int = 0):
        self.status = status
        super().__init__(message)


class NotFoundError(StoreError):
    """The requested object does not exist."""


class ConflictError(StoreError):
    """Stale resourceVersion on write, or the object was created concurrently."""

    retryable = True


class TransientStoreError(StoreError):
    """Network or availability failure talking to the API server."""

    retryable = True
