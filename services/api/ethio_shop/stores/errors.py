"""Error taxonomy shared by the backing-service stores.

Callers should catch:
- StoreUnavailableError: the store cannot serve right now (HTTP 503 class)
- QueryError: a statement failed on a healthy store (HTTP 500 class)
- TypeMismatchError: a counter operation hit a non-integer value
"""


class StoreError(RuntimeError):
    """Base class for every store failure."""


class StoreUnavailableError(StoreError):
    """The backing service cannot serve requests right now."""


class StoreConnectionError(StoreUnavailableError):
    """Initial connect (handshake + liveness probe) failed."""


class NotConnectedError(StoreUnavailableError):
    """Operation attempted while the store is not ready."""


class PoolExhaustedError(StoreUnavailableError):
    """No pooled connection became available within the acquire timeout."""


class TransportError(StoreUnavailableError):
    """Network fault in the middle of an operation."""


class QueryError(StoreError):
    """Statement execution failed.

    Attributes:
        statement: The statement text (never the bound parameter values).
        cause: The driver exception.
    """

    def __init__(self, statement: str, cause: BaseException) -> None:
        self.statement = statement
        self.cause = cause
        super().__init__(f"Query failed: {cause}")


class TypeMismatchError(StoreError):
    """Counter operation on a value that is not an integer."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Value at {key!r} is not an integer")
