from typing import Optional, Sequence, Union

from cookbook.core.retry import NonRetryableError, RetryableError


class CookbookError(Exception):
    """Base class for all cookbook runner errors."""


class CatalogParseError(CookbookError):
    """Raised when a catalog document or one of its entries is malformed."""


class DependencyCycleError(CatalogParseError):
    """Raised when setup examples reference each other in a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Setup dependency cycle: {' -> '.join(self.cycle)}")


class ConfigurationError(CookbookError, NonRetryableError):
    """Raised for failures no example can recover from (bad credentials, bad URL)."""


class QueryErrorCode:
    """Symbolic codes for failures that do not come with a server error code."""
    TRANSACTION_EXPIRED = "TransactionExpired"
    TRANSACTION_CLOSED = "TransactionClosed"
    TIMEOUT = "Timeout"
    TRANSPORT = "TransportError"
    HTTP = "HTTPError"
    PROTOCOL = "ProtocolError"


class QueryError(CookbookError):
    """Raised when the query service rejects or fails a statement."""

    def __init__(self, code: Union[int, str], message: str, *, status: Optional[str] = None):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(f"[{code}] {message}")


class TransientQueryError(QueryError, RetryableError):
    """A QueryError that may succeed when the request is sent again."""
