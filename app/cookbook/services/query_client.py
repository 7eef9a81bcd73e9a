import time
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Optional

import httpx

from cookbook.core import environment
from cookbook.core.frozen import thaw
from cookbook.core.prometheus_metrics import record_retry, statement_kind, track_query
from cookbook.core.retry import RetryableError, async_retry
from cookbook.services.exceptions import (
    ConfigurationError,
    QueryError,
    QueryErrorCode,
    TransientQueryError,
)

logger = logging.getLogger(__name__)

READ_ONLY_KEYWORDS = frozenset({"SELECT", "WITH", "EXPLAIN", "INFER", "ADVISE"})
TRANSACTION_EXPIRED_SERVER_CODES = frozenset({17010})
RETRYABLE_HTTP_STATUS = frozenset({429, 503})
# Server-side timeout fires first; the client waits a little longer for the envelope
CLIENT_TIMEOUT_GRACE_S = 5.0


class ScanConsistency(str, Enum):
    UNBOUNDED = "not_bounded"
    REQUEST_PLUS = "request_plus"

    @classmethod
    def parse(cls, value: Any) -> "ScanConsistency":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        aliases = {
            "unbounded": cls.UNBOUNDED,
            "not_bounded": cls.UNBOUNDED,
            "requestplus": cls.REQUEST_PLUS,
            "request_plus": cls.REQUEST_PLUS,
        }
        if normalized not in aliases:
            raise ValueError(f"Unknown scan consistency '{value}'")
        return aliases[normalized]


@dataclass
class TransactionHandle:
    """Open server-side transaction. Never share one across concurrent examples."""
    txid: str
    timeout_s: float
    deadline: float
    closed: bool = False

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass(frozen=True)
class QueryOptions:
    scan_consistency: ScanConsistency = ScanConsistency.UNBOUNDED
    transaction: Optional[TransactionHandle] = None
    timeout_s: Optional[float] = None
    query_context: Optional[str] = None
    read_only: Optional[bool] = None  # None: inferred from the statement keyword


@dataclass(frozen=True)
class QueryMetrics:
    elapsed_time: str = ""
    execution_time: str = ""
    result_count: int = 0
    mutation_count: int = 0
    error_count: int = 0

    @classmethod
    def from_envelope(cls, metrics: Optional[Mapping[str, Any]]) -> "QueryMetrics":
        metrics = metrics or {}
        return cls(
            elapsed_time=str(metrics.get("elapsedTime", "")),
            execution_time=str(metrics.get("executionTime", "")),
            result_count=int(metrics.get("resultCount", 0)),
            mutation_count=int(metrics.get("mutationCount", 0)),
            error_count=int(metrics.get("errorCount", 0)),
        )


@dataclass
class QueryResponse:
    rows: list[dict[str, Any]]
    metrics: QueryMetrics
    status: str = "success"
    request_id: Optional[str] = None


@dataclass
class QueryClientConfig:
    """Configuration for the query service client"""
    url: str
    username: str
    password: str
    timeout_s: float = 75.0
    max_retries: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 5.0
    transaction_timeout_s: float = 15.0
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_environment(cls, **overrides: Any) -> "QueryClientConfig":
        username, password = environment.get_credentials()
        values: dict[str, Any] = {
            "url": environment.get_query_url(),
            "username": username,
            "password": password,
            "timeout_s": environment.get_query_timeout(),
            "max_retries": environment.get_max_retries(),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def is_read_only(statement: str) -> bool:
    return statement_kind(statement) in READ_ONLY_KEYWORDS


def format_duration(seconds: float) -> str:
    """Couchbase duration string, e.g. 75.0 -> '75000ms'."""
    return f"{max(int(seconds * 1000), 1)}ms"


class QueryClient:
    """
    Async client for the Couchbase Query REST service.

    Sends one SQL++ statement per HTTP request with named parameters and
    returns the ``results`` array of the response envelope. Transient
    failures are retried with exponential backoff; everything else surfaces
    as :class:`QueryError` (or :class:`ConfigurationError` for credential
    problems, which no retry or later example can fix).

    Mutating statements are not idempotent. A read timeout on a mutation is
    reported instead of retried, since the server may already have applied it.
    """

    def __init__(
        self,
        config: QueryClientConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._http = httpx.AsyncClient(
            auth=(config.username, config.password),
            headers=config.headers,
            timeout=config.timeout_s + CLIENT_TIMEOUT_GRACE_S,
            transport=transport,
        )
        self._post = async_retry(
            max_attempts=config.max_retries + 1,
            base_delay=config.base_delay_s,
            max_delay=config.max_delay_s,
            retry_on=(RetryableError,),
            on_retry=record_retry,
        )(self._post_once)

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # Statements

    async def execute(
        self,
        statement: str,
        bind_variables: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> list[dict[str, Any]]:
        """Run one statement and return its result rows."""
        response = await self.execute_with_metadata(statement, bind_variables, options)
        return response.rows

    async def execute_with_metadata(
        self,
        statement: str,
        bind_variables: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> QueryResponse:
        """Run one statement and return rows plus the server's metrics envelope."""
        if not statement or not statement.strip():
            raise QueryError(QueryErrorCode.PROTOCOL, "Statement text is empty")
        return await self._run(statement, bind_variables, options or QueryOptions())

    # Transactions

    async def begin_transaction(self, options: Optional[QueryOptions] = None) -> TransactionHandle:
        """Start a transaction; statements run with the handle stay provisional until commit."""
        options = options or QueryOptions(scan_consistency=ScanConsistency.REQUEST_PLUS)
        if options.transaction is not None:
            raise QueryError(QueryErrorCode.PROTOCOL, "Nested transactions are not supported")
        tx_timeout_s = options.timeout_s or self.config.transaction_timeout_s

        response = await self._run(
            "BEGIN WORK",
            None,
            QueryOptions(
                scan_consistency=options.scan_consistency,
                query_context=options.query_context,
                read_only=False,
            ),
            extra={"txtimeout": format_duration(tx_timeout_s)},
        )
        txid = None
        if response.rows and isinstance(response.rows[0], dict):
            txid = response.rows[0].get("txid")
        if not txid:
            raise QueryError(QueryErrorCode.PROTOCOL, "BEGIN WORK response carried no txid")

        logger.info(f"Transaction {txid} started (timeout {tx_timeout_s:.1f}s)")
        return TransactionHandle(
            txid=txid,
            timeout_s=tx_timeout_s,
            deadline=time.monotonic() + tx_timeout_s,
        )

    async def commit(self, handle: TransactionHandle) -> None:
        """Make every statement issued with the handle durable, all or nothing."""
        self._check_open(handle)
        try:
            await self._run("COMMIT WORK", None, QueryOptions(transaction=handle, read_only=False))
        finally:
            handle.closed = True
        logger.info(f"Transaction {handle.txid} committed")

    async def rollback(self, handle: TransactionHandle) -> None:
        """Discard the transaction. Rolling back a closed or expired handle is a no-op."""
        if handle.closed:
            return
        if handle.expired():
            handle.closed = True
            logger.info(f"Transaction {handle.txid} already expired; store rolled it back")
            return
        try:
            await self._run("ROLLBACK WORK", None, QueryOptions(transaction=handle, read_only=False))
        finally:
            handle.closed = True
        logger.info(f"Transaction {handle.txid} rolled back")

    @asynccontextmanager
    async def transaction(self, options: Optional[QueryOptions] = None) -> AsyncIterator[TransactionHandle]:
        """
        Commit on normal exit unless the body already closed the handle;
        roll back when the body raises. A cancelled body leaves the
        transaction to expire on the server.
        """
        handle = await self.begin_transaction(options)
        try:
            yield handle
        except Exception:
            try:
                await self.rollback(handle)
            except QueryError as e:
                logger.warning(f"Rollback of {handle.txid} failed: {e}")
            raise
        else:
            if not handle.closed:
                await self.commit(handle)

    # Internals

    @track_query
    async def _run(
        self,
        statement: str,
        bind_variables: Optional[Mapping[str, Any]],
        options: QueryOptions,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> QueryResponse:
        handle = options.transaction
        timeout_s = options.timeout_s or self.config.timeout_s
        if handle is not None:
            self._check_open(handle)
            timeout_s = min(timeout_s, handle.remaining())

        body = self._build_body(statement, bind_variables, options, timeout_s)
        if extra:
            body.update(extra)
        read_only = options.read_only if options.read_only is not None else is_read_only(statement)

        try:
            envelope = await self._post(body, timeout_s=timeout_s, read_only=read_only)
        except QueryError as e:
            if handle is not None and e.code == QueryErrorCode.TRANSACTION_EXPIRED:
                handle.closed = True
            raise

        results = envelope.get("results")
        if results is None:
            results = []
        if not isinstance(results, list):
            raise QueryError(QueryErrorCode.PROTOCOL, "Response 'results' is not an array")

        return QueryResponse(
            rows=[row if isinstance(row, dict) else {"$1": row} for row in results],
            metrics=QueryMetrics.from_envelope(envelope.get("metrics")),
            status=str(envelope.get("status", "success")),
            request_id=envelope.get("requestID"),
        )

    def _build_body(
        self,
        statement: str,
        bind_variables: Optional[Mapping[str, Any]],
        options: QueryOptions,
        timeout_s: float,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "statement": statement,
            "scan_consistency": options.scan_consistency.value,
            "timeout": format_duration(timeout_s),
        }
        for name, value in (bind_variables or {}).items():
            body[name if name.startswith("$") else f"${name}"] = thaw(value)
        if options.query_context:
            body["query_context"] = options.query_context
        if options.transaction is not None:
            body["txid"] = options.transaction.txid
        return body

    def _check_open(self, handle: TransactionHandle) -> None:
        if handle.closed:
            raise QueryError(
                QueryErrorCode.TRANSACTION_CLOSED,
                f"Transaction {handle.txid} is already committed or rolled back",
            )
        if handle.expired():
            handle.closed = True
            raise QueryError(
                QueryErrorCode.TRANSACTION_EXPIRED,
                f"Transaction {handle.txid} exceeded its {handle.timeout_s:.1f}s timeout "
                "and was rolled back by the store",
            )

    async def _post_once(self, body: dict[str, Any], *, timeout_s: float, read_only: bool) -> dict[str, Any]:
        """One HTTP round trip. Raises TransientQueryError for failures worth retrying."""
        try:
            response = await self._http.post(
                self.config.url,
                json=body,
                timeout=timeout_s + CLIENT_TIMEOUT_GRACE_S,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # request never reached the server
            raise TransientQueryError(
                QueryErrorCode.TRANSPORT, f"Query service unreachable: {e}"
            ) from e
        except httpx.TimeoutException as e:
            if read_only:
                raise TransientQueryError(QueryErrorCode.TIMEOUT, f"Request timed out: {e}") from e
            raise QueryError(
                QueryErrorCode.TIMEOUT,
                f"Mutation timed out and may have been applied: {e}",
            ) from e
        except httpx.TransportError as e:
            if read_only:
                raise TransientQueryError(QueryErrorCode.TRANSPORT, f"Transport failure: {e}") from e
            raise QueryError(QueryErrorCode.TRANSPORT, f"Transport failure during mutation: {e}") from e

        if response.status_code in (401, 403):
            raise ConfigurationError(
                f"Query service rejected the credentials for user "
                f"'{self.config.username}' (HTTP {response.status_code})"
            )
        if response.status_code in RETRYABLE_HTTP_STATUS:
            raise TransientQueryError(
                QueryErrorCode.HTTP, f"Query service busy (HTTP {response.status_code})"
            )

        try:
            envelope = response.json()
        except ValueError as e:
            if response.is_error:
                raise QueryError(
                    QueryErrorCode.HTTP,
                    f"HTTP {response.status_code}: {response.text[:200]}",
                ) from e
            raise QueryError(QueryErrorCode.PROTOCOL, "Response body is not JSON") from e
        if not isinstance(envelope, dict):
            raise QueryError(QueryErrorCode.PROTOCOL, "Response envelope is not an object")

        errors = envelope.get("errors") or []
        if not isinstance(errors, list):
            raise QueryError(QueryErrorCode.PROTOCOL, "Response 'errors' is not an array")
        if errors:
            raise self._error_from_envelope(envelope, read_only)
        if response.is_error:
            raise QueryError(QueryErrorCode.HTTP, f"HTTP {response.status_code} without error details")
        return envelope

    def _error_from_envelope(self, envelope: Mapping[str, Any], read_only: bool) -> QueryError:
        status = str(envelope.get("status", "errors"))
        first = envelope["errors"][0]
        if not isinstance(first, Mapping):
            return QueryError(QueryErrorCode.PROTOCOL, str(first), status=status)

        code = first.get("code", QueryErrorCode.PROTOCOL)
        message = str(first.get("msg") or first.get("message") or "unknown error")
        lowered = message.lower()
        if code in TRANSACTION_EXPIRED_SERVER_CODES or ("transaction" in lowered and "expired" in lowered):
            return QueryError(QueryErrorCode.TRANSACTION_EXPIRED, message, status=status)

        retry_flagged = first.get("retry") is True
        if retry_flagged and (read_only or status != "timeout"):
            return TransientQueryError(code, message, status=status)
        return QueryError(code, message, status=status)
