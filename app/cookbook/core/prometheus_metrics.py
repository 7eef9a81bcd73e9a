import time
import logging
from functools import wraps
from pathlib import Path
from typing import Optional, Union

from prometheus_client import Counter, Histogram, Info, generate_latest, write_to_textfile
from prometheus_client.core import CollectorRegistry

from cookbook import __version__

logger = logging.getLogger(__name__)

# Prometheus Registry
REGISTRY = CollectorRegistry()

# Query client metrics
query_requests_total = Counter(
    'cookbook_query_requests_total',
    'Total requests sent to the query service',
    ['status', 'statement'],
    registry=REGISTRY
)

query_duration_seconds = Histogram(
    'cookbook_query_duration_seconds',
    'Query round-trip duration in seconds',
    ['statement'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=REGISTRY
)

query_retries_total = Counter(
    'cookbook_query_retries_total',
    'Retries of transient query failures',
    registry=REGISTRY
)

# Runner metrics
example_outcomes_total = Counter(
    'cookbook_example_outcomes_total',
    'Example outcomes by status',
    ['status'],
    registry=REGISTRY
)

system_info = Info(
    'cookbook_runner',
    'Runner build information',
    registry=REGISTRY
)
system_info.info({'version': __version__})


def statement_kind(statement: str) -> str:
    """First keyword of a statement, used as a low-cardinality label."""
    words = statement.strip().split(None, 2)
    if not words:
        return "EMPTY"
    keyword = words[0].upper()
    if keyword in ("BEGIN", "START", "COMMIT", "ROLLBACK") and len(words) > 1:
        return f"{keyword} {words[1].upper()}"
    return keyword


def track_query(func):
    """
    Decorator timing an async query call whose first argument is the statement.

    Usage:
    @track_query
    async def _execute(self, statement, ...):
        ...
    """
    @wraps(func)
    async def wrapper(self, statement: str, *args, **kwargs):
        kind = statement_kind(statement)
        start_time = time.perf_counter()
        success = False
        try:
            result = await func(self, statement, *args, **kwargs)
            success = True
            return result
        finally:
            duration_seconds = time.perf_counter() - start_time
            query_requests_total.labels(
                status='success' if success else 'error',
                statement=kind
            ).inc()
            query_duration_seconds.labels(statement=kind).observe(duration_seconds)
            logger.debug(
                f"Query executed: {kind}",
                extra={
                    'statement_kind': kind,
                    'duration_ms': duration_seconds * 1000,
                    'success': success,
                }
            )
    return wrapper


def record_retry(attempt: int, error: BaseException) -> None:
    query_retries_total.inc()


def record_outcome(status: str) -> None:
    example_outcomes_total.labels(status=status).inc()


def get_prometheus_metrics() -> bytes:
    """Get Prometheus metrics in text format"""
    return generate_latest(REGISTRY)


def write_metrics_file(path: Union[str, Path], registry: Optional[CollectorRegistry] = None) -> None:
    """Write the registry in node-exporter textfile format."""
    write_to_textfile(str(path), registry or REGISTRY)
