"""
Pytest configuration and shared fixtures for the cookbook runner test suite.

This module provides:
- Query client fixtures backed by httpx.MockTransport (no server needed)
- A scriptable in-memory stand-in for QueryClient used by runner tests
- Example factories
"""

import json
import asyncio
import itertools
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import httpx
import pytest

from cookbook.core.frozen import freeze
from cookbook.eval.models import Example, Expectation
from cookbook.services.exceptions import QueryError
from cookbook.services.query_client import (
    QueryClient,
    QueryClientConfig,
    QueryOptions,
    TransactionHandle,
)

QUERY_URL = "http://couchbase.test:8093/query/service"


def make_example(
    example_id: str,
    statement: Optional[str] = None,
    *,
    setup: tuple[str, ...] = (),
    expectation: Optional[Expectation] = None,
    **kwargs: Any,
) -> Example:
    """Build an Example; the statement defaults to one naming the id."""
    return Example(
        id=example_id,
        statement=statement or f"SELECT '{example_id}' AS id",
        setup_examples=tuple(setup),
        expectation=expectation or Expectation(),
        **kwargs,
    )


def envelope(results=None, *, errors=None, status=None, **metrics) -> dict:
    """Couchbase query service response body."""
    body = {
        "requestID": "5f1c4a8e-0000-4000-8000-000000000001",
        "results": results if results is not None else [],
        "status": status or ("errors" if errors else "success"),
        "metrics": {
            "elapsedTime": "1.5ms",
            "executionTime": "1.2ms",
            "resultCount": len(results or []),
            "resultSize": 0,
            **metrics,
        },
    }
    if errors:
        body["errors"] = errors
        body["metrics"]["errorCount"] = len(errors)
    return body


@pytest.fixture
def query_config() -> QueryClientConfig:
    """Client config with instant backoff so retry tests don't sleep."""
    return QueryClientConfig(
        url=QUERY_URL,
        username="Administrator",
        password="password",
        timeout_s=10.0,
        max_retries=2,
        base_delay_s=0.0,
        max_delay_s=0.0,
        transaction_timeout_s=15.0,
    )


@pytest.fixture
def make_client(query_config):
    """
    Factory: make_client(handler) -> QueryClient talking to a MockTransport.

    ``handler(request, body)`` receives the httpx request and its decoded
    JSON body and returns an httpx.Response (or raises an httpx error).
    Every decoded body is appended to ``client.sent`` for assertions.
    """
    clients = []

    def factory(handler: Callable[[httpx.Request, dict], httpx.Response], **overrides) -> QueryClient:
        sent: list[dict] = []

        def transport_handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            sent.append(body)
            return handler(request, body)

        config = query_config
        if overrides:
            config = QueryClientConfig(**{**query_config.__dict__, **overrides})
        client = QueryClient(config, transport=httpx.MockTransport(transport_handler))
        client.sent = sent
        clients.append(client)
        return client

    return factory


class StubQueryClient:
    """
    In-memory QueryClient replacement for runner tests.

    ``responses`` maps statement text to a list of rows, an exception
    instance to raise, or a callable returning either. ``delays`` maps
    statement text to seconds to sleep before answering.
    """

    def __init__(self, responses: Optional[dict[str, Any]] = None, delays: Optional[dict[str, float]] = None):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.started: dict[str, float] = {}
        self.finished: dict[str, float] = {}
        self.transactions: list[TransactionHandle] = []
        self.committed: list[str] = []
        self.rolled_back: list[str] = []
        self._txids = itertools.count(1)

    async def execute(self, statement, bind_variables=None, options: Optional[QueryOptions] = None):
        loop = asyncio.get_running_loop()
        self.calls.append(statement)
        self.started[statement] = loop.time()
        try:
            await asyncio.sleep(self.delays.get(statement, 0))
            response = self.responses.get(statement, [])
            if callable(response):
                response = response(bind_variables, options)
            if isinstance(response, BaseException):
                raise response
            return [dict(row) for row in response]
        finally:
            self.finished[statement] = loop.time()

    async def begin_transaction(self, options=None) -> TransactionHandle:
        handle = TransactionHandle(txid=f"tx-{next(self._txids)}", timeout_s=15.0, deadline=float("inf"))
        self.transactions.append(handle)
        return handle

    async def commit(self, handle: TransactionHandle) -> None:
        if handle.closed:
            raise QueryError("TransactionClosed", "closed")
        handle.closed = True
        self.committed.append(handle.txid)

    async def rollback(self, handle: TransactionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self.rolled_back.append(handle.txid)

    @asynccontextmanager
    async def transaction(self, options=None):
        handle = await self.begin_transaction(options)
        try:
            yield handle
        except Exception:
            await self.rollback(handle)
            raise
        else:
            if not handle.closed:
                await self.commit(handle)

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def stub_client() -> StubQueryClient:
    return StubQueryClient()


@pytest.fixture
def frozen_predicates():
    """Helper turning plain predicate dicts into the read-only form the loader produces."""
    def build(predicates: dict):
        return freeze(predicates)
    return build
