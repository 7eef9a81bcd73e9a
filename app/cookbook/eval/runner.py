import json
import time
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from cookbook.core.prometheus_metrics import record_outcome
from cookbook.services.exceptions import CatalogParseError, ConfigurationError, QueryError
from cookbook.services.query_client import QueryClient, QueryOptions

from .catalog_loader import topological_order
from .models import Example, Outcome, OutcomeStatus, ResultRow
from .result_validator import ResultValidator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERRORED = 2


class CookbookRunner:
    """
    Replays cookbook examples and records one Outcome per example.

    Examples run in dependency order. With ``concurrency > 1`` a pool of
    worker tasks pulls from a ready queue; an example is queued only once
    all of its setup examples have an outcome, so setup ordering holds
    regardless of pool size. A setup example that did not pass marks its
    dependents Errored without running them.

    Exceptions never escape ``run``: each one becomes an Errored outcome.
    A ConfigurationError (e.g. rejected credentials) aborts the run: calls
    in flight are cancelled and the remaining examples are recorded as
    Errored without being sent.
    """

    def __init__(
        self,
        client: QueryClient,
        *,
        concurrency: int = 1,
        validator: Optional[ResultValidator] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.client = client
        self.concurrency = concurrency
        self.validator = validator or ResultValidator()
        self.abort_reason: Optional[str] = None
        self._outcomes: dict[str, Outcome] = {}
        self._inflight: set[asyncio.Task] = set()

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    async def run(self, catalog: Sequence[Example]) -> list[Outcome]:
        """
        Execute every example once.

        Returns:
            Outcomes in dependency order (setup examples before dependents)
        """
        ordered = self._order(catalog)
        self._outcomes = {}
        self.abort_reason = None
        if not ordered:
            return []

        by_id = {example.id: example for example in ordered}
        waiting_on = {example.id: set(example.setup_examples) for example in ordered}
        dependents: dict[str, list[str]] = {example.id: [] for example in ordered}
        for example in ordered:
            for setup_id in example.setup_examples:
                dependents[setup_id].append(example.id)

        ready: asyncio.Queue = asyncio.Queue()
        for example in ordered:
            if not waiting_on[example.id]:
                ready.put_nowait(example)

        async def worker() -> None:
            while True:
                example = await ready.get()
                try:
                    try:
                        outcome = await self._run_one(example)
                    except Exception as e:
                        # the queue only drains if every example gets an outcome
                        logger.error(f"Runner failure on example {example.id}: {e!r}", exc_info=True)
                        outcome = Outcome(
                            example.id,
                            OutcomeStatus.ERRORED,
                            f"Runner error: {type(e).__name__}: {e}",
                        )
                    self._record(outcome)
                    for dependent_id in dependents[example.id]:
                        waiting_on[dependent_id].discard(example.id)
                        if not waiting_on[dependent_id]:
                            ready.put_nowait(by_id[dependent_id])
                finally:
                    ready.task_done()

        logger.info(f"Running {len(ordered)} example(s) with concurrency {self.concurrency}")
        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(ordered)))]
        try:
            await ready.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return [self._outcomes[example.id] for example in ordered]

    def _order(self, catalog: Sequence[Example]) -> list[Example]:
        ids = {example.id for example in catalog}
        if len(ids) != len(catalog):
            raise CatalogParseError("Catalog contains duplicate example ids")
        for example in catalog:
            unknown = [s for s in example.setup_examples if s not in ids]
            if unknown:
                raise CatalogParseError(
                    f"Example '{example.id}' depends on example(s) not in this run: {', '.join(unknown)}"
                )
        return topological_order(catalog)

    async def _run_one(self, example: Example) -> Outcome:
        """Execute and validate a single example."""
        if self.aborted:
            return Outcome(example.id, OutcomeStatus.ERRORED, f"Not run: {self.abort_reason}")

        blocked = [
            f"{setup_id} ({self._outcomes[setup_id].status.value})"
            for setup_id in example.setup_examples
            if not self._outcomes[setup_id].passed
        ]
        if blocked:
            return Outcome(
                example.id,
                OutcomeStatus.ERRORED,
                f"Not run: setup example(s) did not pass: {', '.join(blocked)}",
            )

        start = time.perf_counter()
        task = asyncio.create_task(self._execute(example))
        self._inflight.add(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight.discard(task)
        elapsed = time.perf_counter() - start

        if task.cancelled():
            return Outcome(
                example.id,
                OutcomeStatus.ERRORED,
                f"Cancelled: {self.abort_reason or 'run cancelled'}",
                elapsed,
            )

        error = task.exception()
        if error is None:
            rows = task.result()
            try:
                result = self.validator.validate(rows, example.expectation)
            except Exception as e:
                logger.error(f"Error validating example {example.id}: {e!r}")
                return Outcome(
                    example.id,
                    OutcomeStatus.ERRORED,
                    f"Validation error: {type(e).__name__}: {e}",
                    elapsed,
                    row_count=len(rows),
                )
            if result.ok:
                return Outcome(example.id, OutcomeStatus.PASSED, "ok", elapsed, row_count=len(rows))
            return Outcome(
                example.id,
                OutcomeStatus.FAILED,
                result.reasons[0],
                elapsed,
                reasons=list(result.reasons),
                row_count=len(rows),
            )

        if isinstance(error, ConfigurationError):
            self._abort(str(error))
            detail = f"Configuration error: {error}"
        elif isinstance(error, QueryError):
            detail = f"Query error {error.code}: {error.message}"
        else:
            logger.error(f"Error executing example {example.id}: {error!r}")
            detail = f"Execution error: {type(error).__name__}: {error}"
        return Outcome(example.id, OutcomeStatus.ERRORED, detail, elapsed)

    async def _execute(self, example: Example) -> list[ResultRow]:
        options = QueryOptions(
            scan_consistency=example.scan_consistency,
            timeout_s=example.timeout_s,
            query_context=example.query_context,
        )
        if not example.transactional:
            return await self.client.execute(example.statement, example.bind_variables, options)

        tx_options = QueryOptions(
            scan_consistency=example.scan_consistency,
            query_context=example.query_context,
        )
        async with self.client.transaction(tx_options) as handle:
            rows = await self.client.execute(
                example.statement,
                example.bind_variables,
                replace(options, transaction=handle),
            )
            if example.rollback:
                await self.client.rollback(handle)
        return rows

    def _abort(self, reason: str) -> None:
        if self.aborted:
            return
        self.abort_reason = reason
        logger.error(f"Aborting run: {reason}")
        for task in list(self._inflight):
            task.cancel()

    def _record(self, outcome: Outcome) -> None:
        self._outcomes[outcome.example_id] = outcome
        record_outcome(outcome.status.value)
        log_outcome(outcome)


def log_outcome(outcome: Outcome) -> None:
    """Log one outcome line, with reasons for failures."""
    if outcome.status is OutcomeStatus.PASSED:
        logger.info(
            f"✓ PASS {outcome.example_id} ({outcome.row_count} rows, {outcome.elapsed_s:.3f}s)",
            extra={"example_id": outcome.example_id, "status": outcome.status.value},
        )
    elif outcome.status is OutcomeStatus.FAILED:
        logger.error(
            f"✗ FAIL {outcome.example_id}",
            extra={"example_id": outcome.example_id, "status": outcome.status.value},
        )
        for reason in outcome.reasons:
            logger.error(f"  • {reason}")
    else:
        logger.error(
            f"! ERROR {outcome.example_id}: {outcome.detail}",
            extra={"example_id": outcome.example_id, "status": outcome.status.value},
        )


def summarize(outcomes: Sequence[Outcome]) -> dict[str, int]:
    counts = {status.value: 0 for status in OutcomeStatus}
    for outcome in outcomes:
        counts[outcome.status.value] += 1
    counts["Total"] = len(outcomes)
    return counts


def format_summary_table(outcomes: Sequence[Outcome]) -> str:
    """Plain-text table: one line per example, then totals."""
    id_width = max([len("EXAMPLE")] + [len(o.example_id) for o in outcomes])
    lines = [f"{'EXAMPLE':<{id_width}}  {'STATUS':<7}  {'TIME':>8}  DETAIL"]
    for outcome in outcomes:
        lines.append(
            f"{outcome.example_id:<{id_width}}  {outcome.status.value:<7}  "
            f"{outcome.elapsed_s:>7.3f}s  {outcome.detail}"
        )
    counts = summarize(outcomes)
    lines.append(
        f"Passed: {counts['Passed']}  Failed: {counts['Failed']}  "
        f"Errored: {counts['Errored']}  Total: {counts['Total']}"
    )
    return "\n".join(lines)


def exit_code_for(outcomes: Sequence[Outcome]) -> int:
    """0 if everything passed, 2 if anything errored, otherwise 1."""
    statuses = {outcome.status for outcome in outcomes}
    if OutcomeStatus.ERRORED in statuses:
        return EXIT_ERRORED
    if OutcomeStatus.FAILED in statuses:
        return EXIT_FAILED
    return EXIT_OK


def write_report(
    path: Union[str, Path],
    outcomes: Sequence[Outcome],
    *,
    catalog: str = "",
    metadata: Optional[dict[str, Any]] = None,
) -> Path:
    report_path = Path(path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report = {
        "catalog": catalog,
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "summary": summarize(outcomes),
        "outcomes": [outcome.to_dict() for outcome in outcomes],
        "metadata": dict(metadata or {}),
    }
    with report_path.open("w", encoding="utf-8") as handle:
        json.dump(report, handle, indent=2, sort_keys=True, default=str)
    return report_path
