import fnmatch
import heapq
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, Union

import yaml
from pydantic import ValidationError

from cookbook.core.frozen import freeze
from cookbook.schemas.catalog import CatalogSchema, ExampleSchema, ExpectationSchema
from cookbook.services.exceptions import CatalogParseError, DependencyCycleError
from cookbook.services.query_client import ScanConsistency

from .models import Example, Expectation, OrderSpec, RowMode

logger = logging.getLogger(__name__)

CatalogSource = Union[str, Path, Mapping[str, Any], Sequence[Mapping[str, Any]]]

YAML_SUFFIXES = {".yaml", ".yml"}


class CatalogLoader:
    """Loads cookbook examples and orders them so setup examples run first."""

    def load(self, source: CatalogSource) -> list[Example]:
        """
        Parse a catalog and return its examples in dependency order.

        ``source`` is a path to a JSON or YAML document, a parsed mapping
        with an ``examples`` list, or a bare list of example entries.

        Raises:
            CatalogParseError: malformed document or entry (missing statement,
                duplicate id, unknown or self-referential setup example)
            DependencyCycleError: setup examples form a cycle
        """
        payload = self._read(source)
        catalog = self._validate(payload)
        examples = [self._build_example(entry, catalog) for entry in catalog.examples]
        self._check_references(examples)
        ordered = topological_order(examples)
        logger.info(f"Loaded catalog '{catalog.name}' with {len(ordered)} example(s)")
        return ordered

    def select(self, examples: Sequence[Example], pattern: str) -> list[Example]:
        """
        Keep examples whose id matches a glob pattern (comma-separated for several),
        plus every setup example they transitively depend on.
        """
        patterns = [part.strip() for part in pattern.split(",") if part.strip()]
        by_id = {example.id: example for example in examples}
        wanted: set[str] = set()
        stack = [
            example.id for example in examples
            if any(fnmatch.fnmatchcase(example.id, p) for p in patterns)
        ]
        while stack:
            example_id = stack.pop()
            if example_id in wanted:
                continue
            wanted.add(example_id)
            stack.extend(by_id[example_id].setup_examples)
        return [example for example in examples if example.id in wanted]

    def _read(self, source: CatalogSource) -> Any:
        if not isinstance(source, (str, Path)):
            return source

        path = Path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise CatalogParseError(f"Cannot read catalog {path}: {e}") from e
        try:
            if path.suffix.lower() in YAML_SUFFIXES:
                return yaml.safe_load(text)
            return json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise CatalogParseError(f"Catalog {path} is not valid {path.suffix.lstrip('.') or 'JSON'}: {e}") from e

    def _validate(self, payload: Any) -> CatalogSchema:
        if isinstance(payload, list):
            payload = {"examples": payload}
        if not isinstance(payload, Mapping):
            raise CatalogParseError("Catalog root must be a mapping or a list of examples")
        try:
            return CatalogSchema.model_validate(payload)
        except ValidationError as e:
            raise CatalogParseError(_format_validation_error(e)) from e

    def _build_example(self, entry: ExampleSchema, catalog: CatalogSchema) -> Example:
        if not entry.statement.strip():
            raise CatalogParseError(f"Example '{entry.id}' has no statement text")

        defaults = catalog.defaults
        return Example(
            id=entry.id,
            statement=entry.statement.strip(),
            bind_variables=freeze(entry.bind_variables),
            expectation=_build_expectation(entry.expectation),
            setup_examples=tuple(entry.setup_examples),
            description=entry.description,
            scan_consistency=(
                entry.scan_consistency or defaults.scan_consistency or ScanConsistency.UNBOUNDED
            ),
            timeout_s=entry.timeout_s or defaults.timeout_s,
            query_context=entry.query_context or defaults.query_context,
            transactional=entry.transactional,
            rollback=entry.rollback,
            tags=tuple(entry.tags),
        )

    def _check_references(self, examples: Sequence[Example]) -> None:
        seen: set[str] = set()
        for example in examples:
            if example.id in seen:
                raise CatalogParseError(f"Duplicate example id '{example.id}'")
            seen.add(example.id)

        for example in examples:
            for setup_id in example.setup_examples:
                if setup_id == example.id:
                    raise CatalogParseError(f"Example '{example.id}' lists itself as a setup example")
                if setup_id not in seen:
                    raise CatalogParseError(
                        f"Example '{example.id}' depends on unknown setup example '{setup_id}'"
                    )


def topological_order(examples: Sequence[Example]) -> list[Example]:
    """
    Order examples so every setup example precedes its dependents.

    Among examples whose setups are all placed, catalog order wins, so an
    already-ordered catalog comes back unchanged.
    """
    position = {example.id: index for index, example in enumerate(examples)}
    waiting_on = {example.id: set(example.setup_examples) for example in examples}
    dependents: dict[str, list[str]] = {example.id: [] for example in examples}
    for example in examples:
        for setup_id in example.setup_examples:
            dependents[setup_id].append(example.id)

    ready = [position[example_id] for example_id, deps in waiting_on.items() if not deps]
    heapq.heapify(ready)
    ordered: list[Example] = []
    while ready:
        example = examples[heapq.heappop(ready)]
        ordered.append(example)
        for dependent_id in dependents[example.id]:
            waiting_on[dependent_id].discard(example.id)
            if not waiting_on[dependent_id]:
                heapq.heappush(ready, position[dependent_id])

    if len(ordered) != len(examples):
        raise DependencyCycleError(_find_cycle(examples, {e.id for e in ordered}))
    return ordered


def _find_cycle(examples: Iterable[Example], placed: set[str]) -> list[str]:
    # every unplaced example waits on at least one other unplaced example
    remaining = {e.id: [s for s in e.setup_examples if s not in placed] for e in examples if e.id not in placed}
    current = next(iter(remaining))
    path: list[str] = []
    index_of: dict[str, int] = {}
    while current not in index_of:
        index_of[current] = len(path)
        path.append(current)
        current = remaining[current][0]
    return path[index_of[current]:] + [current]


def _build_expectation(schema: ExpectationSchema) -> Expectation:
    return Expectation(
        min_rows=schema.min_rows,
        max_rows=schema.max_rows,
        required_fields=frozenset(schema.required_fields),
        field_predicates=freeze(schema.field_predicates),
        mode=RowMode(schema.mode),
        ordered_by=(
            OrderSpec(field=schema.ordered_by.field, descending=schema.ordered_by.descending)
            if schema.ordered_by is not None else None
        ),
        rows_equal=freeze(schema.rows_equal) if schema.rows_equal is not None else None,
    )


def _format_validation_error(exc: ValidationError) -> str:
    details: list[str] = []
    for error in exc.errors(include_url=False):
        loc = ".".join(str(part) for part in error["loc"])
        details.append(f"{loc}: {error['msg']}")
    return "Invalid catalog: " + "; ".join(details)
