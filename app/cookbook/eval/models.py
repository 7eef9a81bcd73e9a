from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from cookbook.services.query_client import ScanConsistency

# Data Models
ResultRow = dict[str, Any]


class RowMode(str, Enum):
    ALL = "all"  # every row carrying a field must satisfy its predicate
    ANY = "any"  # at least one row must satisfy every predicate


class OutcomeStatus(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    ERRORED = "Errored"


@dataclass(frozen=True)
class OrderSpec:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Expectation:
    """Declarative predicate over the rows returned by one example"""
    min_rows: int = 0
    max_rows: Optional[int] = None  # None means unbounded
    required_fields: frozenset[str] = frozenset()
    field_predicates: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    mode: RowMode = RowMode.ALL
    ordered_by: Optional[OrderSpec] = None
    rows_equal: Optional[tuple[Any, ...]] = None


@dataclass(frozen=True)
class Example:
    """A named, replayable query from the cookbook"""
    id: str
    statement: str
    bind_variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    expectation: Expectation = field(default_factory=Expectation)
    setup_examples: tuple[str, ...] = ()
    description: str = ""
    scan_consistency: ScanConsistency = ScanConsistency.UNBOUNDED
    timeout_s: Optional[float] = None
    query_context: Optional[str] = None
    transactional: bool = False
    rollback: bool = False
    tags: tuple[str, ...] = ()


@dataclass
class ValidationResult:
    """Result of validating the rows of a single example"""
    ok: bool
    reasons: list[str] = field(default_factory=list)


@dataclass
class Outcome:
    """Result of running a single example"""
    example_id: str
    status: OutcomeStatus
    detail: str = ""
    elapsed_s: float = 0.0
    reasons: list[str] = field(default_factory=list)
    row_count: Optional[int] = None

    @property
    def passed(self) -> bool:
        return self.status is OutcomeStatus.PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "example_id": self.example_id,
            "status": self.status.value,
            "detail": self.detail,
            "elapsed_s": round(self.elapsed_s, 6),
            "reasons": list(self.reasons),
            "row_count": self.row_count,
        }
