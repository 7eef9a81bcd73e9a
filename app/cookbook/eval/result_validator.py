from typing import Any, Mapping, Optional, Sequence

from cookbook.core.frozen import thaw

from .models import Expectation, RowMode, ValidationResult
from .predicates import MISSING, describe, evaluate, resolve_path

# Per-check cap so one bad column doesn't flood the report
MAX_ROW_REASONS = 5


class ResultValidator:
    """Validates result rows against an example's expectation."""

    @staticmethod
    def validate(
        rows: Sequence[Mapping[str, Any]],
        expectation: Expectation
    ) -> ValidationResult:
        """
        Validate the rows returned by one example.

        Checks:
        - row count within [min_rows, max_rows]
        - required_fields present on every row
        - field_predicates, per row ("all" mode) or on some row ("any" mode)
        - ordered_by: rows sorted on a field
        - rows_equal: exact expected result

        Rows are schema-less; a row lacking a predicated field is skipped in
        "all" mode unless the predicate uses ``exists``.
        """
        reasons: list[str] = []

        # 1. Row count
        count = len(rows)
        if count < expectation.min_rows:
            reasons.append(
                f"Row count shortfall: expected at least {expectation.min_rows}, got {count}"
            )
        if expectation.max_rows is not None and count > expectation.max_rows:
            reasons.append(
                f"Row count excess: expected at most {expectation.max_rows}, got {count}"
            )

        # 2. Required fields
        if expectation.required_fields:
            failures = []
            for index, row in enumerate(rows):
                missing = sorted(
                    name for name in expectation.required_fields
                    if resolve_path(row, name) is MISSING
                )
                if missing:
                    failures.append(f"Row {index} missing required field(s): {', '.join(missing)}")
            reasons.extend(_capped(failures))

        # 3. Field predicates
        if expectation.field_predicates:
            if expectation.mode is RowMode.ANY:
                reasons.extend(_check_any_row(rows, expectation.field_predicates))
            else:
                reasons.extend(_check_all_rows(rows, expectation.field_predicates))

        # 4. Ordering
        if expectation.ordered_by is not None:
            reason = _check_order(rows, expectation.ordered_by.field, expectation.ordered_by.descending)
            if reason:
                reasons.append(reason)

        # 5. Exact rows
        if expectation.rows_equal is not None:
            expected, actual = thaw(expectation.rows_equal), thaw(rows)
            if actual != expected:
                reasons.append(f"Rows differ from expected: expected {expected!r}, got {actual!r}")

        return ValidationResult(ok=not reasons, reasons=reasons)


def _check_all_rows(
    rows: Sequence[Mapping[str, Any]],
    field_predicates: Mapping[str, Mapping[str, Any]],
) -> list[str]:
    failures = []
    for field_name, predicate in field_predicates.items():
        field_failures = []
        for index, row in enumerate(rows):
            value = resolve_path(row, field_name)
            if value is MISSING and "exists" not in predicate:
                continue
            if not evaluate(value, predicate):
                shown = "<missing>" if value is MISSING else repr(value)
                field_failures.append(
                    f"Row {index} field '{field_name}' = {shown} fails ({describe(predicate)})"
                )
        failures.extend(_capped(field_failures))
    return failures


def _check_any_row(
    rows: Sequence[Mapping[str, Any]],
    field_predicates: Mapping[str, Mapping[str, Any]],
) -> list[str]:
    for row in rows:
        if all(
            evaluate(resolve_path(row, field_name), predicate)
            for field_name, predicate in field_predicates.items()
        ):
            return []
    wanted = "; ".join(
        f"'{field_name}' {describe(predicate)}" for field_name, predicate in field_predicates.items()
    )
    return [f"No row satisfies all predicates: {wanted}"]


def _check_order(rows: Sequence[Mapping[str, Any]], field_name: str, descending: bool) -> Optional[str]:
    previous = MISSING
    for index, row in enumerate(rows):
        value = resolve_path(row, field_name)
        if value is MISSING:
            return f"Row {index} lacks ordering field '{field_name}'"
        if previous is not MISSING:
            try:
                out_of_order = value > previous if descending else value < previous
            except TypeError:
                return f"Row {index} field '{field_name}' is not comparable with the previous row"
            if out_of_order:
                direction = "descending" if descending else "ascending"
                return (
                    f"Rows not in {direction} order on '{field_name}': "
                    f"row {index} value {value!r} after {previous!r}"
                )
        previous = value
    return None


def _capped(failures: list[str]) -> list[str]:
    if len(failures) <= MAX_ROW_REASONS:
        return failures
    hidden = len(failures) - MAX_ROW_REASONS
    return failures[:MAX_ROW_REASONS] + [f"... and {hidden} more row(s)"]
