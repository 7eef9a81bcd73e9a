import pytest

from cookbook.core.frozen import freeze
from cookbook.eval.catalog_loader import CatalogLoader
from cookbook.eval.models import Expectation, OrderSpec, RowMode
from cookbook.eval.predicates import MISSING, describe, evaluate, resolve_path, validate_predicate
from cookbook.eval.result_validator import MAX_ROW_REASONS, ResultValidator

COUNTRY_ROWS = [
    {"country": "United States"},
    {"country": "France"},
    {"country": "United Kingdom"},
    {"country": "United States"},
    {"country": "France"},
]


class TestRowCount:

    def test_five_rows_with_country_pass(self):
        expectation = Expectation(min_rows=5, max_rows=5, required_fields=frozenset({"country"}))

        result = ResultValidator.validate(COUNTRY_ROWS, expectation)

        assert result.ok
        assert result.reasons == []

    def test_empty_result_below_minimum(self):
        result = ResultValidator.validate([], Expectation(min_rows=1))

        assert not result.ok
        assert len(result.reasons) == 1
        assert "shortfall" in result.reasons[0]
        assert "got 0" in result.reasons[0]

    def test_too_many_rows(self):
        result = ResultValidator.validate(COUNTRY_ROWS, Expectation(max_rows=2))

        assert not result.ok
        assert result.reasons == ["Row count excess: expected at most 2, got 5"]

    def test_zero_max_rows_accepts_empty(self):
        assert ResultValidator.validate([], Expectation(max_rows=0)).ok

    def test_default_expectation_accepts_anything(self):
        assert ResultValidator.validate([], Expectation()).ok
        assert ResultValidator.validate(COUNTRY_ROWS, Expectation()).ok


class TestRequiredFields:

    def test_missing_field_reports_row(self):
        rows = [{"name": "Air France", "country": "France"}, {"name": "Orphan"}]
        expectation = Expectation(required_fields=frozenset({"name", "country"}))

        result = ResultValidator.validate(rows, expectation)

        assert not result.ok
        assert result.reasons == ["Row 1 missing required field(s): country"]

    def test_null_value_counts_as_present(self):
        rows = [{"iata": None}]

        assert ResultValidator.validate(rows, Expectation(required_fields=frozenset({"iata"}))).ok

    def test_nested_path(self):
        rows = [{"geo": {"lat": 48.8, "lon": 2.3}}, {"geo": {"lat": 51.5}}]

        result = ResultValidator.validate(rows, Expectation(required_fields=frozenset({"geo.lon"})))

        assert result.reasons == ["Row 1 missing required field(s): geo.lon"]

    def test_failures_are_capped(self):
        rows = [{} for _ in range(MAX_ROW_REASONS + 3)]

        result = ResultValidator.validate(rows, Expectation(required_fields=frozenset({"id"})))

        assert len(result.reasons) == MAX_ROW_REASONS + 1
        assert result.reasons[-1] == "... and 3 more row(s)"


class TestFieldPredicates:

    def test_all_rows_mode(self, frozen_predicates):
        expectation = Expectation(
            field_predicates=frozen_predicates({"country": {"in": ["France", "United States"]}})
        )

        result = ResultValidator.validate(COUNTRY_ROWS, expectation)

        assert not result.ok
        assert result.reasons == ["Row 2 field 'country' = 'United Kingdom' fails (in ['France', 'United States'])"]

    def test_all_rows_mode_skips_missing_field(self, frozen_predicates):
        rows = [{"alt": 12}, {"name": "no altitude"}]
        expectation = Expectation(field_predicates=frozen_predicates({"alt": {"gte": 0}}))

        assert ResultValidator.validate(rows, expectation).ok

    def test_exists_predicate_catches_missing_field(self, frozen_predicates):
        rows = [{"alt": 12}, {"name": "no altitude"}]
        expectation = Expectation(field_predicates=frozen_predicates({"alt": {"exists": True, "gte": 0}}))

        result = ResultValidator.validate(rows, expectation)

        assert result.reasons == ["Row 1 field 'alt' = <missing> fails (exists True, gte 0)"]

    def test_any_row_mode_passes_on_one_match(self, frozen_predicates):
        expectation = Expectation(
            field_predicates=frozen_predicates({"country": {"eq": "United Kingdom"}}),
            mode=RowMode.ANY,
        )

        assert ResultValidator.validate(COUNTRY_ROWS, expectation).ok

    def test_any_row_mode_needs_all_predicates_on_same_row(self, frozen_predicates):
        rows = [{"name": "Louvre", "activity": "see"}, {"name": "Cafe", "activity": "eat"}]
        expectation = Expectation(
            field_predicates=frozen_predicates({"name": {"eq": "Louvre"}, "activity": {"eq": "eat"}}),
            mode=RowMode.ANY,
        )

        result = ResultValidator.validate(rows, expectation)

        assert not result.ok
        assert result.reasons[0].startswith("No row satisfies all predicates")

    def test_any_row_mode_on_empty_result_fails(self, frozen_predicates):
        expectation = Expectation(
            field_predicates=frozen_predicates({"name": {"exists": True}}),
            mode=RowMode.ANY,
        )

        assert not ResultValidator.validate([], expectation).ok

    def test_type_mismatch_fails_instead_of_raising(self, frozen_predicates):
        rows = [{"id": "not-a-number"}]
        expectation = Expectation(field_predicates=frozen_predicates({"id": {"gt": 10}}))

        result = ResultValidator.validate(rows, expectation)

        assert not result.ok


class TestOrderAndExactRows:

    def test_ascending_order(self):
        rows = [{"name": "Air France"}, {"name": "Corsairfly"}, {"name": "Corsairfly"}, {"name": "Transavia"}]

        assert ResultValidator.validate(rows, Expectation(ordered_by=OrderSpec("name"))).ok

    def test_descending_order_violation(self):
        rows = [{"airlines": 100}, {"airlines": 20}, {"airlines": 35}]

        result = ResultValidator.validate(rows, Expectation(ordered_by=OrderSpec("airlines", descending=True)))

        assert result.reasons == ["Rows not in descending order on 'airlines': row 2 value 35 after 20"]

    def test_ordering_field_missing(self):
        result = ResultValidator.validate([{"name": "a"}, {}], Expectation(ordered_by=OrderSpec("name")))

        assert result.reasons == ["Row 1 lacks ordering field 'name'"]

    def test_rows_equal(self):
        expectation = Expectation(rows_equal=({"$1": 2},))

        assert ResultValidator.validate([{"$1": 2}], expectation).ok
        assert not ResultValidator.validate([{"$1": 3}], expectation).ok
        assert not ResultValidator.validate([], expectation).ok


class TestValidatorProperties:

    def test_validation_is_idempotent_and_pure(self, frozen_predicates):
        rows = [dict(row) for row in COUNTRY_ROWS]
        snapshot = [dict(row) for row in rows]
        expectation = Expectation(
            min_rows=6,
            required_fields=frozenset({"country"}),
            field_predicates=frozen_predicates({"country": {"ne": "France"}}),
        )

        first = ResultValidator.validate(rows, expectation)
        second = ResultValidator.validate(rows, expectation)

        assert first == second
        assert rows == snapshot

    def test_reasons_follow_check_order(self, frozen_predicates):
        rows = [{"name": "b"}, {"name": "a"}]
        expectation = Expectation(
            min_rows=3,
            required_fields=frozenset({"id"}),
            ordered_by=OrderSpec("name"),
        )

        reasons = ResultValidator.validate(rows, expectation).reasons

        assert reasons[0].startswith("Row count shortfall")
        assert reasons[1].startswith("Row 0 missing required field")
        assert reasons[-1].startswith("Rows not in ascending order")


class TestPredicates:

    @pytest.mark.parametrize("value, predicate, expected", [
        (5, {"gte": 1, "lt": 10}, True),
        (10, {"gte": 1, "lt": 10}, False),
        ("France", {"in": ["France", "Germany"]}, True),
        ("Spain", {"not_in": ["France", "Germany"]}, True),
        ("Charles de Gaulle", {"contains": "Gaulle"}, True),
        (["Mon", "Tue"], {"contains": "Wed"}, False),
        ("LFPG", {"matches": "^[A-Z]{4}$"}, True),
        ([1, 2, 3], {"length": 3}, True),
        ("abc", {"length": {"gte": 1, "lte": 2}}, False),
        (True, {"type": "number"}, False),
        (None, {"type": ["string", "null"]}, True),
        ({"a": 1}, {"type": "object"}, True),
        (MISSING, {"exists": False}, True),
        (MISSING, {"eq": None}, False),
    ])
    def test_evaluate(self, value, predicate, expected):
        assert evaluate(value, predicate) is expected

    @pytest.mark.parametrize("predicate, message", [
        ({}, "non-empty"),
        ({"approx": 1}, "unknown operator"),
        ({"in": "France"}, "takes a list"),
        ({"matches": "("}, "invalid regular expression"),
        ({"type": "date"}, "unknown JSON type"),
        ({"exists": "yes"}, "true or false"),
        ({"length": {"bogus": 1}}, "unknown operator"),
    ])
    def test_validate_rejects(self, predicate, message):
        with pytest.raises(ValueError, match=message):
            validate_predicate(predicate)

    def test_resolve_path(self):
        row = {"schedule": [{"day": 0, "flight": "AF198"}], "geo.alt": 7, "geo": {"alt": 12}}

        assert resolve_path(row, "schedule.0.flight") == "AF198"
        assert resolve_path(row, "schedule.-1.day") == 0
        assert resolve_path(row, "schedule.3.day") is MISSING
        assert resolve_path(row, "geo.alt") == 7
        assert resolve_path(row, "geo.lon") is MISSING

    @pytest.mark.parametrize("operand", [["alt"], {"alt": 12}])
    def test_contains_unhashable_operand_on_object(self, operand):
        assert evaluate({"alt": 12}, {"contains": operand}) is False

    def test_contains_frozen_operand_on_array(self):
        assert evaluate([["SFO", "LAX"], ["CDG"]], {"contains": freeze(["CDG"])}) is True

    def test_frozen_operands_compare_as_json(self):
        predicate = freeze({"eq": ["Mon", "Tue"], "in": [{"day": 1}]})

        assert evaluate(["Mon", "Tue"], {"eq": predicate["eq"]}) is True
        assert evaluate({"day": 1}, {"in": predicate["in"]}) is True
        assert describe(predicate) == "eq ['Mon', 'Tue'], in [{'day': 1}]"


class TestLoadedExpectations:
    """Expectations as the catalog loader builds them: deeply read-only"""

    def test_contains_list_against_object_fails_cleanly(self):
        [example] = CatalogLoader().load([{
            "id": "geo-contains",
            "statement": "SELECT geo FROM airport LIMIT 1",
            "expectation": {"fieldPredicates": {"geo": {"contains": ["alt"]}}},
        }])

        result = ResultValidator.validate([{"geo": {"alt": 12}}], example.expectation)

        assert not result.ok
        assert result.reasons == ["Row 0 field 'geo' = {'alt': 12} fails (contains ['alt'])"]

    def test_frozen_rows_equal_matches_plain_rows(self):
        expectation = Expectation(rows_equal=freeze([{"name": "Cookbook Air", "codes": ["CB", "CBA"]}]))

        assert ResultValidator.validate([{"name": "Cookbook Air", "codes": ["CB", "CBA"]}], expectation).ok

        result = ResultValidator.validate([{"name": "Cookbook Air", "codes": ["CB"]}], expectation)
        assert result.reasons == [
            "Rows differ from expected: expected [{'name': 'Cookbook Air', 'codes': ['CB', 'CBA']}], "
            "got [{'name': 'Cookbook Air', 'codes': ['CB']}]"
        ]
