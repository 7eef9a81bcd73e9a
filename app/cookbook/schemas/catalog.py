from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from cookbook.eval.predicates import validate_predicate
from cookbook.services.query_client import ScanConsistency

ROW_MODE_ALIASES = {"allRows": "all", "anyRow": "any", "all_rows": "all", "any_row": "any"}


class CatalogModel(BaseModel):
    """Catalog documents accept snake_case keys and their camelCase aliases."""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class OrderSchema(CatalogModel):
    field: str = Field(min_length=1)
    descending: bool = False


class ExpectationSchema(CatalogModel):
    min_rows: int = Field(default=0, ge=0)
    max_rows: Optional[int] = Field(default=None, ge=0)
    required_fields: list[str] = Field(default_factory=list)
    field_predicates: dict[str, dict[str, Any]] = Field(default_factory=dict)
    mode: Literal["all", "any"] = "all"
    ordered_by: Optional[OrderSchema] = None
    rows_equal: Optional[list[Any]] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        return ROW_MODE_ALIASES.get(value, value)

    @field_validator("ordered_by", mode="before")
    @classmethod
    def _order_shorthand(cls, value: Any) -> Any:
        # "name" sorts ascending, "-name" descending
        if isinstance(value, str):
            return {"field": value.lstrip("-"), "descending": value.startswith("-")}
        return value

    @field_validator("field_predicates")
    @classmethod
    def _check_predicates(cls, value: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        for name, predicate in value.items():
            try:
                validate_predicate(predicate)
            except ValueError as e:
                raise ValueError(f"predicate for '{name}': {e}") from e
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "ExpectationSchema":
        if self.max_rows is not None and self.max_rows < self.min_rows:
            raise ValueError(f"max_rows ({self.max_rows}) is below min_rows ({self.min_rows})")
        return self


class DefaultsSchema(CatalogModel):
    scan_consistency: Optional[ScanConsistency] = None
    timeout_s: Optional[float] = Field(default=None, gt=0)
    query_context: Optional[str] = None

    @field_validator("scan_consistency", mode="before")
    @classmethod
    def _parse_consistency(cls, value: Any) -> Any:
        return None if value is None else ScanConsistency.parse(value)


class ExampleSchema(CatalogModel):
    id: str = Field(min_length=1)
    statement: str = ""
    description: str = ""
    bind_variables: dict[str, Any] = Field(default_factory=dict)
    expectation: ExpectationSchema = Field(default_factory=ExpectationSchema)
    setup_examples: list[str] = Field(default_factory=list)
    scan_consistency: Optional[ScanConsistency] = None
    timeout_s: Optional[float] = Field(default=None, gt=0)
    query_context: Optional[str] = None
    transactional: bool = False
    rollback: bool = False
    tags: list[str] = Field(default_factory=list)

    @field_validator("scan_consistency", mode="before")
    @classmethod
    def _parse_consistency(cls, value: Any) -> Any:
        return None if value is None else ScanConsistency.parse(value)

    @model_validator(mode="after")
    def _rollback_needs_transaction(self) -> "ExampleSchema":
        if self.rollback and not self.transactional:
            raise ValueError("rollback is only meaningful for transactional examples")
        return self


class CatalogSchema(CatalogModel):
    name: str = "catalog"
    description: str = ""
    defaults: DefaultsSchema = Field(default_factory=DefaultsSchema)
    examples: list[ExampleSchema]
