"""
Pydantic data models for the Forecast Collaboration API.

All request / response schemas are defined here so they can be shared across
routers, services, and tests.
"""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from forecast_collab.services.matrix import FilterCriteria
from forecast_collab.services.metrics import Unit, Window


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------
class DateRangeModel(BaseModel):
    """Inclusive date range; the matrix window covers every month it touches."""

    start: date
    end: date


class FilterCriteriaModel(BaseModel):
    """Resolved leaf-level IDs.  An empty list means no constraint."""

    customer_ids: list[str] = Field(default_factory=list)
    product_ids: list[str] = Field(default_factory=list)
    location_ids: list[str] = Field(default_factory=list)
    date_range: DateRangeModel | None = None

    def to_criteria(self) -> FilterCriteria:
        return FilterCriteria.build(
            customer_ids=self.customer_ids,
            product_ids=self.product_ids,
            location_ids=self.location_ids,
            date_range=(
                (self.date_range.start, self.date_range.end) if self.date_range else None
            ),
        )


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------
class MatrixRequest(BaseModel):
    """Rebuild the session matrix from the source feeds."""

    session_id: str = Field("default", description="Caller's session identifier")
    filters: FilterCriteriaModel = Field(default_factory=FilterCriteriaModel)
    only_with_values: bool = Field(
        False, description="Drop customer/product rows whose values are all zero"
    )


class MatrixEntity(BaseModel):
    customer_id: str
    product_id: str
    location_id: str | None = None
    customer_name: str | None = None
    units: dict[str, float]
    periods: dict[str, dict[str, float]]
    source_dates: dict[str, str]


class MatrixResponse(BaseModel):
    session_id: str
    status: str = Field(..., description="'ok', or 'no_data' when filters matched nothing")
    reference_year: int
    periods: list[str]
    entities: list[MatrixEntity]
    skipped: dict[str, int]


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------
class RollupRequest(BaseModel):
    """A single rollup value.  Omit customer/product for the aggregate row."""

    session_id: str = "default"
    metric: str = Field(..., description="Row caption or metric field name")
    unit: Unit = Unit.CASES
    window: Window = Window.YTD
    customer_id: str | None = None
    product_id: str | None = None


class RollupResponse(BaseModel):
    metric: str
    unit: Unit
    window: Window
    scope: str
    value: float


class SummaryRequest(BaseModel):
    session_id: str = "default"
    metric: str


class SummaryRow(BaseModel):
    customer_id: str
    product_id: str
    values: dict[str, dict[str, float]]


class SummaryResponse(BaseModel):
    metric: str
    aggregate: dict[str, dict[str, float]]
    entities: list[SummaryRow]


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------
class EditRequest(BaseModel):
    """Edit one cell of the KAM adjustment row.

    Without ``customer_id`` the edit targets the aggregate row and the new
    value is redistributed across the selected entities.
    """

    session_id: str = "default"
    period: str = Field(..., description="Period key, e.g. 'mar-25'")
    value: float
    customer_id: str | None = None
    product_id: str | None = None
    notes: str | None = None


class EditMutation(BaseModel):
    customer_id: str
    product_id: str
    period: str
    previous: float
    value: float


class EditFailureModel(BaseModel):
    customer_id: str
    product_id: str
    period: str
    kind: str
    reason: str


class EditResultModel(BaseModel):
    status: str
    target: str
    period: str
    new_value: float
    mutations: list[EditMutation]
    failures: list[EditFailureModel]
    upserts: int
    rebuilt: bool


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
class MetricCatalog(BaseModel):
    labels: dict[str, str]
    fields: list[str]
    units: list[str]
    windows: list[str]
