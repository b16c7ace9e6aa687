"""
Metric catalog.

Static mapping from the row captions shown in the collaboration grid to the
metric fields of the period matrix, plus the unit systems and rollup windows.
A caption with no mapping is rejected; there is no default field.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MetricField(str, Enum):
    """Named numeric fields of a metric record."""

    LAST_YEAR = "last_year"
    FORECAST_SALES_GAP = "forecast_sales_gap"
    STATISTICAL_FORECAST = "statistical_forecast"
    APPROVED_OVERRIDE = "approved_override"
    KAM_ADJUSTMENT = "kam_adjustment"
    SALES_MANAGER_VIEW = "sales_manager_view"
    EFFECTIVE_FORECAST = "effective_forecast"
    PREDICTED_DEMAND = "predicted_demand"
    SELL_IN_TWO_YEARS_PRIOR = "sell_in_two_years_prior"
    SELL_IN_PRIOR_YEAR = "sell_in_prior_year"
    SELL_IN_ACTUAL = "sell_in_actual"
    SELL_OUT_PRIOR_YEAR = "sell_out_prior_year"
    SELL_OUT_ACTUAL = "sell_out_actual"
    INVENTORY_ON_HAND = "inventory_on_hand"
    INVENTORY_DAYS = "inventory_days"
    ORIGINAL_COMMERCIAL_INPUT = "original_commercial_input"
    BUDGET_CURRENT_YEAR = "budget_current_year"
    BUDGET_NEXT_YEAR = "budget_next_year"
    CHANNEL_PRICE_INDEX = "channel_price_index"


class Unit(str, Enum):
    """Unit systems a rollup can be expressed in."""

    CASES = "cases"
    VOLUME = "volume"
    WEIGHT = "weight"


class Window(str, Enum):
    YTD = "ytd"
    YTG = "ytg"
    TOTAL = "total"


@dataclass(frozen=True)
class MetricRule:
    """Rollup behaviour of one metric field.

    ``year_offset`` pins the metric to ``reference_year + year_offset``;
    periods of any other year contribute zero.  ``None`` means the metric
    spans every period of the window.
    """

    field: MetricField
    year_offset: int | None = None
    converts_units: bool = True


METRIC_RULES: dict[MetricField, MetricRule] = {
    field: MetricRule(field) for field in MetricField
}
METRIC_RULES.update(
    {
        MetricField.BUDGET_CURRENT_YEAR: MetricRule(
            MetricField.BUDGET_CURRENT_YEAR, year_offset=0, converts_units=False
        ),
        MetricField.BUDGET_NEXT_YEAR: MetricRule(
            MetricField.BUDGET_NEXT_YEAR, year_offset=1, converts_units=False
        ),
        MetricField.SELL_IN_ACTUAL: MetricRule(MetricField.SELL_IN_ACTUAL, year_offset=0),
        MetricField.SELL_IN_PRIOR_YEAR: MetricRule(
            MetricField.SELL_IN_PRIOR_YEAR, year_offset=-1
        ),
        MetricField.SELL_IN_TWO_YEARS_PRIOR: MetricRule(
            MetricField.SELL_IN_TWO_YEARS_PRIOR, year_offset=-2
        ),
        MetricField.SELL_OUT_ACTUAL: MetricRule(MetricField.SELL_OUT_ACTUAL, year_offset=0),
        MetricField.PREDICTED_DEMAND: MetricRule(
            MetricField.PREDICTED_DEMAND, year_offset=1
        ),
    }
)

# Accumulating fields sum every raw row mapped onto a period; all other
# stored fields hold the last authoritative value.
ACCUMULATING_FIELDS: frozenset[MetricField] = frozenset(
    {
        MetricField.LAST_YEAR,
        MetricField.FORECAST_SALES_GAP,
        MetricField.STATISTICAL_FORECAST,
        MetricField.APPROVED_OVERRIDE,
        MetricField.SALES_MANAGER_VIEW,
        MetricField.PREDICTED_DEMAND,
        MetricField.SELL_IN_TWO_YEARS_PRIOR,
        MetricField.SELL_IN_PRIOR_YEAR,
        MetricField.SELL_IN_ACTUAL,
        MetricField.SELL_OUT_PRIOR_YEAR,
        MetricField.SELL_OUT_ACTUAL,
    }
)

# ---------------------------------------------------------------------------
# Row captions
# ---------------------------------------------------------------------------
ROW_LABELS: dict[str, MetricField] = {
    "Last Year": MetricField.LAST_YEAR,
    "Ventas LY": MetricField.LAST_YEAR,
    "Forecast Sales Gap": MetricField.FORECAST_SALES_GAP,
    "Forecast": MetricField.STATISTICAL_FORECAST,
    "Statistical Forecast": MetricField.STATISTICAL_FORECAST,
    "KAM aprobado": MetricField.APPROVED_OVERRIDE,
    "Approved Override": MetricField.APPROVED_OVERRIDE,
    "KAM input": MetricField.KAM_ADJUSTMENT,
    "KAM Adjustment": MetricField.KAM_ADJUSTMENT,
    "Sales Manager View": MetricField.SALES_MANAGER_VIEW,
    "Effective Forecast": MetricField.EFFECTIVE_FORECAST,
    "M8 Predict": MetricField.PREDICTED_DEMAND,
    "Sell in 23": MetricField.SELL_IN_TWO_YEARS_PRIOR,
    "Sell in AA": MetricField.SELL_IN_PRIOR_YEAR,
    "Sell in Actual": MetricField.SELL_IN_ACTUAL,
    "Sell Out AA": MetricField.SELL_OUT_PRIOR_YEAR,
    "Sell Out Actual": MetricField.SELL_OUT_ACTUAL,
    "Inventory On Hand": MetricField.INVENTORY_ON_HAND,
    "DDI Totales": MetricField.INVENTORY_DAYS,
    "Original KAM Input": MetricField.ORIGINAL_COMMERCIAL_INPUT,
    "PPTO Actual": MetricField.BUDGET_CURRENT_YEAR,
    "PPTO A+1": MetricField.BUDGET_NEXT_YEAR,
    "PCI Actual": MetricField.CHANNEL_PRICE_INDEX,
}


class UnknownMetricLabel(ValueError):
    """Raised when a row caption has no metric mapping."""


def field_for_label(label: str) -> MetricField:
    """Resolve a row caption (or a raw field name) to its metric field."""
    if label in ROW_LABELS:
        return ROW_LABELS[label]
    try:
        return MetricField(label)
    except ValueError:
        raise UnknownMetricLabel(f"Unknown metric label: {label!r}") from None


def rule_for(field: MetricField) -> MetricRule:
    return METRIC_RULES[field]
