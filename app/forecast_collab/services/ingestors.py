"""
Row ingestors.

One ingestor per source feed.  Each takes a flat list of source rows, the
matrix being built and the active filter criteria, merges the rows into the
matrix and returns it, so ``build_matrix`` can fold the feeds one after the
other with no state shared between passes.
"""

from __future__ import annotations

import logging
from functools import reduce
from typing import Any, Callable, Iterable, Mapping, NamedTuple

from forecast_collab.services.matrix import (
    Entity,
    FilterCriteria,
    MetricRecord,
    PeriodMatrix,
    clean_id,
    safe_float,
)
from forecast_collab.services.metrics import MetricField
from forecast_collab.services.periods import (
    NormalizedPeriod,
    PeriodWindow,
    default_window,
    normalize_date,
    period_year,
)
from forecast_collab.utils.config import REFERENCE_YEAR

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]
Ingestor = Callable[[Iterable[Row], PeriodMatrix, FilterCriteria | None], PeriodMatrix]

FEED_FORECAST = "forecast"
FEED_SELL_IN = "sell_in"
FEED_SELL_OUT = "sell_out"
FEED_INVENTORY = "inventory"
FEED_KAM = "kam"

# Sell-in / sell-out rows land in a field chosen by the row's year relative
# to the reference year.
_SELL_IN_BY_OFFSET: dict[int, MetricField] = {
    -2: MetricField.SELL_IN_TWO_YEARS_PRIOR,
    -1: MetricField.SELL_IN_PRIOR_YEAR,
    0: MetricField.SELL_IN_ACTUAL,
}
_SELL_OUT_BY_OFFSET: dict[int, MetricField] = {
    -2: MetricField.SELL_OUT_PRIOR_YEAR,
    -1: MetricField.SELL_OUT_PRIOR_YEAR,
    0: MetricField.SELL_OUT_ACTUAL,
}


class _ResolvedRow(NamedTuple):
    customer_id: str
    product_id: str | None
    location_id: str | None
    period: NormalizedPeriod


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def _row_identity(feed: str, row: Row) -> str:
    """Stable identity of a raw row: its ``id`` column, else its full content."""
    row_id = clean_id(row.get("id"))
    if row_id:
        return f"{feed}:{row_id}"
    return f"{feed}:" + repr(sorted((str(k), str(v)) for k, v in row.items()))


def _resolve(
    row: Row,
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None,
    feed: str,
) -> _ResolvedRow | None:
    """Validate a row's key fields and map its date onto the window.

    Rows with no customer or an unreadable date are counted on the matrix;
    rows outside the window or rejected by the filters are dropped quietly.
    """
    customer_id = clean_id(row.get("customer_id"))
    if customer_id is None:
        matrix.skip(feed, "missing_customer")
        return None

    try:
        period = normalize_date(row.get("postdate"), matrix.window)
    except ValueError:
        matrix.skip(feed, "malformed_date")
        return None
    if period is None:
        return None

    product_id = clean_id(row.get("product_id"))
    location_id = clean_id(row.get("location_id"))
    if accepts is not None and not accepts.accepts(customer_id, product_id, location_id):
        return None
    return _ResolvedRow(customer_id, product_id, location_id, period)


def _touch(
    matrix: PeriodMatrix,
    resolved: _ResolvedRow,
    row: Row,
    authoritative: bool = False,
) -> tuple[Entity, MetricRecord]:
    ent = matrix.entity(resolved.customer_id, resolved.product_id)
    ent.note_location(resolved.location_id)
    if not ent.customer_name:
        ent.customer_name = clean_id(row.get("customer_name"))
    ent.set_source_date(resolved.period.key, resolved.period.source_date, authoritative)
    return ent, ent.record(resolved.period.key)


def _first_nonzero(*values: Any) -> float:
    for value in values:
        amount = safe_float(value)
        if amount:
            return amount
    return 0.0


# ---------------------------------------------------------------------------
# Forecast / collaboration feed
# ---------------------------------------------------------------------------
def ingest_forecast(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None = None,
) -> PeriodMatrix:
    """Accumulate the forecast family.

    These rows are the records edits are written back against, so their
    literal ``postdate`` always becomes the period's source date.
    """
    for row in rows:
        resolved = _resolve(row, matrix, accepts, FEED_FORECAST)
        if resolved is None:
            continue
        _, rec = _touch(matrix, resolved, row, authoritative=True)
        row_id = _row_identity(FEED_FORECAST, row)

        rec.accumulate(MetricField.LAST_YEAR, row_id, row.get("forecast_ly"))
        rec.accumulate(MetricField.FORECAST_SALES_GAP, row_id, row.get("forecast_sales_gap"))
        rec.accumulate(MetricField.STATISTICAL_FORECAST, row_id, row.get("forecast"))
        rec.accumulate(
            MetricField.APPROVED_OVERRIDE,
            row_id,
            _first_nonzero(row.get("approved_sm_kam"), row.get("commercial_input")),
        )
        rec.accumulate(
            MetricField.SALES_MANAGER_VIEW, row_id, row.get("forecast_sales_manager")
        )
        rec.accumulate(
            MetricField.PREDICTED_DEMAND,
            row_id,
            _first_nonzero(row.get("actual"), row.get("forecast")),
        )
    return matrix


# ---------------------------------------------------------------------------
# Sell-in / sell-out feeds
# ---------------------------------------------------------------------------
def _ingest_history(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None,
    feed: str,
    fields_by_offset: Mapping[int, MetricField],
) -> PeriodMatrix:
    for row in rows:
        resolved = _resolve(row, matrix, accepts, feed)
        if resolved is None:
            continue
        offset = period_year(resolved.period.key) - matrix.reference_year
        metric = fields_by_offset.get(offset)
        if metric is None:
            matrix.skip(feed, "unclassified_year")
            continue
        _, rec = _touch(matrix, resolved, row)
        rec.accumulate(metric, _row_identity(feed, row), row.get("quantity"))
    return matrix


def ingest_sell_in(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None = None,
) -> PeriodMatrix:
    return _ingest_history(rows, matrix, accepts, FEED_SELL_IN, _SELL_IN_BY_OFFSET)


def ingest_sell_out(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None = None,
) -> PeriodMatrix:
    return _ingest_history(rows, matrix, accepts, FEED_SELL_OUT, _SELL_OUT_BY_OFFSET)


# ---------------------------------------------------------------------------
# Inventory feed
# ---------------------------------------------------------------------------
def ingest_inventory(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None = None,
) -> PeriodMatrix:
    """End-of-period on-hand position; the last row for a period wins."""
    for row in rows:
        resolved = _resolve(row, matrix, accepts, FEED_INVENTORY)
        if resolved is None:
            continue
        _, rec = _touch(matrix, resolved, row)
        rec.overwrite(MetricField.INVENTORY_ON_HAND, row.get("eoh"))
    return matrix


# ---------------------------------------------------------------------------
# KAM adjustment + budget feed
# ---------------------------------------------------------------------------
def _budget_field(period: str, reference_year: int) -> MetricField | None:
    year = period_year(period)
    if year == reference_year:
        return MetricField.BUDGET_CURRENT_YEAR
    if year == reference_year + 1:
        return MetricField.BUDGET_NEXT_YEAR
    return None


def _has_value(row: Row, column: str) -> bool:
    return row.get(column) not in (None, "")


def _fan_out_budget(
    row: Row,
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None,
) -> None:
    """Spread a product-level budget row onto every entity carrying the product."""
    product_id = clean_id(row.get("product_id"))
    location_id = clean_id(row.get("location_id"))
    try:
        period = normalize_date(row.get("postdate"), matrix.window)
    except ValueError:
        matrix.skip(FEED_KAM, "malformed_date")
        return
    if period is None:
        return

    metric = _budget_field(period.key, matrix.reference_year)
    if metric is None:
        matrix.skip(FEED_KAM, "unclassified_budget")
        return

    targets = matrix.entities_for_product(product_id, location_id)
    if not targets:
        matrix.skip(FEED_KAM, "unmatched_product_budget")
        return
    for ent in targets:
        if accepts is not None and not accepts.accepts(
            ent.customer_id, ent.product_id, ent.location_id
        ):
            continue
        ent.set_source_date(period.key, period.source_date)
        ent.record(period.key).overwrite(metric, row.get("initial_sales_plan"))


def ingest_kam(
    rows: Iterable[Row],
    matrix: PeriodMatrix,
    accepts: FilterCriteria | None = None,
) -> PeriodMatrix:
    """Apply KAM overrides, budgets and the KAM-owned side metrics.

    ``kam_adjustment`` and the budgets are authoritative single values and
    are overwritten.  Budgets are classified by the calendar year of the
    period against the matrix reference year.
    """
    for row in rows:
        if clean_id(row.get("customer_id")) is None:
            if clean_id(row.get("product_id")) and _has_value(row, "initial_sales_plan"):
                _fan_out_budget(row, matrix, accepts)
            else:
                matrix.skip(FEED_KAM, "missing_customer")
            continue

        resolved = _resolve(row, matrix, accepts, FEED_KAM)
        if resolved is None:
            continue

        budget_metric = None
        if _has_value(row, "initial_sales_plan"):
            budget_metric = _budget_field(resolved.period.key, matrix.reference_year)
            if budget_metric is None:
                matrix.skip(FEED_KAM, "unclassified_budget")

        _, rec = _touch(matrix, resolved, row)
        if _has_value(row, "sm_kam_override") or _has_value(row, "commercial_input"):
            adjustment = _first_nonzero(row.get("sm_kam_override"), row.get("commercial_input"))
            rec.overwrite(MetricField.KAM_ADJUSTMENT, adjustment)
            rec.overwrite(MetricField.ORIGINAL_COMMERCIAL_INPUT, adjustment)
        if budget_metric is not None:
            rec.overwrite(budget_metric, row.get("initial_sales_plan"))

        days = safe_float(row.get("ddi_totales"))
        if days > 0:
            rec.overwrite(MetricField.INVENTORY_DAYS, days)
        price_index = safe_float(row.get("pci_actual"))
        if price_index > 0:
            rec.overwrite(MetricField.CHANNEL_PRICE_INDEX, price_index)
        rec.accumulate(
            MetricField.PREDICTED_DEMAND, _row_identity(FEED_KAM, row), row.get("m8_predict")
        )
    return matrix


# ---------------------------------------------------------------------------
# Product attributes
# ---------------------------------------------------------------------------
def attach_product_attributes(
    matrix: PeriodMatrix,
    product_attributes: Iterable[Row],
) -> PeriodMatrix:
    """Copy the unit multipliers of each product onto every entity sharing it.

    ``attr_3`` is the case-equivalent factor, ``attr_1`` volume and
    ``attr_2`` weight.  Products missing from the table keep zeros.
    """
    by_product = {
        clean_id(row.get("product_id")): row
        for row in product_attributes
        if clean_id(row.get("product_id"))
    }
    for ent in matrix.entities.values():
        attrs = by_product.get(ent.product_id)
        if attrs is None:
            continue
        ent.units_cases = safe_float(attrs.get("attr_3"))
        ent.units_volume = safe_float(attrs.get("attr_1"))
        ent.units_weight = safe_float(attrs.get("attr_2"))
    return matrix


# ---------------------------------------------------------------------------
# Matrix builder
# ---------------------------------------------------------------------------
INGESTORS: tuple[tuple[str, Ingestor], ...] = (
    (FEED_FORECAST, ingest_forecast),
    (FEED_SELL_IN, ingest_sell_in),
    (FEED_SELL_OUT, ingest_sell_out),
    (FEED_INVENTORY, ingest_inventory),
    # Last: product-level budgets fan out onto entities created above.
    (FEED_KAM, ingest_kam),
)


def resolve_window(
    filters: FilterCriteria | None,
    date_window: PeriodWindow | None,
    reference_year: int,
) -> PeriodWindow:
    if date_window is not None:
        return date_window
    if filters is not None and filters.date_range is not None:
        return filters.window()
    return default_window(reference_year)


def build_matrix(
    row_sources: Mapping[str, Iterable[Row]],
    filters: FilterCriteria | None = None,
    date_window: PeriodWindow | None = None,
    product_attributes: Iterable[Row] = (),
    reference_year: int | None = None,
    only_with_values: bool = False,
) -> PeriodMatrix:
    """Fold every feed into a fresh period matrix.

    Parameters
    ----------
    row_sources:
        Mapping of feed name (``forecast``, ``sell_in``, ``sell_out``,
        ``inventory``, ``kam``) to its rows.  Missing feeds are empty.
    filters:
        Resolved leaf-level selection applied to every row.
    date_window:
        Explicit window; defaults to the filters' date range, else October of
        the prior year through December of the next one.
    product_attributes:
        Rows of the product table carrying ``attr_1`` / ``attr_2`` /
        ``attr_3``.
    reference_year:
        The "current" year budgets and history are classified against.
    only_with_values:
        Drop entities whose every value is zero.
    """
    year = reference_year if reference_year is not None else REFERENCE_YEAR
    empty = PeriodMatrix(window=resolve_window(filters, date_window, year), reference_year=year)

    matrix = reduce(
        lambda acc, step: step[1](row_sources.get(step[0]) or (), acc, filters),
        INGESTORS,
        empty,
    )
    attach_product_attributes(matrix, product_attributes)

    if only_with_values:
        dropped = matrix.drop_empty()
        if dropped:
            logger.debug("Dropped %d all-zero entities", dropped)
    if matrix.skipped:
        logger.info("Skipped source rows while building matrix: %s", dict(matrix.skipped))
    logger.info(
        "Built period matrix: %d entities over %d periods (%s .. %s)",
        len(matrix.entities),
        len(matrix.periods),
        matrix.periods[0],
        matrix.periods[-1],
    )
    return matrix

