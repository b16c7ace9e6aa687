"""
Row source queries.

Reads the five collaboration feeds and the product attribute table from
Unity Catalog, with the caller's filter criteria and date window pushed
down into the ``WHERE`` clause.  Results are cached through the
``execute_sql`` helper in the Databricks client module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from forecast_collab.services.ingestors import (
    FEED_FORECAST,
    FEED_INVENTORY,
    FEED_KAM,
    FEED_SELL_IN,
    FEED_SELL_OUT,
)
from forecast_collab.services.matrix import FilterCriteria
from forecast_collab.services.periods import PeriodWindow, period_end_date, period_start_date
from forecast_collab.utils.config import (
    SOURCE_ROW_LIMIT,
    TABLE_COLLABORATION,
    TABLE_FORECAST,
    TABLE_INVENTORY,
    TABLE_PRODUCTS,
    TABLE_SELL_IN,
    TABLE_SELL_OUT,
)
from forecast_collab.utils.databricks_client import execute_sql

logger = logging.getLogger(__name__)


class SourceUnavailableError(RuntimeError):
    """A feed could not be read; the whole rebuild fails."""


@dataclass(frozen=True)
class FeedQuery:
    """Where a feed lives and how its key columns are named there."""

    table: str
    columns: str
    customer_column: str = "customer_id"
    location_column: str = "location_id"
    # Product-level rows (no customer) must survive a customer filter
    keep_rows_without_customer: bool = False


FEEDS: dict[str, FeedQuery] = {
    FEED_FORECAST: FeedQuery(
        table=TABLE_FORECAST,
        columns=(
            "id, customer_id, customer_name, product_id, location_id, postdate, "
            "forecast_ly, forecast_sales_gap, forecast, approved_sm_kam, "
            "commercial_input, forecast_sales_manager, actual"
        ),
    ),
    FEED_SELL_IN: FeedQuery(
        table=TABLE_SELL_IN,
        columns=(
            "customer_node_id AS customer_id, product_id, "
            "location_node_id AS location_id, postdate, quantity"
        ),
        customer_column="customer_node_id",
        location_column="location_node_id",
    ),
    FEED_SELL_OUT: FeedQuery(
        table=TABLE_SELL_OUT,
        columns=(
            "customer_node_id AS customer_id, product_id, "
            "location_node_id AS location_id, postdate, quantity"
        ),
        customer_column="customer_node_id",
        location_column="location_node_id",
    ),
    FEED_INVENTORY: FeedQuery(
        table=TABLE_INVENTORY,
        columns=(
            "customer_node_id AS customer_id, product_id, "
            "location_node_id AS location_id, postdate, eoh"
        ),
        customer_column="customer_node_id",
        location_column="location_node_id",
    ),
    FEED_KAM: FeedQuery(
        table=TABLE_COLLABORATION,
        columns=(
            "customer_id, product_id, location_id, postdate, sm_kam_override, "
            "commercial_input, initial_sales_plan, ddi_totales, m8_predict, pci_actual"
        ),
        keep_rows_without_customer=True,
    ),
}


# ---------------------------------------------------------------------------
# WHERE clause
# ---------------------------------------------------------------------------
def _sql_list(values: Iterable[str]) -> str:
    return ", ".join("'" + v.replace("'", "''") + "'" for v in sorted(values))


def build_where_clause(
    feed: FeedQuery,
    filters: FilterCriteria | None,
    window: PeriodWindow,
) -> str:
    """Build a SQL WHERE clause from the window and the filter criteria."""
    periods = window.periods
    where_clauses: list[str] = [
        f"CAST(postdate AS DATE) BETWEEN '{period_start_date(periods[0]).isoformat()}' "
        f"AND '{period_end_date(periods[-1]).isoformat()}'"
    ]
    if filters is not None:
        if filters.customer_ids:
            clause = f"{feed.customer_column} IN ({_sql_list(filters.customer_ids)})"
            if feed.keep_rows_without_customer:
                clause = f"({clause} OR {feed.customer_column} IS NULL)"
            where_clauses.append(clause)
        if filters.product_ids:
            where_clauses.append(f"product_id IN ({_sql_list(filters.product_ids)})")
        if filters.location_ids:
            clause = f"{feed.location_column} IN ({_sql_list(filters.location_ids)})"
            if feed.keep_rows_without_customer:
                clause = f"({clause} OR {feed.location_column} IS NULL)"
            where_clauses.append(clause)
    return f"WHERE {' AND '.join(where_clauses)}"


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------
def fetch_feed(
    name: str,
    filters: FilterCriteria | None,
    window: PeriodWindow,
    limit: int = SOURCE_ROW_LIMIT,
) -> list[dict[str, Any]]:
    feed = FEEDS[name]
    where_sql = build_where_clause(feed, filters, window)
    query = f"""
        SELECT {feed.columns}
        FROM {feed.table}
        {where_sql}
        ORDER BY postdate
        LIMIT {limit}
    """
    rows = execute_sql(query, cache_key=f"feed:{name}:{where_sql}:{limit}")
    if len(rows) >= limit:
        logger.warning("Feed %s hit the row limit (%d); results are truncated", name, limit)
    return rows


def fetch_row_sources(
    filters: FilterCriteria | None,
    window: PeriodWindow,
) -> dict[str, list[dict[str, Any]]]:
    """Fetch every feed.  Any failure aborts the whole fetch."""
    sources: dict[str, list[dict[str, Any]]] = {}
    for name in FEEDS:
        try:
            sources[name] = fetch_feed(name, filters, window)
        except Exception as exc:
            raise SourceUnavailableError(f"Failed to read feed '{name}': {exc}") from exc
    logger.info(
        "Fetched row sources: %s",
        {name: len(rows) for name, rows in sources.items()},
    )
    return sources


def fetch_product_attributes(product_ids: Iterable[str] = ()) -> list[dict[str, Any]]:
    """Return ``product_id`` with its ``attr_1`` / ``attr_2`` / ``attr_3`` multipliers."""
    ids = sorted({p for p in product_ids if p})
    where_sql = f"WHERE product_id IN ({_sql_list(ids)})" if ids else ""
    query = f"""
        SELECT product_id, attr_1, attr_2, attr_3
        FROM {TABLE_PRODUCTS}
        {where_sql}
    """
    try:
        return execute_sql(query, cache_key=f"products:{','.join(ids)}")
    except Exception as exc:
        raise SourceUnavailableError(f"Failed to read product attributes: {exc}") from exc


def load_sources(
    filters: FilterCriteria | None,
    window: PeriodWindow,
) -> tuple[dict[str, list[dict[str, Any]]], list[dict[str, Any]]]:
    """Fetch the feeds plus the attributes of every product they mention."""
    sources = fetch_row_sources(filters, window)
    product_ids: set[str] = set(filters.product_ids) if filters is not None else set()
    if not product_ids:
        product_ids = {
            str(row["product_id"])
            for rows in sources.values()
            for row in rows
            if row.get("product_id")
        }
    attributes = fetch_product_attributes(product_ids) if product_ids else []
    return sources, attributes
