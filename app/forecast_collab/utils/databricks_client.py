"""
Databricks client singleton.

Provides a single WorkspaceClient instance with SDK auto-auth for Databricks
Apps deployment and token fallback for local development.  Also exposes a
SQL execution helper with in-memory caching and named statement parameters.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from databricks.sdk import WorkspaceClient
from databricks.sdk.config import Config
from databricks.sdk.service.sql import StatementParameterListItem, StatementState

from forecast_collab.utils.config import (
    CACHE_TTL,
    CATALOG_NAME,
    DATABRICKS_HOST,
    DATABRICKS_TOKEN,
    SCHEMA_PLANNING,
    WAREHOUSE_ID,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# In-memory query cache
# ---------------------------------------------------------------------------
_cache: dict[str, Any] = {}
_cache_time: dict[str, float] = {}


def _cache_get(key: str) -> Any | None:
    """Return cached value if still within TTL, else None."""
    if key in _cache and (time.time() - _cache_time.get(key, 0)) < CACHE_TTL:
        return _cache[key]
    return None


def _cache_set(key: str, value: Any) -> None:
    _cache[key] = value
    _cache_time[key] = time.time()


def invalidate_cache(prefix: str | None = None) -> None:
    """Clear all cached entries, or only those whose key starts with *prefix*."""
    if prefix is None:
        _cache.clear()
        _cache_time.clear()
    else:
        keys = [k for k in _cache if k.startswith(prefix)]
        for k in keys:
            _cache.pop(k, None)
            _cache_time.pop(k, None)


# ---------------------------------------------------------------------------
# Singleton client
# ---------------------------------------------------------------------------
_client: WorkspaceClient | None = None


def get_workspace_client() -> WorkspaceClient:
    """Return a cached WorkspaceClient (created on first call).

    In Databricks Apps the SDK auto-authenticates via the service principal
    bound to the app.  For local development, set DATABRICKS_HOST and
    DATABRICKS_TOKEN environment variables.
    """
    global _client
    if _client is not None:
        return _client

    if DATABRICKS_TOKEN:
        logger.info("Initializing WorkspaceClient with token (local dev mode)")
        _client = WorkspaceClient(
            host=DATABRICKS_HOST,
            token=DATABRICKS_TOKEN,
            config=Config(http_timeout_seconds=120),
        )
    else:
        logger.info("Initializing WorkspaceClient with SDK auto-auth")
        _client = WorkspaceClient(config=Config(http_timeout_seconds=120))

    return _client


# ---------------------------------------------------------------------------
# SQL helper
# ---------------------------------------------------------------------------
def _statement_parameters(
    parameters: dict[str, Any] | None,
) -> list[StatementParameterListItem] | None:
    if not parameters:
        return None
    return [
        StatementParameterListItem(
            name=name,
            value=None if value is None else str(value),
        )
        for name, value in parameters.items()
    ]


def execute_sql(
    query: str,
    *,
    parameters: dict[str, Any] | None = None,
    cache_key: str | None = None,
    catalog: str | None = None,
    schema: str | None = None,
) -> list[dict[str, Any]]:
    """Execute a SQL statement via the Databricks SQL Statement Execution API.

    Parameters
    ----------
    query:
        The SQL query string.  Named markers (``:customer_id``) are bound
        from *parameters*.
    parameters:
        Optional mapping of marker name -> value.  Values are sent as
        strings; ``None`` binds SQL NULL.
    cache_key:
        If provided the result is cached under this key for ``CACHE_TTL``
        seconds.  Subsequent calls with the same key skip execution.
    catalog / schema:
        Override the default catalog / schema for this execution.

    Returns
    -------
    list[dict]
        Each dict maps column name -> value for one row.
    """
    if cache_key:
        cached = _cache_get(cache_key)
        if cached is not None:
            logger.debug("Cache hit for %s", cache_key)
            return cached

    w = get_workspace_client()
    response = w.statement_execution.execute_statement(
        warehouse_id=WAREHOUSE_ID,
        statement=query,
        wait_timeout="30s",
        catalog=catalog or CATALOG_NAME,
        schema=schema or SCHEMA_PLANNING,
        parameters=_statement_parameters(parameters),
    )

    if response.status.state != StatementState.SUCCEEDED:
        error_msg = getattr(response.status, "error", None)
        raise RuntimeError(
            f"SQL execution failed ({response.status.state}): {error_msg}"
        )

    rows: list[dict[str, Any]] = []
    if response.manifest is None or response.manifest.schema is None:
        # DML statements (MERGE / INSERT) may come back without a result schema
        return rows

    columns = [col.name for col in response.manifest.schema.columns or []]
    if response.result and response.result.data_array:
        for row in response.result.data_array:
            rows.append(dict(zip(columns, row)))

    if cache_key:
        _cache_set(cache_key, rows)
    return rows
