"""
Configuration module for the Forecast Collaboration service.

All settings are configurable via environment variables with sensible defaults
for Databricks Apps deployment.
"""

import os
from datetime import date

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Unity Catalog
# ---------------------------------------------------------------------------
CATALOG_NAME: str = os.getenv("CATALOG_NAME", "demand_planning")
SCHEMA_GOLD: str = os.getenv("SCHEMA_GOLD", "gold")
SCHEMA_PLANNING: str = os.getenv("SCHEMA_PLANNING", "forecast_data")


# Fully-qualified table helpers
def _fqn(schema: str, table: str) -> str:
    """Return a fully-qualified three-level Unity Catalog table name."""
    return f"{CATALOG_NAME}.{schema}.{table}"


# Source feeds (read-only)
TABLE_FORECAST: str = _fqn(SCHEMA_PLANNING, os.getenv("TABLE_FORECAST", "forecast_collaboration_view"))
TABLE_SELL_IN: str = _fqn(SCHEMA_GOLD, os.getenv("TABLE_SELL_IN", "sell_in"))
TABLE_SELL_OUT: str = _fqn(SCHEMA_GOLD, os.getenv("TABLE_SELL_OUT", "sell_out"))
TABLE_INVENTORY: str = _fqn(SCHEMA_GOLD, os.getenv("TABLE_INVENTORY", "inventory"))
TABLE_PRODUCTS: str = _fqn(SCHEMA_GOLD, os.getenv("TABLE_PRODUCTS", "products"))

# KAM overrides and budgets are read from, and commercial edits written to,
# the same collaboration table
TABLE_COLLABORATION: str = _fqn(
    SCHEMA_PLANNING, os.getenv("TABLE_COLLABORATION", "commercial_collaboration")
)

# ---------------------------------------------------------------------------
# SQL Warehouse
# ---------------------------------------------------------------------------
WAREHOUSE_ID: str = os.getenv("DATABRICKS_WAREHOUSE_ID", "your-warehouse-id")

# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------
CACHE_TTL: int = int(os.getenv("CACHE_TTL", "300"))  # seconds
SOURCE_ROW_LIMIT: int = int(os.getenv("SOURCE_ROW_LIMIT", "200000"))

# ---------------------------------------------------------------------------
# Planning calendar
# ---------------------------------------------------------------------------
REFERENCE_YEAR: int = int(os.getenv("REFERENCE_YEAR", str(date.today().year)))

# ---------------------------------------------------------------------------
# Databricks connection (local dev fallback)
# ---------------------------------------------------------------------------
DATABRICKS_HOST: str = os.getenv("DATABRICKS_HOST", "")
DATABRICKS_TOKEN: str = os.getenv("DATABRICKS_TOKEN", "")

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_TITLE: str = "Forecast Collaboration"
APP_VERSION: str = "1.0.0"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
STATIC_FILES_DIR: str = os.getenv("STATIC_FILES_DIR", "static")
