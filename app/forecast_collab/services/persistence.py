"""
Persistence adapter for commercial edits.

Edits are written to the collaboration Delta table with a ``MERGE INTO``
keyed on (product, customer, location, postdate), so replaying an edit
updates the existing row instead of inserting a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, NamedTuple, Protocol

from forecast_collab.utils.config import TABLE_COLLABORATION
from forecast_collab.utils.databricks_client import execute_sql, invalidate_cache

logger = logging.getLogger(__name__)


class UpsertKey(NamedTuple):
    """Composite natural key of a collaboration record."""

    product_id: str
    customer_id: str
    location_id: str
    source_date: str


@dataclass(frozen=True)
class PersistedRecord:
    """Key columns of an already-stored record, used to fill in missing keys."""

    product_id: str | None
    customer_id: str
    location_id: str | None
    postdate: str | None


class PersistenceError(RuntimeError):
    """A write or lookup against the collaboration store failed."""


class PersistenceAdapter(Protocol):
    def upsert(self, key: UpsertKey, fields: Mapping[str, Any]) -> None:
        """Insert or update the record identified by *key*."""

    def find_persisted(
        self,
        customer_id: str,
        period_start: date,
        period_end: date,
        product_id: str | None = None,
    ) -> PersistedRecord | None:
        """Return any stored record for the customer within the period."""


# ---------------------------------------------------------------------------
# Databricks SQL implementation
# ---------------------------------------------------------------------------
class DatabricksCollaborationStore:
    """Collaboration store backed by a Unity Catalog Delta table."""

    def __init__(self, table: str = TABLE_COLLABORATION) -> None:
        self.table = table

    def upsert(self, key: UpsertKey, fields: Mapping[str, Any]) -> None:
        """MERGE one commercial input.

        ``commercial_notes`` is only overwritten when a value is supplied.
        A stale ``sm_kam_override`` is cleared so the KAM feed reads the new
        input back on the next rebuild.
        Any failure is raised as ``PersistenceError`` carrying the warehouse
        message unchanged.
        """
        query = f"""
            MERGE INTO {self.table} AS t
            USING (
                SELECT :product_id AS product_id,
                       :customer_id AS customer_id,
                       :location_id AS location_id,
                       :postdate AS postdate,
                       CAST(:commercial_input AS DOUBLE) AS commercial_input,
                       :commercial_notes AS commercial_notes
            ) AS s
            ON t.product_id = s.product_id
               AND t.customer_id = s.customer_id
               AND t.location_id = s.location_id
               AND t.postdate = s.postdate
            WHEN MATCHED THEN UPDATE SET
                t.commercial_input = s.commercial_input,
                t.sm_kam_override = NULL,
                t.commercial_notes = COALESCE(s.commercial_notes, t.commercial_notes),
                t.updated_at = current_timestamp()
            WHEN NOT MATCHED THEN INSERT
                (product_id, customer_id, location_id, postdate,
                 commercial_input, commercial_notes, updated_at)
            VALUES
                (s.product_id, s.customer_id, s.location_id, s.postdate,
                 s.commercial_input, s.commercial_notes, current_timestamp())
        """
        parameters = {
            "product_id": key.product_id,
            "customer_id": key.customer_id,
            "location_id": key.location_id,
            "postdate": key.source_date,
            "commercial_input": fields["commercial_input"],
            "commercial_notes": fields.get("commercial_notes"),
        }
        try:
            execute_sql(query, parameters=parameters)
        except Exception as exc:
            raise PersistenceError(str(exc)) from exc

        logger.info(
            "Upserted commercial input %s for %s/%s/%s @ %s",
            fields["commercial_input"],
            key.customer_id,
            key.product_id,
            key.location_id,
            key.source_date,
        )
        invalidate_cache("feed:")

    def find_persisted(
        self,
        customer_id: str,
        period_start: date,
        period_end: date,
        product_id: str | None = None,
    ) -> PersistedRecord | None:
        where_clauses = [
            "customer_id = :customer_id",
            "CAST(postdate AS DATE) BETWEEN :period_start AND :period_end",
            "location_id IS NOT NULL",
        ]
        parameters: dict[str, Any] = {
            "customer_id": customer_id,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        }
        if product_id:
            where_clauses.append("product_id = :product_id")
            parameters["product_id"] = product_id

        query = f"""
            SELECT product_id, customer_id, location_id, CAST(postdate AS STRING) AS postdate
            FROM {self.table}
            WHERE {' AND '.join(where_clauses)}
            ORDER BY postdate
            LIMIT 1
        """
        try:
            rows = execute_sql(query, parameters=parameters)
        except Exception as exc:
            raise PersistenceError(str(exc)) from exc
        if not rows:
            return None

        row = rows[0]
        return PersistedRecord(
            product_id=row.get("product_id"),
            customer_id=str(row.get("customer_id") or customer_id),
            location_id=row.get("location_id"),
            postdate=row.get("postdate"),
        )
