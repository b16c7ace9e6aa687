"""
Period matrix.

The canonical in-memory structure of the collaboration view: entity
(customer x product) -> period key -> metric record.  Rebuilt in full on
every fetch cycle by the row ingestors.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, NamedTuple

from forecast_collab.services.metrics import ACCUMULATING_FIELDS, MetricField, Unit
from forecast_collab.services.periods import PeriodWindow, window_for_range

logger = logging.getLogger(__name__)

NO_PRODUCT = "no-product"


class UnknownEntityError(ValueError):
    """No entity with the requested (customer, product) key is in the matrix."""


def safe_float(value: Any) -> float:
    """Coerce a raw source value to a finite float; anything else is 0.0."""
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def clean_id(value: Any) -> str | None:
    """Strip an identifier to a non-empty string, or ``None``."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Metric record
# ---------------------------------------------------------------------------
@dataclass
class MetricRecord:
    """Metric values for one entity in one period.

    Accumulating fields keep each raw row's contribution under the row's
    identity, so ingesting the same row again replaces its earlier value
    instead of adding to it.
    """

    last_year: float = 0.0
    forecast_sales_gap: float = 0.0
    statistical_forecast: float = 0.0
    approved_override: float = 0.0
    kam_adjustment: float = 0.0
    sales_manager_view: float = 0.0
    predicted_demand: float = 0.0
    sell_in_two_years_prior: float = 0.0
    sell_in_prior_year: float = 0.0
    sell_in_actual: float = 0.0
    sell_out_prior_year: float = 0.0
    sell_out_actual: float = 0.0
    inventory_on_hand: float = 0.0
    inventory_days: float = 0.0
    original_commercial_input: float = 0.0
    budget_current_year: float = 0.0
    budget_next_year: float = 0.0
    channel_price_index: float = 0.0
    contributions: dict[tuple[MetricField, str], float] = field(
        default_factory=dict, repr=False
    )

    @property
    def effective_forecast(self) -> float:
        """KAM adjustment, else the approved override, else the statistical forecast."""
        if self.kam_adjustment:
            return self.kam_adjustment
        if self.approved_override:
            return self.approved_override
        return self.statistical_forecast

    def get(self, metric: MetricField) -> float:
        return getattr(self, metric.value)

    def accumulate(self, metric: MetricField, row_id: str, value: Any) -> None:
        if metric not in ACCUMULATING_FIELDS:
            raise ValueError(f"{metric.value} holds a single value and cannot accumulate")
        amount = safe_float(value)
        previous = self.contributions.get((metric, row_id), 0.0)
        self.contributions[(metric, row_id)] = amount
        setattr(self, metric.value, self.get(metric) - previous + amount)

    def overwrite(self, metric: MetricField, value: Any) -> None:
        if metric is MetricField.EFFECTIVE_FORECAST:
            raise ValueError("effective_forecast is derived and cannot be stored")
        if metric in ACCUMULATING_FIELDS:
            raise ValueError(f"{metric.value} accumulates per source row and cannot be overwritten")
        setattr(self, metric.value, safe_float(value))

    def as_dict(self) -> dict[str, float]:
        return {metric.value: self.get(metric) for metric in MetricField}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
class EntityKey(NamedTuple):
    customer_id: str
    product_id: str

    def __str__(self) -> str:
        return f"{self.customer_id}-{self.product_id}"


@dataclass
class Entity:
    """One (customer, product) row of the collaboration grid."""

    customer_id: str
    product_id: str
    location_id: str | None = None
    customer_name: str | None = None
    units_cases: float = 0.0
    units_volume: float = 0.0
    units_weight: float = 0.0
    periods: dict[str, MetricRecord] = field(default_factory=dict)
    source_dates: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.customer_id, self.product_id)

    @property
    def has_product(self) -> bool:
        return self.product_id != NO_PRODUCT

    def record(self, period: str) -> MetricRecord:
        """Return the record for *period*, materializing a zero record first."""
        rec = self.periods.get(period)
        if rec is None:
            rec = MetricRecord()
            self.periods[period] = rec
        return rec

    def value(self, period: str, metric: MetricField) -> float:
        rec = self.periods.get(period)
        return rec.get(metric) if rec is not None else 0.0

    def multiplier(self, unit: Unit) -> float:
        if unit is Unit.VOLUME:
            return self.units_volume
        if unit is Unit.WEIGHT:
            return self.units_weight
        return 1.0

    def note_location(self, location_id: str | None) -> None:
        if location_id and not self.location_id:
            self.location_id = location_id

    def set_source_date(
        self, period: str, source_date: str, authoritative: bool = False
    ) -> None:
        """Remember the literal date a period came from.

        The first feed to touch a period sets it; an authoritative feed
        (the forecast rows edits are written against) always wins.
        """
        if authoritative or period not in self.source_dates:
            self.source_dates[period] = source_date


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FilterCriteria:
    """Resolved leaf-level selection.  Empty sets mean "no constraint"."""

    customer_ids: frozenset[str] = frozenset()
    product_ids: frozenset[str] = frozenset()
    location_ids: frozenset[str] = frozenset()
    date_range: tuple[date, date] | None = None

    @classmethod
    def build(
        cls,
        customer_ids: Iterable[str] | None = None,
        product_ids: Iterable[str] | None = None,
        location_ids: Iterable[str] | None = None,
        date_range: tuple[date, date] | None = None,
    ) -> "FilterCriteria":
        return cls(
            customer_ids=frozenset(customer_ids or ()),
            product_ids=frozenset(product_ids or ()),
            location_ids=frozenset(location_ids or ()),
            date_range=date_range,
        )

    @property
    def is_active(self) -> bool:
        return bool(
            self.customer_ids or self.product_ids or self.location_ids or self.date_range
        )

    @property
    def selected_location(self) -> str | None:
        """The location when exactly one is selected."""
        if len(self.location_ids) == 1:
            return next(iter(self.location_ids))
        return None

    def accepts(
        self, customer_id: str, product_id: str | None, location_id: str | None
    ) -> bool:
        if self.customer_ids and customer_id not in self.customer_ids:
            return False
        if self.product_ids and product_id not in self.product_ids:
            return False
        if self.location_ids and location_id not in self.location_ids:
            return False
        return True

    def window(self) -> PeriodWindow | None:
        if self.date_range is None:
            return None
        return window_for_range(*self.date_range)


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------
@dataclass
class PeriodMatrix:
    """All entities of one fetch cycle over one period window."""

    window: PeriodWindow
    reference_year: int
    entities: dict[EntityKey, Entity] = field(default_factory=dict)
    skipped: Counter = field(default_factory=Counter)

    @property
    def periods(self) -> list[str]:
        return self.window.periods

    @property
    def is_empty(self) -> bool:
        return not self.entities

    def entity(self, customer_id: str, product_id: str | None) -> Entity:
        """Return the entity for the key, creating it on first touch."""
        key = EntityKey(customer_id, product_id or NO_PRODUCT)
        ent = self.entities.get(key)
        if ent is None:
            ent = Entity(customer_id=key.customer_id, product_id=key.product_id)
            self.entities[key] = ent
        return ent

    def get(self, customer_id: str, product_id: str | None) -> Entity | None:
        return self.entities.get(EntityKey(customer_id, product_id or NO_PRODUCT))

    def entities_for_product(
        self, product_id: str, location_id: str | None = None
    ) -> list[Entity]:
        return [
            ent
            for ent in self.entities.values()
            if ent.product_id == product_id
            and (location_id is None or ent.location_id == location_id)
        ]

    def select(self, criteria: FilterCriteria | None = None) -> list[Entity]:
        """Entities matching *criteria*, in a stable (customer, product) order."""
        return [
            ent
            for _, ent in sorted(self.entities.items())
            if criteria is None
            or criteria.accepts(ent.customer_id, ent.product_id, ent.location_id)
        ]

    def skip(self, feed: str, reason: str) -> None:
        self.skipped[f"{feed}:{reason}"] += 1

    def drop_empty(self) -> int:
        """Remove entities whose every stored value is zero; return how many."""
        empty = [
            key
            for key, ent in self.entities.items()
            if not any(
                rec.get(metric)
                for rec in ent.periods.values()
                for metric in MetricField
            )
        ]
        for key in empty:
            del self.entities[key]
        return len(empty)
