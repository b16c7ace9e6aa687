"""
Rollup aggregator.

YTD / YTG / TOTAL summaries of one metric, in one of three unit systems,
for a single entity or a selection of entities.

Window definitions follow the planning team's conventions, not the
calendar ones:

* YTD   -- every period of the configured window.
* YTG   -- the last three periods of the window.
* TOTAL -- YTD + YTG, so the last three periods are counted twice.
"""

from __future__ import annotations

import logging
from typing import Iterable, Union

from forecast_collab.services.matrix import (
    Entity,
    EntityKey,
    FilterCriteria,
    PeriodMatrix,
    UnknownEntityError,
)
from forecast_collab.services.metrics import (
    MetricField,
    Unit,
    Window,
    field_for_label,
    rule_for,
)
from forecast_collab.services.periods import period_year, sort_periods

logger = logging.getLogger(__name__)

YTG_PERIODS = 3

EntitySelector = Union[
    None, FilterCriteria, Entity, EntityKey, Iterable[Union[Entity, EntityKey]]
]
Grid = dict[Unit, dict[Window, float]]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------
def _lookup(matrix: PeriodMatrix, key: EntityKey) -> Entity:
    ent = matrix.entities.get(EntityKey(*key))
    if ent is None:
        raise UnknownEntityError(f"Unknown entity: {EntityKey(*key)}")
    return ent


def resolve_selection(matrix: PeriodMatrix, selector: EntitySelector) -> list[Entity]:
    """Turn a selector into the list of entities it names.

    ``None`` selects every entity, a ``FilterCriteria`` the entities it
    accepts.  Unknown keys raise ``UnknownEntityError``.
    """
    if selector is None or isinstance(selector, FilterCriteria):
        return matrix.select(selector)
    if isinstance(selector, Entity):
        return [selector]
    if isinstance(selector, tuple) and all(isinstance(part, str) for part in selector):
        return [_lookup(matrix, selector)]
    return [
        item if isinstance(item, Entity) else _lookup(matrix, item)
        for item in selector
    ]


def _as_field(metric: MetricField | str) -> MetricField:
    return metric if isinstance(metric, MetricField) else field_for_label(metric)


# ---------------------------------------------------------------------------
# Per-entity rollup
# ---------------------------------------------------------------------------
def _sum_periods(
    entity: Entity,
    periods: list[str],
    metric: MetricField,
    unit: Unit,
    target_year: int | None,
    converts_units: bool,
) -> float:
    raw = [
        entity.value(p, metric)
        if target_year is None or period_year(p) == target_year
        else 0.0
        for p in periods
    ]
    # All-zero source data stays zero whatever the multiplier
    if sum(raw) == 0:
        return 0.0
    if unit is Unit.CASES or not converts_units:
        return sum(raw)
    factor = entity.multiplier(unit)
    return sum(value * factor for value in raw)


def rollup_entity(
    matrix: PeriodMatrix,
    entity: Entity,
    metric: MetricField,
    unit: Unit,
    window: Window,
) -> float:
    rule = rule_for(metric)
    target_year = (
        None if rule.year_offset is None else matrix.reference_year + rule.year_offset
    )
    periods = sort_periods(matrix.periods)
    ytg_periods = periods[-YTG_PERIODS:]

    def _total(keys: list[str]) -> float:
        return _sum_periods(entity, keys, metric, unit, target_year, rule.converts_units)

    if window is Window.YTD:
        return _total(periods)
    if window is Window.YTG:
        return _total(ytg_periods)
    return _total(periods) + _total(ytg_periods)


def rollup(
    matrix: PeriodMatrix,
    selector: EntitySelector,
    metric: MetricField | str,
    unit: Unit = Unit.CASES,
    window: Window = Window.YTD,
) -> float:
    """Roll *metric* up over the selected entities.

    The aggregate is always the sum of the per-entity rollups, so the "all"
    row can never disagree with the rows beneath it.
    """
    field = _as_field(metric)
    return sum(
        rollup_entity(matrix, ent, field, unit, window)
        for ent in resolve_selection(matrix, selector)
    )


# ---------------------------------------------------------------------------
# Summary grids
# ---------------------------------------------------------------------------
def rollup_grid(matrix: PeriodMatrix, entity: Entity, metric: MetricField) -> Grid:
    return {
        unit: {window: rollup_entity(matrix, entity, metric, unit, window) for window in Window}
        for unit in Unit
    }


def summarize(
    matrix: PeriodMatrix,
    selector: EntitySelector,
    metric: MetricField | str,
) -> tuple[Grid, dict[EntityKey, Grid]]:
    """Unit x window grid for the aggregate row and for each selected entity."""
    field = _as_field(metric)
    per_entity = {
        ent.key: rollup_grid(matrix, ent, field)
        for ent in resolve_selection(matrix, selector)
    }
    aggregate: Grid = {
        unit: {
            window: sum(grid[unit][window] for grid in per_entity.values())
            for window in Window
        }
        for unit in Unit
    }
    return aggregate, per_entity
