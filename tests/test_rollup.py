"""
Tests for the rollup aggregator.

Window definitions (including the TOTAL double count), unit conversion,
zero suppression, year scoping and aggregate consistency.
"""

from __future__ import annotations

import os
import sys
from datetime import date

import pytest

# Ensure the app package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "app"))

from forecast_collab.services.matrix import EntityKey, FilterCriteria, PeriodMatrix  # noqa: E402
from forecast_collab.services.metrics import (  # noqa: E402
    MetricField,
    Unit,
    UnknownMetricLabel,
    Window,
)
from forecast_collab.services.periods import default_window, window_for_range  # noqa: E402
from forecast_collab.services.rollup import rollup, rollup_entity, summarize  # noqa: E402


REFERENCE_YEAR = 2025


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
def _matrix_with_forecast(values: dict[str, float], units_volume: float = 2.0) -> PeriodMatrix:
    matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
    ent = matrix.entity("C1", "P1")
    ent.units_volume = units_volume
    ent.units_weight = 0.5
    for period, value in values.items():
        ent.record(period).accumulate(MetricField.STATISTICAL_FORECAST, "seed", value)
    return matrix


@pytest.fixture
def two_entity_matrix() -> PeriodMatrix:
    matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
    a = matrix.entity("A", "P1")
    a.location_id = "L1"
    a.units_volume = 1.5
    a.units_weight = 3.0
    b = matrix.entity("B", "P2")
    b.location_id = "L2"
    b.units_volume = 0.25
    b.units_weight = 0.0
    for period, (va, vb) in {
        "jan-25": (10, 20),
        "jun-25": (5, 0),
        "oct-26": (7, 1),
        "dec-26": (3, 9),
    }.items():
        a.record(period).accumulate(MetricField.STATISTICAL_FORECAST, "seed", va)
        b.record(period).accumulate(MetricField.STATISTICAL_FORECAST, "seed", vb)
    a.record("mar-25").overwrite(MetricField.BUDGET_CURRENT_YEAR, 100)
    a.record("mar-26").overwrite(MetricField.BUDGET_CURRENT_YEAR, 999)
    return matrix


# ===========================================================================
# Windows
# ===========================================================================
class TestWindows:
    """YTD spans the whole window, YTG the last three periods."""

    def test_ytd_is_full_window(self):
        matrix = _matrix_with_forecast({"oct-24": 1, "mar-25": 10, "dec-26": 100})
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.YTD) == 111

    def test_ytg_is_last_three_periods(self):
        matrix = _matrix_with_forecast({"sep-26": 1000, "oct-26": 1, "nov-26": 2, "dec-26": 4})
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.YTG) == 7

    def test_total_double_counts_last_three_periods(self):
        """TOTAL = YTD + YTG, so the last three periods are counted twice."""
        matrix = _matrix_with_forecast({"jan-25": 10, "nov-26": 5})
        ytd = rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.YTD)
        ytg = rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.YTG)
        total = rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.TOTAL)
        assert (ytd, ytg) == (15, 5)
        assert total == 20

    def test_ytg_follows_selected_range(self):
        matrix = PeriodMatrix(
            window=window_for_range(date(2025, 1, 1), date(2025, 5, 31)),
            reference_year=REFERENCE_YEAR,
        )
        ent = matrix.entity("C1", "P1")
        for period, value in {"jan-25": 1, "feb-25": 2, "mar-25": 3, "apr-25": 4, "may-25": 5}.items():
            ent.record(period).accumulate(MetricField.STATISTICAL_FORECAST, "seed", value)
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES, Window.YTG) == 12


# ===========================================================================
# Units
# ===========================================================================
class TestUnits:
    """Case-equivalents are raw; volume and weight use the entity multiplier."""

    def test_cases_are_raw(self):
        matrix = _matrix_with_forecast({"jan-25": 10})
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.CASES) == 10

    def test_volume_and_weight_multiply(self):
        matrix = _matrix_with_forecast({"jan-25": 10, "feb-25": 5}, units_volume=2.0)
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.VOLUME) == 30
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.WEIGHT) == 7.5

    def test_missing_multiplier_gives_zero(self):
        matrix = _matrix_with_forecast({"jan-25": 10}, units_volume=0.0)
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.VOLUME) == 0

    def test_budget_is_not_unit_scaled(self, two_entity_matrix):
        value = rollup(
            two_entity_matrix,
            EntityKey("A", "P1"),
            MetricField.BUDGET_CURRENT_YEAR,
            Unit.VOLUME,
            Window.YTD,
        )
        assert value == 100


# ===========================================================================
# Zero suppression and year scoping
# ===========================================================================
class TestZeroSuppressionAndScoping:
    """All-zero raw data stays zero; year-scoped metrics ignore other years."""

    def test_all_zero_sell_in_with_multiplier_is_zero(self):
        matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
        ent = matrix.entity("A", "P1")
        ent.units_volume = 2.5
        for period in matrix.periods:
            ent.record(period)
        for unit in Unit:
            assert rollup_entity(matrix, ent, MetricField.SELL_IN_PRIOR_YEAR, unit, Window.YTD) == 0

    def test_offsetting_values_are_suppressed(self):
        matrix = _matrix_with_forecast({"jan-25": 10, "feb-25": -10}, units_volume=3.0)
        assert rollup(matrix, None, MetricField.STATISTICAL_FORECAST, Unit.VOLUME) == 0

    def test_budget_for_other_year_contributes_zero(self, two_entity_matrix):
        """mar-26 holds a stray current-year budget; only 2025 periods count."""
        value = rollup(
            two_entity_matrix,
            EntityKey("A", "P1"),
            MetricField.BUDGET_CURRENT_YEAR,
            Unit.CASES,
            Window.YTD,
        )
        assert value == 100

    def test_next_year_budget_scoped_to_next_year(self):
        matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
        ent = matrix.entity("A", "P1")
        ent.record("dec-25").overwrite(MetricField.BUDGET_NEXT_YEAR, 50)
        ent.record("jan-26").overwrite(MetricField.BUDGET_NEXT_YEAR, 70)
        assert rollup(matrix, None, MetricField.BUDGET_NEXT_YEAR) == 70


# ===========================================================================
# Aggregates
# ===========================================================================
class TestAggregate:
    """The aggregate row is the sum of the per-entity rollups."""

    def test_aggregate_equals_sum_of_parts(self, two_entity_matrix):
        for unit in Unit:
            for window in Window:
                whole = rollup(two_entity_matrix, None, MetricField.STATISTICAL_FORECAST, unit, window)
                parts = sum(
                    rollup(two_entity_matrix, ent, MetricField.STATISTICAL_FORECAST, unit, window)
                    for ent in two_entity_matrix.select()
                )
                assert whole == pytest.approx(parts)

    def test_aggregate_is_not_raw_sum_times_multiplier(self, two_entity_matrix):
        """B has an all-zero weight multiplier; only A's weight counts."""
        value = rollup(two_entity_matrix, None, MetricField.STATISTICAL_FORECAST, Unit.WEIGHT)
        assert value == pytest.approx((10 + 5 + 7 + 3) * 3.0)

    def test_filter_criteria_selects_entities(self, two_entity_matrix):
        criteria = FilterCriteria.build(location_ids=["L2"])
        value = rollup(two_entity_matrix, criteria, MetricField.STATISTICAL_FORECAST)
        assert value == 30

    def test_row_caption_resolves_to_field(self, two_entity_matrix):
        assert rollup(two_entity_matrix, None, "Forecast") == 55

    def test_unknown_caption_is_rejected(self, two_entity_matrix):
        with pytest.raises(UnknownMetricLabel):
            rollup(two_entity_matrix, None, "Forecast 2099")

    def test_unknown_entity_is_rejected(self, two_entity_matrix):
        with pytest.raises(ValueError):
            rollup(two_entity_matrix, ("Z", "P9"), MetricField.STATISTICAL_FORECAST)

    def test_summarize_grid(self, two_entity_matrix):
        aggregate, per_entity = summarize(two_entity_matrix, None, MetricField.STATISTICAL_FORECAST)
        assert set(per_entity) == {("A", "P1"), ("B", "P2")}
        assert aggregate[Unit.CASES][Window.YTD] == 55
        # YTG window: oct-26, nov-26, dec-26
        assert aggregate[Unit.CASES][Window.YTG] == 20
        assert aggregate[Unit.CASES][Window.TOTAL] == 75
        assert per_entity[("B", "P2")][Unit.VOLUME][Window.YTD] == pytest.approx(30 * 0.25)
