"""
Tests for the edit / redistribution engine.

Uses an in-memory store keyed by the upsert key so idempotency, partial
failure and key-resolution fallbacks can be checked without a warehouse.
"""

from __future__ import annotations

import os
import sys
from unittest.mock import MagicMock

import pytest

# Ensure the app package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "app"))

from forecast_collab.services.editing import (  # noqa: E402
    EditStatus,
    UnresolvedKeyError,
    apply_edit,
    fair_shares,
    plan_edit,
    resolve_upsert_key,
    round_half_up,
)
from forecast_collab.services.matrix import (  # noqa: E402
    EntityKey,
    FilterCriteria,
    PeriodMatrix,
    UnknownEntityError,
)
from forecast_collab.services.metrics import MetricField  # noqa: E402
from forecast_collab.services.periods import default_window  # noqa: E402
from forecast_collab.services.persistence import (  # noqa: E402
    PersistedRecord,
    PersistenceError,
    UpsertKey,
)

REFERENCE_YEAR = 2025


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class InMemoryStore:
    """Dict-backed collaboration store honouring the upsert contract."""

    def __init__(self, fail_for: set[str] | None = None, persisted=None):
        self.records: dict[UpsertKey, dict] = {}
        self.calls: list[UpsertKey] = []
        self.fail_for = fail_for or set()
        self.persisted: list[PersistedRecord] = list(persisted or [])

    def upsert(self, key, fields):
        self.calls.append(key)
        if key.customer_id in self.fail_for:
            raise PersistenceError(f"warehouse rejected write for {key.customer_id}")
        self.records.setdefault(key, {}).update(fields)

    def find_persisted(self, customer_id, period_start, period_end, product_id=None):
        for rec in self.persisted:
            if rec.customer_id == customer_id and (product_id is None or rec.product_id == product_id):
                return rec
        return None


def _matrix(effective: dict[str, float], period: str = "mar-25") -> PeriodMatrix:
    matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
    for idx, (customer, value) in enumerate(effective.items()):
        ent = matrix.entity(customer, f"P{idx}")
        ent.location_id = f"L{idx}"
        ent.set_source_date(period, "2025-03-01T00:00:00")
        ent.record(period).accumulate(MetricField.STATISTICAL_FORECAST, "seed", value)
    return matrix


# ===========================================================================
# Fair share
# ===========================================================================
class TestFairShare:
    """Proportional split with an even-split fallback."""

    def test_proportional(self):
        assert fair_shares([300, 700], 1000) == [300, 700]
        assert fair_shares([300, 700], 2000) == [600, 1400]

    def test_even_split_when_total_is_zero(self):
        assert fair_shares([0, 0, 0, 0], 10) == [3, 3, 3, 3]

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4
        assert round_half_up(-2.5) == -3
        assert round_half_up(1.49) == 1

    def test_conservation_within_entity_count(self):
        current = [1, 1, 1]
        shares = fair_shares(current, 100)
        assert abs(sum(shares) - 100) <= len(current)


# ===========================================================================
# Aggregate edits
# ===========================================================================
class TestAggregateEdit:
    """Edits on the "all" row."""

    def test_proportional_redistribution_scenario(self):
        """A=300, B=700, set March total to 1000 -> 300 / 700."""
        matrix = _matrix({"A": 300, "B": 700})
        store = InMemoryStore()
        result = apply_edit(matrix, "all", "mar-25", 1000, store)

        assert result.status is EditStatus.COMMITTED
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 300
        assert matrix.get("B", "P1").periods["mar-25"].kam_adjustment == 700
        assert len(store.records) == 2

    def test_doubling_total(self):
        matrix = _matrix({"A": 300, "B": 700})
        apply_edit(matrix, "all", "mar-25", 2000, InMemoryStore())
        values = [ent.periods["mar-25"].kam_adjustment for ent in matrix.select()]
        assert values == [600, 1400]
        assert sum(values) == 2000

    def test_effective_forecast_drives_weights(self):
        matrix = _matrix({"A": 300, "B": 700})
        # A KAM adjustment takes precedence over A's statistical forecast
        matrix.get("A", "P0").record("mar-25").overwrite(MetricField.KAM_ADJUSTMENT, 700)
        apply_edit(matrix, "all", "mar-25", 700, InMemoryStore())
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 350
        assert matrix.get("B", "P1").periods["mar-25"].kam_adjustment == 350

    def test_even_split_when_nothing_forecast(self):
        matrix = _matrix({"A": 0, "B": 0, "C": 0})
        apply_edit(matrix, "all", "mar-25", 90, InMemoryStore())
        assert [e.periods["mar-25"].kam_adjustment for e in matrix.select()] == [30, 30, 30]

    def test_criteria_limit_the_entity_set(self):
        matrix = _matrix({"A": 300, "B": 700})
        criteria = FilterCriteria.build(customer_ids=["B"])
        store = InMemoryStore()
        apply_edit(matrix, "all", "mar-25", 500, store, criteria=criteria)
        assert matrix.get("B", "P1").periods["mar-25"].kam_adjustment == 500
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 0
        assert [k.customer_id for k in store.calls] == ["B"]

    def test_partial_failure_keeps_committed_siblings(self):
        matrix = _matrix({"A": 300, "B": 700})
        store = InMemoryStore(fail_for={"A"})
        result = apply_edit(matrix, "all", "mar-25", 1000, store)

        assert result.status is EditStatus.PARTIAL
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 0
        assert matrix.get("B", "P1").periods["mar-25"].kam_adjustment == 700
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.entity == EntityKey("A", "P0")
        assert failure.kind == "persistence"
        assert failure.reason == "warehouse rejected write for A"

    def test_empty_selection_raises(self):
        matrix = _matrix({"A": 300})
        with pytest.raises(ValueError):
            apply_edit(
                matrix, "all", "mar-25", 10, InMemoryStore(),
                criteria=FilterCriteria.build(customer_ids=["nobody"]),
            )

    def test_plan_does_not_touch_matrix_or_store(self):
        matrix = _matrix({"A": 300, "B": 700})
        store = InMemoryStore()
        plan = plan_edit(matrix, "all", "mar-25", 2000, store)
        assert [p.value for p in plan.proposals] == [600, 1400]
        assert not store.records
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 0


# ===========================================================================
# Individual edits
# ===========================================================================
class TestIndividualEdit:
    """Edits on a single customer/product row."""

    def test_sets_exact_value_and_keeps_snapshot(self):
        matrix = _matrix({"A": 300})
        rec = matrix.get("A", "P0").record("mar-25")
        rec.overwrite(MetricField.ORIGINAL_COMMERCIAL_INPUT, 250)
        store = InMemoryStore()
        result = apply_edit(matrix, ("A", "P0"), "mar-25", 412.5, store, notes="promo")

        assert result.status is EditStatus.COMMITTED
        assert rec.kam_adjustment == 412.5
        assert rec.original_commercial_input == 250
        key = UpsertKey("P0", "A", "L0", "2025-03-01T00:00:00")
        assert store.records[key] == {"commercial_input": 412.5, "commercial_notes": "promo"}

    def test_replaying_edit_keeps_one_record(self):
        matrix = _matrix({"A": 300})
        store = InMemoryStore()
        apply_edit(matrix, ("A", "P0"), "mar-25", 100, store)
        apply_edit(matrix, ("A", "P0"), "mar-25", 100, store)
        assert len(store.calls) == 2
        assert len(store.records) == 1

    def test_persistence_failure_leaves_matrix_untouched(self):
        matrix = _matrix({"A": 300})
        store = InMemoryStore(fail_for={"A"})
        result = apply_edit(matrix, ("A", "P0"), "mar-25", 100, store)
        assert result.status is EditStatus.FAILED
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 0

    def test_adapter_bug_is_not_reported_as_persistence_failure(self):
        matrix = _matrix({"A": 300, "B": 100})
        store = InMemoryStore()
        store.upsert = MagicMock(side_effect=KeyError("commercial_input"))
        with pytest.raises(KeyError):
            apply_edit(matrix, "all", "mar-25", 800, store)
        assert matrix.get("A", "P0").periods["mar-25"].kam_adjustment == 0

    def test_rebuild_hook_runs_after_commit(self):
        matrix = _matrix({"A": 300})
        rebuild = MagicMock()
        result = apply_edit(matrix, ("A", "P0"), "mar-25", 100, InMemoryStore(), rebuild=rebuild)
        rebuild.assert_called_once_with()
        assert result.rebuilt

    def test_rebuild_hook_skipped_when_nothing_committed(self):
        matrix = _matrix({"A": 300})
        rebuild = MagicMock()
        apply_edit(matrix, ("A", "P0"), "mar-25", 100, InMemoryStore(fail_for={"A"}), rebuild=rebuild)
        rebuild.assert_not_called()

    def test_unknown_entity_or_period(self):
        matrix = _matrix({"A": 300})
        with pytest.raises(UnknownEntityError):
            apply_edit(matrix, ("Z", "P9"), "mar-25", 1, InMemoryStore())
        with pytest.raises(ValueError) as exc_info:
            apply_edit(matrix, ("A", "P0"), "mar-30", 1, InMemoryStore())
        assert not isinstance(exc_info.value, UnknownEntityError)
        with pytest.raises(ValueError):
            apply_edit(matrix, "everyone", "mar-25", 1, InMemoryStore())


# ===========================================================================
# Key resolution
# ===========================================================================
class TestKeyResolution:
    """Location and source-date fallbacks before a write is allowed."""

    def _bare_entity(self, product="P1"):
        matrix = PeriodMatrix(window=default_window(REFERENCE_YEAR), reference_year=REFERENCE_YEAR)
        ent = matrix.entity("A", product)
        ent.record("mar-25").accumulate(MetricField.STATISTICAL_FORECAST, "seed", 10)
        return matrix, ent

    def test_single_selected_location_is_used(self):
        _, ent = self._bare_entity()
        ent.set_source_date("mar-25", "2025-03-01")
        key = resolve_upsert_key(ent, "mar-25", criteria=FilterCriteria.build(location_ids=["L7"]))
        assert key.location_id == "L7"

    def test_persisted_record_fills_location_and_date(self):
        _, ent = self._bare_entity()
        store = InMemoryStore(
            persisted=[PersistedRecord("P1", "A", "L3", "2025-03-01 00:00:00")]
        )
        key = resolve_upsert_key(ent, "mar-25", adapter=store)
        assert key == UpsertKey("P1", "A", "L3", "2025-03-01 00:00:00")

    def test_falls_back_to_any_product_of_the_customer(self):
        _, ent = self._bare_entity()
        store = InMemoryStore(persisted=[PersistedRecord("P9", "A", "L4", "2025-03-01")])
        key = resolve_upsert_key(ent, "mar-25", adapter=store)
        assert key.product_id == "P1"
        assert key.location_id == "L4"

    def test_unresolvable_key_is_diagnosable(self):
        _, ent = self._bare_entity()
        with pytest.raises(UnresolvedKeyError) as exc_info:
            resolve_upsert_key(ent, "mar-25", adapter=InMemoryStore())
        assert exc_info.value.missing == ["location_id", "source_date"]

    def test_no_product_entity_is_rejected(self):
        matrix, ent = self._bare_entity(product=None)
        ent.location_id = "L1"
        ent.set_source_date("mar-25", "2025-03-01")
        store = InMemoryStore()
        result = apply_edit(matrix, ("A", "no-product"), "mar-25", 5, store)
        assert result.status is EditStatus.REJECTED
        assert "product_id" in result.failures[0].reason
        assert not store.calls

    def test_rejected_entity_does_not_block_siblings(self):
        matrix = _matrix({"A": 300, "B": 700})
        ent = matrix.get("A", "P0")
        ent.location_id = None
        result = apply_edit(matrix, "all", "mar-25", 1000, InMemoryStore())
        assert result.status is EditStatus.PARTIAL
        assert result.failures[0].kind == "unresolved_key"
        assert matrix.get("B", "P1").periods["mar-25"].kam_adjustment == 700
