"""
Edit / redistribution engine.

Applies a single-cell edit of the KAM adjustment, either to one entity or to
the aggregate "all" row, whose new total is redistributed across the
selected entities by fair share.

Edits are two-phase: the plan is computed first, each upsert is sent to the
persistence adapter, and only confirmed writes are applied to the matrix.
A failed write is reported for its entity without touching siblings that
already committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Sequence

from forecast_collab.services.matrix import Entity, EntityKey, FilterCriteria, PeriodMatrix
from forecast_collab.services.metrics import MetricField
from forecast_collab.services.periods import period_end_date, period_start_date
from forecast_collab.services.persistence import (
    PersistenceAdapter,
    PersistenceError,
    UpsertKey,
)
from forecast_collab.services.rollup import resolve_selection

logger = logging.getLogger(__name__)

AGGREGATE_TARGET = "all"

EditTarget = str | EntityKey | tuple[str, str]


class EditStatus(str, Enum):
    COMMITTED = "committed"
    PARTIAL = "partial"
    FAILED = "failed"
    REJECTED = "rejected"


class UnresolvedKeyError(ValueError):
    """The upsert key of an entity/period could not be fully determined."""

    def __init__(self, entity: EntityKey, period: str, missing: Sequence[str]) -> None:
        self.entity = entity
        self.period = period
        self.missing = list(missing)
        super().__init__(
            f"Cannot resolve {', '.join(self.missing)} for {entity} in {period}"
        )


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class EntityPeriodValue:
    entity: EntityKey
    period: str
    previous: float
    value: float


@dataclass(frozen=True)
class UpsertOp:
    entity: EntityKey
    period: str
    key: UpsertKey
    fields: dict[str, Any]


@dataclass(frozen=True)
class EditFailure:
    entity: EntityKey
    period: str
    kind: str  # "unresolved_key" | "persistence"
    reason: str


@dataclass
class EditPlan:
    target: str
    period: str
    new_value: float
    proposals: list[EntityPeriodValue] = field(default_factory=list)
    operations: list[UpsertOp] = field(default_factory=list)
    rejections: list[EditFailure] = field(default_factory=list)


@dataclass
class EditResult:
    target: str
    period: str
    new_value: float
    mutations: list[EntityPeriodValue] = field(default_factory=list)
    persistence_ops: list[UpsertOp] = field(default_factory=list)
    failures: list[EditFailure] = field(default_factory=list)
    rebuilt: bool = False

    @property
    def status(self) -> EditStatus:
        if not self.failures:
            return EditStatus.COMMITTED
        if self.mutations:
            return EditStatus.PARTIAL
        if all(f.kind == "unresolved_key" for f in self.failures):
            return EditStatus.REJECTED
        return EditStatus.FAILED


# ---------------------------------------------------------------------------
# Fair share
# ---------------------------------------------------------------------------
def round_half_up(value: float) -> float:
    """Round to the nearest whole unit, halves away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fair_shares(current: Sequence[float], new_total: float) -> list[float]:
    """Split *new_total* across entities in proportion to *current*.

    Falls back to an even split when the current total is not positive.
    Shares are rounded to whole units, so their sum may differ from
    *new_total* by at most one unit per entity.
    """
    if not current:
        return []
    total = sum(current)
    if total > 0:
        raw = [value / total * new_total for value in current]
    else:
        raw = [new_total / len(current)] * len(current)
    return [round_half_up(share) for share in raw]


# ---------------------------------------------------------------------------
# Key resolution
# ---------------------------------------------------------------------------
def resolve_upsert_key(
    entity: Entity,
    period: str,
    adapter: PersistenceAdapter | None = None,
    criteria: FilterCriteria | None = None,
) -> UpsertKey:
    """Determine the full composite key an edit must be written against.

    Location falls back from the entity to a single selected location, then
    to an already-persisted record of the customer for the same product and
    period, then of any product.  The source date is the literal date stored
    for the period, else the persisted record's.  Raises
    ``UnresolvedKeyError`` if anything is still missing.
    """
    product_id = entity.product_id if entity.has_product else None
    location_id = entity.location_id or (criteria.selected_location if criteria else None)
    source_date = entity.source_dates.get(period)

    if adapter is not None and (location_id is None or source_date is None):
        start, end = period_start_date(period), period_end_date(period)
        lookups = [product_id, None] if product_id else [None]
        for lookup_product in lookups:
            found = adapter.find_persisted(entity.customer_id, start, end, lookup_product)
            if found is None:
                continue
            location_id = location_id or found.location_id
            source_date = source_date or found.postdate
            if location_id and source_date:
                break

    missing = [
        name
        for name, value in (
            ("product_id", product_id),
            ("location_id", location_id),
            ("source_date", source_date),
        )
        if not value
    ]
    if missing:
        raise UnresolvedKeyError(entity.key, period, missing)
    return UpsertKey(product_id, entity.customer_id, location_id, source_date)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------
def _target_entities(
    matrix: PeriodMatrix,
    target: EditTarget,
    criteria: FilterCriteria | None,
) -> list[Entity]:
    if target == AGGREGATE_TARGET:
        entities = resolve_selection(matrix, criteria)
        if not entities:
            raise ValueError("No entities selected for an aggregate edit")
        return entities
    if isinstance(target, str):
        raise ValueError(f"Unknown edit target: {target!r}")
    return resolve_selection(matrix, EntityKey(*target))


def _target_label(target: EditTarget) -> str:
    return AGGREGATE_TARGET if target == AGGREGATE_TARGET else str(EntityKey(*target))


def plan_edit(
    matrix: PeriodMatrix,
    target: EditTarget,
    period: str,
    new_value: float,
    adapter: PersistenceAdapter | None = None,
    criteria: FilterCriteria | None = None,
    notes: str | None = None,
) -> EditPlan:
    """Compute the per-entity values and upserts of an edit without writing.

    Parameters
    ----------
    target:
        ``"all"`` for the aggregate row, else a (customer_id, product_id) key.
    period:
        Period key of the edited cell; must be inside the matrix window.
    new_value:
        The new cell value (the new period total for ``"all"``).
    adapter:
        Used only to look up persisted records when a key is incomplete.
    criteria:
        Current selection; defines the entity set of an aggregate edit.
    """
    if period not in matrix.window:
        raise ValueError(f"Period {period!r} is outside the matrix window")

    entities = _target_entities(matrix, target, criteria)
    if target == AGGREGATE_TARGET:
        current = [ent.value(period, MetricField.EFFECTIVE_FORECAST) for ent in entities]
        values = fair_shares(current, new_value)
    else:
        values = [float(new_value)]

    plan = EditPlan(target=_target_label(target), period=period, new_value=float(new_value))
    for ent, value in zip(entities, values):
        try:
            key = resolve_upsert_key(ent, period, adapter, criteria)
        except UnresolvedKeyError as exc:
            logger.warning("Rejected edit for %s: %s", ent.key, exc)
            plan.rejections.append(EditFailure(ent.key, period, "unresolved_key", str(exc)))
            continue
        except PersistenceError as exc:
            logger.warning("Key lookup failed for %s in %s: %s", ent.key, period, exc)
            plan.rejections.append(EditFailure(ent.key, period, "persistence", str(exc)))
            continue

        fields: dict[str, Any] = {"commercial_input": value}
        if notes is not None:
            fields["commercial_notes"] = notes
        plan.proposals.append(
            EntityPeriodValue(
                entity=ent.key,
                period=period,
                previous=ent.value(period, MetricField.KAM_ADJUSTMENT),
                value=value,
            )
        )
        plan.operations.append(UpsertOp(entity=ent.key, period=period, key=key, fields=fields))
    return plan


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------
def commit_plan(
    matrix: PeriodMatrix,
    plan: EditPlan,
    adapter: PersistenceAdapter,
) -> EditResult:
    """Send each upsert and apply to the matrix only what the adapter confirmed."""
    result = EditResult(
        target=plan.target,
        period=plan.period,
        new_value=plan.new_value,
        failures=list(plan.rejections),
    )
    for proposal, op in zip(plan.proposals, plan.operations):
        try:
            adapter.upsert(op.key, op.fields)
        except PersistenceError as exc:
            logger.warning("Upsert failed for %s in %s: %s", op.entity, op.period, exc)
            result.failures.append(EditFailure(op.entity, op.period, "persistence", str(exc)))
            continue

        ent = matrix.entities[op.entity]
        ent.note_location(op.key.location_id)
        ent.set_source_date(op.period, op.key.source_date)
        ent.record(op.period).overwrite(MetricField.KAM_ADJUSTMENT, proposal.value)
        result.mutations.append(proposal)
        result.persistence_ops.append(op)
    return result


def apply_edit(
    matrix: PeriodMatrix,
    target: EditTarget,
    period: str,
    new_value: float,
    adapter: PersistenceAdapter,
    criteria: FilterCriteria | None = None,
    notes: str | None = None,
    rebuild: Callable[[], Any] | None = None,
) -> EditResult:
    """Plan, persist and apply an edit.

    When at least one upsert committed and *rebuild* is given, it is called
    so the caller can re-fetch the matrix from the sources.
    """
    plan = plan_edit(matrix, target, period, new_value, adapter, criteria, notes)
    result = commit_plan(matrix, plan, adapter)
    logger.info(
        "Edit %s %s -> %s: %d committed, %d failed",
        result.target,
        period,
        new_value,
        len(result.mutations),
        len(result.failures),
    )
    if result.mutations and rebuild is not None:
        rebuild()
        result.rebuilt = True
    return result
