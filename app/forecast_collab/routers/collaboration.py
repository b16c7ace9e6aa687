"""
Forecast collaboration router.

Builds the per-customer / per-product period matrix from the source feeds,
serves YTD / YTG / TOTAL rollups in three unit systems, and applies KAM
adjustment edits that are persisted to the collaboration table.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from forecast_collab.models import (
    EditFailureModel,
    EditMutation,
    EditRequest,
    EditResultModel,
    MatrixEntity,
    MatrixRequest,
    MatrixResponse,
    MetricCatalog,
    RollupRequest,
    RollupResponse,
    SummaryRequest,
    SummaryResponse,
    SummaryRow,
)
from forecast_collab.services.editing import AGGREGATE_TARGET, EditResult, EditStatus
from forecast_collab.services.matrix import (
    NO_PRODUCT,
    EntityKey,
    PeriodMatrix,
    UnknownEntityError,
)
from forecast_collab.services.metrics import (
    ROW_LABELS,
    MetricField,
    Unit,
    UnknownMetricLabel,
    Window,
    field_for_label,
)
from forecast_collab.services.rollup import Grid, rollup, summarize
from forecast_collab.services.session import (
    CollaborationSession,
    MatrixNotBuiltError,
    close_session,
    get_session,
)
from forecast_collab.services.sources import SourceUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/forecast-collaboration", tags=["collaboration"])


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _matrix_response(session_id: str, matrix: PeriodMatrix) -> MatrixResponse:
    entities = [
        MatrixEntity(
            customer_id=ent.customer_id,
            product_id=ent.product_id,
            location_id=ent.location_id,
            customer_name=ent.customer_name,
            units={
                "cases": ent.units_cases,
                "volume": ent.units_volume,
                "weight": ent.units_weight,
            },
            periods={period: rec.as_dict() for period, rec in ent.periods.items()},
            source_dates=dict(ent.source_dates),
        )
        for ent in matrix.select()
    ]
    return MatrixResponse(
        session_id=session_id,
        status="no_data" if matrix.is_empty else "ok",
        reference_year=matrix.reference_year,
        periods=matrix.periods,
        entities=entities,
        skipped=dict(matrix.skipped),
    )


def _grid_dict(grid: Grid) -> dict[str, dict[str, float]]:
    return {unit.value: {w.value: v for w, v in row.items()} for unit, row in grid.items()}


def _edit_response(result: EditResult) -> EditResultModel:
    return EditResultModel(
        status=result.status.value,
        target=result.target,
        period=result.period,
        new_value=result.new_value,
        mutations=[
            EditMutation(
                customer_id=m.entity.customer_id,
                product_id=m.entity.product_id,
                period=m.period,
                previous=m.previous,
                value=m.value,
            )
            for m in result.mutations
        ],
        failures=[
            EditFailureModel(
                customer_id=f.entity.customer_id,
                product_id=f.entity.product_id,
                period=f.period,
                kind=f.kind,
                reason=f.reason,
            )
            for f in result.failures
        ],
        upserts=len(result.persistence_ops),
        rebuilt=result.rebuilt,
    )


def _existing_session(session_id: str) -> CollaborationSession:
    try:
        return get_session(session_id, create=False)
    except KeyError:
        raise HTTPException(
            status_code=404, detail=f"Session '{session_id}' not found"
        ) from None


# ---------------------------------------------------------------------------
# GET /metrics
# ---------------------------------------------------------------------------
@router.get(
    "/metrics",
    response_model=MetricCatalog,
    summary="Row captions, metric fields, units and windows",
)
async def list_metrics() -> MetricCatalog:
    """Return the static caption -> metric mapping used by the grid."""
    return MetricCatalog(
        labels={label: field.value for label, field in ROW_LABELS.items()},
        fields=[field.value for field in MetricField],
        units=[unit.value for unit in Unit],
        windows=[window.value for window in Window],
    )


# ---------------------------------------------------------------------------
# POST /matrix
# ---------------------------------------------------------------------------
@router.post(
    "/matrix",
    response_model=MatrixResponse,
    summary="Rebuild the period matrix for a filter selection",
)
async def build_period_matrix(body: MatrixRequest) -> MatrixResponse:
    """Fetch every feed for the filters and rebuild the session matrix.

    An empty selection is not an error: the response carries
    ``status = "no_data"``.
    """
    try:
        session = get_session(body.session_id)
        matrix = await session.rebuild(
            filters=body.filters.to_criteria(),
            only_with_values=body.only_with_values,
        )
        if matrix is None:
            raise HTTPException(
                status_code=409,
                detail=f"Session '{body.session_id}' was closed during the rebuild",
            )
        return _matrix_response(body.session_id, matrix)
    except HTTPException:
        raise
    except SourceUnavailableError as exc:
        logger.exception("Source feeds unavailable for session %s", body.session_id)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to build matrix for session %s", body.session_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# POST /rollup
# ---------------------------------------------------------------------------
@router.post(
    "/rollup",
    response_model=RollupResponse,
    summary="One YTD / YTG / TOTAL value",
)
async def get_rollup(body: RollupRequest) -> RollupResponse:
    """Roll a metric up for one entity, or for the whole selection."""
    session = _existing_session(body.session_id)
    try:
        field = field_for_label(body.metric)
        if body.customer_id:
            selector = EntityKey(body.customer_id, body.product_id or NO_PRODUCT)
            scope = str(selector)
        else:
            selector = session.filters
            scope = AGGREGATE_TARGET
        value = await session.read(rollup, selector, field, body.unit, body.window)
        return RollupResponse(
            metric=field.value,
            unit=body.unit,
            window=body.window,
            scope=scope,
            value=value,
        )
    except UnknownMetricLabel as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except MatrixNotBuiltError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except UnknownEntityError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Rollup failed for %s", body.metric)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# POST /summary
# ---------------------------------------------------------------------------
@router.post(
    "/summary",
    response_model=SummaryResponse,
    summary="Unit x window grid for the aggregate row and each entity",
)
async def get_summary(body: SummaryRequest) -> SummaryResponse:
    session = _existing_session(body.session_id)
    try:
        field = field_for_label(body.metric)
        aggregate, per_entity = await session.read(summarize, session.filters, field)
        return SummaryResponse(
            metric=field.value,
            aggregate=_grid_dict(aggregate),
            entities=[
                SummaryRow(
                    customer_id=key.customer_id,
                    product_id=key.product_id,
                    values=_grid_dict(grid),
                )
                for key, grid in per_entity.items()
            ],
        )
    except UnknownMetricLabel as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except MatrixNotBuiltError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Summary failed for %s", body.metric)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# POST /edits
# ---------------------------------------------------------------------------
@router.post(
    "/edits",
    response_model=EditResultModel,
    summary="Edit a KAM adjustment cell (one entity or the aggregate row)",
)
async def submit_edit(body: EditRequest) -> EditResultModel:
    """Persist an edit and rebuild the matrix.

    Aggregate edits report per-entity failures inside a ``partial`` or
    ``failed`` result.  A single-entity edit whose write fails returns 502
    with the store's message.
    """
    session = _existing_session(body.session_id)
    target = (
        EntityKey(body.customer_id, body.product_id or NO_PRODUCT)
        if body.customer_id
        else AGGREGATE_TARGET
    )
    try:
        result = await session.edit(target, body.period, body.value, body.notes)
    except MatrixNotBuiltError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except UnknownEntityError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Edit failed for %s %s", target, body.period)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if target != AGGREGATE_TARGET and result.failures:
        failure = result.failures[0]
        status_code = 502 if result.status is EditStatus.FAILED else 422
        raise HTTPException(status_code=status_code, detail=failure.reason)
    return _edit_response(result)


# ---------------------------------------------------------------------------
# GET /export
# ---------------------------------------------------------------------------
@router.get(
    "/export",
    summary="Export the session matrix as CSV",
)
async def export_matrix(
    session_id: str = Query("default", description="Session to export"),
) -> StreamingResponse:
    """Stream one CSV row per entity, period and metric."""
    session = _existing_session(session_id)

    def _rows(matrix: PeriodMatrix) -> list[dict[str, object]]:
        rows: list[dict[str, object]] = []
        for ent in matrix.select():
            for period in matrix.periods:
                rec = ent.periods.get(period)
                if rec is None:
                    continue
                rows.append(
                    {
                        "customer_id": ent.customer_id,
                        "product_id": ent.product_id,
                        "location_id": ent.location_id or "",
                        "period": period,
                        "source_date": ent.source_dates.get(period, ""),
                        **rec.as_dict(),
                    }
                )
        return rows

    try:
        rows = await session.read(_rows)
    except MatrixNotBuiltError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    output = io.StringIO()
    fieldnames = ["customer_id", "product_id", "location_id", "period", "source_date"] + [
        field.value for field in MetricField
    ]
    writer = csv.DictWriter(output, fieldnames=fieldnames)
    writer.writeheader()
    writer.writerows(rows)

    filename = f"forecast_collaboration_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ---------------------------------------------------------------------------
# DELETE /sessions/{session_id}
# ---------------------------------------------------------------------------
@router.delete(
    "/sessions/{session_id}",
    summary="Abandon a session and discard any in-flight rebuild",
)
async def delete_session(session_id: str) -> dict[str, str]:
    if not close_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return {"status": "closed", "session_id": session_id}
