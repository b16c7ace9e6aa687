"""
Collaboration sessions.

A session owns one period matrix and serializes everything that touches it:
rebuilds, edits and reads all hold the same ``asyncio.Lock``, so an edit
waits behind a running rebuild and a rebuild never starts while an edit's
upserts are pending.  Blocking SQL runs in the thread pool; those calls are
the only points where other requests can interleave.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from fastapi.concurrency import run_in_threadpool

from forecast_collab.services.editing import EditResult, EditTarget, apply_edit
from forecast_collab.services.ingestors import build_matrix, resolve_window
from forecast_collab.services.matrix import FilterCriteria, PeriodMatrix
from forecast_collab.services.periods import PeriodWindow
from forecast_collab.services.persistence import (
    DatabricksCollaborationStore,
    PersistenceAdapter,
)
from forecast_collab.services.sources import SourceUnavailableError, load_sources
from forecast_collab.utils.config import REFERENCE_YEAR

logger = logging.getLogger(__name__)

T = TypeVar("T")

SourceLoader = Callable[
    [FilterCriteria | None, PeriodWindow],
    tuple[dict[str, list[dict[str, Any]]], list[dict[str, Any]]],
]


class SessionClosedError(RuntimeError):
    """The session was abandoned by its caller."""


class MatrixNotBuiltError(RuntimeError):
    """No matrix has been built in this session yet."""


@dataclass(frozen=True)
class BuildRequest:
    filters: FilterCriteria | None = None
    date_window: PeriodWindow | None = None
    only_with_values: bool = False


class CollaborationSession:
    """One caller's working copy of the period matrix."""

    def __init__(
        self,
        session_id: str,
        store: PersistenceAdapter | None = None,
        loader: SourceLoader | None = None,
        reference_year: int | None = None,
    ) -> None:
        self.session_id = session_id
        self.store = store if store is not None else DatabricksCollaborationStore()
        self.reference_year = reference_year if reference_year is not None else REFERENCE_YEAR
        self.matrix: PeriodMatrix | None = None
        self._loader = loader or load_sources
        self._request = BuildRequest()
        self._lock = asyncio.Lock()
        self._generation = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def filters(self) -> FilterCriteria | None:
        return self._request.filters

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(f"Session {self.session_id} was abandoned")

    def _require_matrix(self) -> PeriodMatrix:
        self._check_open()
        if self.matrix is None:
            raise MatrixNotBuiltError(f"Session {self.session_id} has no matrix yet")
        return self.matrix

    # -----------------------------------------------------------------------
    # Rebuild
    # -----------------------------------------------------------------------
    async def _rebuild_locked(self, request: BuildRequest) -> PeriodMatrix | None:
        self._check_open()
        generation = self._generation
        window = resolve_window(request.filters, request.date_window, self.reference_year)

        row_sources, attributes = await run_in_threadpool(
            self._loader, request.filters, window
        )
        if self._closed or generation != self._generation:
            logger.info("Discarding stale rebuild for session %s", self.session_id)
            return None

        self.matrix = build_matrix(
            row_sources,
            filters=request.filters,
            date_window=window,
            product_attributes=attributes,
            reference_year=self.reference_year,
            only_with_values=request.only_with_values,
        )
        self._request = request
        return self.matrix

    async def rebuild(
        self,
        filters: FilterCriteria | None = None,
        date_window: PeriodWindow | None = None,
        only_with_values: bool = False,
    ) -> PeriodMatrix | None:
        """Fetch every feed and install a fresh matrix.

        Returns ``None`` when the session was abandoned while the fetch was
        in flight; the fetched rows are then thrown away.  A source failure
        propagates and leaves the previous matrix installed.
        """
        async with self._lock:
            return await self._rebuild_locked(
                BuildRequest(filters, date_window, only_with_values)
            )

    # -----------------------------------------------------------------------
    # Edit
    # -----------------------------------------------------------------------
    async def edit(
        self,
        target: EditTarget,
        period: str,
        new_value: float,
        notes: str | None = None,
    ) -> EditResult:
        """Apply an edit, then rebuild from the sources if anything committed."""
        async with self._lock:
            matrix = self._require_matrix()
            result = await run_in_threadpool(
                apply_edit,
                matrix,
                target,
                period,
                new_value,
                self.store,
                self.filters,
                notes,
            )
            if result.mutations:
                try:
                    rebuilt = await self._rebuild_locked(self._request)
                except SessionClosedError:
                    logger.info("Session %s closed before post-edit rebuild", self.session_id)
                except SourceUnavailableError:
                    # The writes are committed; keep the patched matrix.
                    logger.exception(
                        "Rebuild after edit failed for session %s", self.session_id
                    )
                else:
                    result.rebuilt = rebuilt is not None
            return result

    # -----------------------------------------------------------------------
    # Read
    # -----------------------------------------------------------------------
    async def read(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(matrix, *args)`` while no rebuild or edit can interleave."""
        async with self._lock:
            return fn(self._require_matrix(), *args)

    def abandon(self) -> None:
        """Tear the session down; an in-flight rebuild discards its result."""
        self._generation += 1
        self._closed = True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
_sessions: dict[str, CollaborationSession] = {}


def get_session(session_id: str, create: bool = True) -> CollaborationSession:
    """Return the live session for *session_id*.

    Raises ``KeyError`` for an unknown id when *create* is false.
    """
    session = _sessions.get(session_id)
    if session is None or session.closed:
        if not create:
            raise KeyError(session_id)
        session = CollaborationSession(session_id)
        _sessions[session_id] = session
    return session


def close_session(session_id: str) -> bool:
    session = _sessions.pop(session_id, None)
    if session is None:
        return False
    session.abandon()
    logger.info("Abandoned session %s", session_id)
    return True


def reset_sessions() -> None:
    for session in list(_sessions.values()):
        session.abandon()
    _sessions.clear()
