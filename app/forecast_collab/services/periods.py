"""
Period key normalizer.

Every monthly series in the collaboration view is keyed by a canonical period
string ``"<mon>-<yy>"`` (``"mar-25"``).  Keys are never ordered as strings:
all ordering goes through the month-order table plus the numeric year.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, NamedTuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Month-order table
# ---------------------------------------------------------------------------
MONTH_ABBRS: tuple[str, ...] = (
    "jan", "feb", "mar", "apr", "may", "jun",
    "jul", "aug", "sep", "oct", "nov", "dec",
)
MONTH_ORDER: dict[str, int] = {abbr: idx + 1 for idx, abbr in enumerate(MONTH_ABBRS)}


class NormalizedPeriod(NamedTuple):
    """A period key plus the literal date string it was derived from."""

    key: str
    source_date: str


def _expand_year(yy: int) -> int:
    return 2000 + yy if yy < 50 else 1900 + yy


def period_key(year: int, month: int) -> str:
    """Return the canonical key for *year* / *month* (1-12)."""
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range: {month}")
    return f"{MONTH_ABBRS[month - 1]}-{year % 100:02d}"


def parse_period_key(key: str) -> tuple[int, int]:
    """Split a period key into ``(year, month)``.

    Raises ``ValueError`` for anything that is not ``"<mon>-<yy>"``.
    """
    try:
        abbr, yy = key.strip().lower().split("-")
        month = MONTH_ORDER[abbr]
        return _expand_year(int(yy)), month
    except (AttributeError, KeyError, ValueError) as exc:
        raise ValueError(f"Invalid period key: {key!r}") from exc


def period_year(key: str) -> int:
    return parse_period_key(key)[0]


def period_sort_key(key: str) -> tuple[int, int]:
    return parse_period_key(key)


def sort_periods(keys: Iterable[str]) -> list[str]:
    """Sort period keys chronologically."""
    return sorted(keys, key=period_sort_key)


def period_start_date(key: str) -> date:
    year, month = parse_period_key(key)
    return date(year, month, 1)


def period_end_date(key: str) -> date:
    year, month = parse_period_key(key)
    return date(year, month, calendar.monthrange(year, month)[1])


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PeriodWindow:
    """Inclusive span of calendar months, ``start`` and ``end`` as (year, month)."""

    start: tuple[int, int]
    end: tuple[int, int]

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} precedes start {self.start}")

    @property
    def periods(self) -> list[str]:
        """Period keys in chronological order."""
        keys: list[str] = []
        year, month = self.start
        while (year, month) <= self.end:
            keys.append(period_key(year, month))
            month += 1
            if month > 12:
                year, month = year + 1, 1
        return keys

    def contains(self, key: str) -> bool:
        return self.start <= parse_period_key(key) <= self.end

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)


def default_window(reference_year: int) -> PeriodWindow:
    """October of the prior year through December of the following year."""
    return PeriodWindow(start=(reference_year - 1, 10), end=(reference_year + 1, 12))


def window_for_range(start: date, end: date) -> PeriodWindow:
    """Window covering exactly the months spanned by a selected date range."""
    return PeriodWindow(start=(start.year, start.month), end=(end.year, end.month))


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------
def _parse_date(raw: date | datetime | str) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str) and raw.strip():
        # Accepts "2025-03-01", "2025-03-01 00:00:00" and "2025-03-01T00:00:00Z"
        return date.fromisoformat(raw.strip()[:10])
    raise ValueError(f"Unparseable date: {raw!r}")


def normalize_date(
    raw: date | datetime | str | None,
    window: PeriodWindow | None = None,
) -> NormalizedPeriod | None:
    """Map a source date onto its period key.

    Returns ``None`` when the date falls outside *window*; raises
    ``ValueError`` when the value cannot be read as a date at all.  The
    returned ``source_date`` is the literal string the source system sent,
    which is what edits must be persisted against.
    """
    if raw is None:
        raise ValueError("Missing date")
    parsed = _parse_date(raw)
    # Keys only carry two-digit years, so compare the full year here
    if window is not None and not window.start <= (parsed.year, parsed.month) <= window.end:
        return None
    key = period_key(parsed.year, parsed.month)
    source_date = raw.strip() if isinstance(raw, str) else raw.isoformat()
    return NormalizedPeriod(key=key, source_date=source_date)
