"""
Historical lookback window for time-bounded index queries.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from shared.errors import ValidationError
from shared.logging import get_logger


def _subtract_months(moment: datetime, months: int) -> datetime:
    """Step back whole calendar months, clamping to the target month's length."""
    total = moment.year * 12 + (moment.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def historical_timestamp(
    years_back: int = 0,
    months_back: int = 0,
    days_back: int = 0,
    now: Optional[datetime] = None,
) -> int:
    """Unix timestamp of ``now`` minus the given calendar offset."""
    for name, value in (("years_back", years_back), ("months_back", months_back), ("days_back", days_back)):
        if value < 0:
            raise ValidationError(
                f"{name} must not be negative",
                details={name: value},
            )

    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    moment = _subtract_months(moment, years_back * 12 + months_back)
    moment = moment - timedelta(days=days_back)
    return int(moment.timestamp())


@dataclass(frozen=True)
class HistoricalWindow:
    """Immutable snapshot of the lookback offsets and the derived lower bound."""

    years_back: int
    months_back: int
    days_back: int
    timestamp: int
    computed_at: datetime = field(compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "years_back": self.years_back,
            "months_back": self.months_back,
            "days_back": self.days_back,
            "historical_timestamp": self.timestamp,
            "computed_at": self.computed_at.isoformat(),
        }


class HistoricalWindowConfig:
    """Holds the current lookback window.

    Updates build a new snapshot and swap a single reference, so a query
    that already read the bound keeps it while later queries see the new one.
    """

    def __init__(
        self,
        years_back: int = 1,
        months_back: int = 0,
        days_back: int = 0,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.logger = get_logger("risk.history")
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._window = self._build(years_back, months_back, days_back)

    def _build(self, years_back: int, months_back: int, days_back: int) -> HistoricalWindow:
        moment = self._now()
        return HistoricalWindow(
            years_back=years_back,
            months_back=months_back,
            days_back=days_back,
            timestamp=historical_timestamp(years_back, months_back, days_back, now=moment),
            computed_at=moment,
        )

    @property
    def window(self) -> HistoricalWindow:
        return self._window

    @property
    def timestamp(self) -> int:
        return self._window.timestamp

    def update(
        self,
        years_back: Optional[int] = None,
        months_back: Optional[int] = None,
        days_back: Optional[int] = None,
    ) -> HistoricalWindow:
        """Recompute the window; omitted offsets keep their current value."""
        current = self._window
        window = self._build(
            current.years_back if years_back is None else years_back,
            current.months_back if months_back is None else months_back,
            current.days_back if days_back is None else days_back,
        )
        self._window = window
        self.logger.info(
            "Historical window updated",
            years_back=window.years_back,
            months_back=window.months_back,
            days_back=window.days_back,
            historical_timestamp=window.timestamp,
        )
        return window
