import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

STATS_PERIODS = ("week", "month", "year")


@dataclass(frozen=True)
class StatsWindow:
    slug: str
    start: datetime
    end: datetime

    @property
    def elapsed(self) -> timedelta:
        return self.end - self.start

    @property
    def days(self) -> int:
        # Partial days count as whole days; never zero so averages stay defined.
        return max(1, math.ceil(self.elapsed.total_seconds() / 86400))

    @property
    def previous_start(self) -> datetime:
        return self.start - self.elapsed


def month_start(moment: datetime) -> datetime:
    return datetime.combine(moment.date().replace(day=1), time.min)


def resolve_stats_window(
    period: Optional[str], *, now: Optional[datetime] = None
) -> StatsWindow:
    now = now or datetime.utcnow()
    if not period or period == "month":
        return StatsWindow("month", month_start(now), now)
    if period == "week":
        start = datetime.combine(now.date() - timedelta(days=7), time.min)
        return StatsWindow("week", start, now)
    if period == "year":
        start = datetime.combine(now.date().replace(month=1, day=1), time.min)
        return StatsWindow("year", start, now)
    raise ValueError(f"Unknown stats period: {period}")
