from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

PERIOD_LABELS = {
    "today": "Today",
    "week": "This week",
    "month": "This month",
    "custom": "Custom period",
}


@dataclass(frozen=True)
class Window:
    """Inclusive calendar-day window in the ledger timezone."""

    slug: str
    start: date
    end: date
    label: str

    @property
    def prior_end(self) -> date:
        # Opening balances sum everything strictly before this day.
        return self.start

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_before(self) -> datetime:
        return datetime.combine(self.end + timedelta(days=1), time.min)

    @property
    def prior_end_at(self) -> datetime:
        return datetime.combine(self.prior_end, time.min)

    def describe(self) -> str:
        if self.start == self.end:
            return f"{self.label} ({self.start.isoformat()})"
        return f"{self.label} ({self.start.isoformat()} to {self.end.isoformat()})"


def ledger_now(now: Optional[datetime] = None) -> datetime:
    """Naive wall-clock time in the ledger timezone.

    Aware datetimes are converted; naive ones are taken as already local.
    """
    tz = ZoneInfo(get_settings().timezone)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        return now
    return now.astimezone(tz).replace(tzinfo=None)


def compute_window(
    period: str,
    now: Optional[datetime] = None,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Window:
    today = ledger_now(now).date()
    if period == "today":
        return Window("today", today, today, PERIOD_LABELS["today"])
    if period == "week":
        week_start = today - timedelta(days=today.isoweekday() - 1)
        return Window("week", week_start, today, PERIOD_LABELS["week"])
    if period == "month":
        return Window("month", today.replace(day=1), today, PERIOD_LABELS["month"])
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Window("custom", start_date, end_date, PERIOD_LABELS["custom"])
    raise ValueError(f"Unknown period: {period}")
