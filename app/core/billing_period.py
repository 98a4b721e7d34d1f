"""Calendar-month billing periods."""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional


@dataclass(frozen=True)
class BillingPeriod:
    """Inclusive calendar-month date range billed as one service-charge invoice."""
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.start_date.day != 1:
            raise ValueError(f"Billing period must start on the 1st, got {self.start_date}")
        last_day = calendar.monthrange(self.start_date.year, self.start_date.month)[1]
        if self.end_date != self.start_date.replace(day=last_day):
            raise ValueError(
                f"Billing period must end on the last day of "
                f"{self.start_date:%Y-%m}, got {self.end_date}"
            )

    @classmethod
    def for_month(cls, year: int, month: int) -> "BillingPeriod":
        last_day = calendar.monthrange(year, month)[1]
        return cls(date(year, month, 1), date(year, month, last_day))

    @classmethod
    def previous_month(cls, run_date: Optional[date] = None) -> "BillingPeriod":
        """The full calendar month immediately before `run_date` (default: today, UTC)."""
        run_date = run_date or datetime.now(timezone.utc).date()
        if run_date.month == 1:
            return cls.for_month(run_date.year - 1, 12)
        return cls.for_month(run_date.year, run_date.month - 1)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.end_date, time.max, tzinfo=timezone.utc)

    @property
    def label(self) -> str:
        return self.start_date.strftime("%B %Y")

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date
