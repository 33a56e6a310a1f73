"""Monthly usage quota evaluation for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple


def monthly_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return ``[first-of-month, first-of-next-month)`` in UTC for ``now``."""

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    current = current.astimezone(timezone.utc)
    start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


@dataclass(frozen=True)
class MonthlyQuotaEvaluation:
    """Represents the outcome of a monthly allowance check."""

    quota: Optional[int]
    used: int
    window_start: datetime
    window_end: datetime

    @property
    def unlimited(self) -> bool:
        return self.quota is None

    @property
    def within_quota(self) -> bool:
        return self.quota is None or self.used < self.quota

    @property
    def remaining(self) -> Optional[int]:
        if self.quota is None:
            return None
        return max(0, self.quota - self.used)

    def to_dict(self) -> dict[str, object]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "quota": self.quota,
            "used": self.used,
            "remaining": self.remaining,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


def evaluate_monthly_quota(
    *,
    used: int,
    quota: Optional[int],
    now: Optional[datetime] = None,
) -> MonthlyQuotaEvaluation:
    """Compare items already created this month against the plan allowance."""

    start, end = monthly_window(now)
    return MonthlyQuotaEvaluation(quota=quota, used=max(0, used), window_start=start, window_end=end)
