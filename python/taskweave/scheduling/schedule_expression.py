"""Schedule expressions for scheduled tasks.

Three forms are accepted:
- 5-field cron (``0 9 * * 1-5``) and 6-field cron with a trailing seconds field
- croniter aliases (``@hourly``, ``@daily``, ``@weekly``, ...)
- fixed intervals (``every 1s``, ``every 5 minutes``, ``every 2h``)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from croniter import croniter

from taskweave.exceptions import ConfigError

_INTERVAL_RE = re.compile(r"^every\s+(\d+(?:\.\d+)?)\s*([a-z]+)$", re.IGNORECASE)

_UNIT_SECONDS: Dict[str, float] = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
}


@dataclass(frozen=True)
class ScheduleExpression:
    """A parsed schedule. Exactly one of ``interval`` or ``cron`` is set."""

    raw: str
    interval: Optional[timedelta] = None
    cron: Optional[str] = None

    @property
    def is_interval(self) -> bool:
        return self.interval is not None

    def next_fire(self, after: datetime) -> datetime:
        """First fire time strictly after *after*.

        Cron expressions are evaluated in *after*'s timezone, so pass an
        aware datetime in the configured scheduling timezone.
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        if self.interval is not None:
            return after + self.interval
        return croniter(self.cron, after).get_next(datetime)


def parse_schedule(expression: str) -> ScheduleExpression:
    """Parse a schedule string.

    Raises:
        ConfigError: if the expression is empty or not a valid form.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ConfigError("Schedule expression must be a non-empty string")

    text = expression.strip()
    match = _INTERVAL_RE.match(text)
    if match:
        amount, unit = float(match.group(1)), match.group(2).lower()
        if unit not in _UNIT_SECONDS:
            raise ConfigError(f"Unknown interval unit {unit!r} in schedule {expression!r}")
        seconds = amount * _UNIT_SECONDS[unit]
        if seconds <= 0:
            raise ConfigError(f"Interval must be positive in schedule {expression!r}")
        return ScheduleExpression(raw=text, interval=timedelta(seconds=seconds))

    if text.lower().startswith("every"):
        raise ConfigError(f"Invalid interval schedule {expression!r}")

    fields = text.split()
    if not text.startswith("@") and len(fields) not in (5, 6):
        raise ConfigError(f"Cron schedule {expression!r} must have 5 or 6 fields")
    if not croniter.is_valid(text):
        raise ConfigError(f"Invalid cron schedule {expression!r}")
    return ScheduleExpression(raw=text, cron=text)
