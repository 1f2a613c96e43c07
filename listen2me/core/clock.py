"""
Listen2Me - Clock
=================

Every "current time" read and every due-date comparison goes through
a Clock bound to one civil timezone. Storage keeps naive UTC.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"

# Formats the model tends to produce besides ISO 8601
_EXTRA_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%Y.%m.%d %H:%M",
    "%Y.%m.%d",
)

_CJK_DATE = re.compile(
    r"^(\d{4})年(\d{1,2})月(\d{1,2})日(?:\s*(\d{1,2})[:：](\d{2}))?$"
)


def utcnow() -> datetime:
    """Naive UTC now, the storage representation."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock pinned to a civil timezone."""

    def __init__(self, tz_name: str = "Asia/Shanghai"):
        try:
            self.tz = ZoneInfo(tz_name)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Invalid timezone: {tz_name}") from exc

    def now(self) -> datetime:
        """Current time in the configured timezone (aware)."""
        return datetime.now(self.tz)

    def now_utc(self) -> datetime:
        """Current time as naive UTC, comparable with stored datetimes."""
        return self.to_storage(self.now())

    def now_string(self) -> str:
        return self.now().strftime(DISPLAY_FORMAT)

    def to_local(self, value: datetime) -> datetime:
        """Convert a datetime to the civil timezone. Naive values are UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz)

    def to_storage(self, value: datetime) -> datetime:
        """Aware datetime -> naive UTC. Naive values are taken as civil time."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.tz)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def format(self, value: Optional[datetime]) -> str:
        if value is None:
            return ""
        return self.to_local(value).strftime(DISPLAY_FORMAT)

    def format_timestamp(self, ts: int) -> str:
        """Unix seconds -> civil time string."""
        return datetime.fromtimestamp(ts, tz=self.tz).strftime(DISPLAY_FORMAT)

    def parse_due_date(self, value: Any) -> Optional[datetime]:
        """
        Normalize a model supplied due date to aware UTC.

        Strings without an offset are read as civil time. Returns None
        for anything that cannot be parsed.
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            parsed = self._parse_string(value.strip())
            if parsed is None:
                return None
        else:
            return None

        try:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=self.tz)
            return parsed.astimezone(timezone.utc)
        except (OverflowError, ValueError):
            return None

    def _parse_string(self, text: str) -> Optional[datetime]:
        if not text:
            return None

        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            pass

        for fmt in _EXTRA_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue

        match = _CJK_DATE.match(text)
        if match:
            year, month, day, hour, minute = match.groups()
            try:
                return datetime(
                    int(year), int(month), int(day),
                    int(hour or 0), int(minute or 0),
                )
            except ValueError:
                return None

        return None


class FixedClock(Clock):
    """Clock frozen at a given instant, for tests and replays."""

    def __init__(self, at: datetime, tz_name: str = "Asia/Shanghai"):
        super().__init__(tz_name)
        if at.tzinfo is None:
            at = at.replace(tzinfo=self.tz)
        self._at = at

    def now(self) -> datetime:
        return self._at.astimezone(self.tz)

    def set(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=self.tz)
        self._at = at
