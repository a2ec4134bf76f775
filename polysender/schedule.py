"""Daily sending hours and the time-zone setting of broadcasts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable

from .store import Saveable

_RANGES_RE = re.compile(r"(([0-9]+)-([0-9]+))+")
_INT64_MAX = (1 << 63) - 1
_HOUR = timedelta(hours=1)
_SECOND = timedelta(seconds=1)


def _format_hours(value: timedelta) -> str:
    hours = value / _HOUR
    return str(int(hours)) if hours.is_integer() else repr(hours)


@dataclass(frozen=True)
class TimeRange:
    """A span of the day, from start (inclusive) to end (exclusive)."""

    start: timedelta
    end: timedelta

    def __str__(self) -> str:
        return f"{_format_hours(self.start)}-{_format_hours(self.end)}"

    def to_cbor(self) -> dict[str, int]:
        return {"start": self.start // _SECOND, "end": self.end // _SECOND}

    @classmethod
    def from_cbor(cls, value: Any) -> TimeRange:
        return cls(timedelta(seconds=value["start"]), timedelta(seconds=value["end"]))


def format_time_ranges(ranges: Iterable[TimeRange]) -> str:
    """Space-separated text form, as accepted by parse_time_ranges."""
    return " ".join(str(r) for r in ranges)


def _parse_hour(text: str) -> int:
    value = int(text)
    if value > _INT64_MAX:
        raise ValueError("invalid time")
    if value < 0 or value > 24:
        raise ValueError("time should be 0-24")
    return value


def parse_time_ranges(text: str) -> list[TimeRange]:
    """Parse ranges of whole hours such as '9-13 15-17'."""
    matches = list(_RANGES_RE.finditer(text))
    if not matches:
        raise ValueError("input is not properly formatted (e.g. '9-13 15-17')")
    ranges = []
    for match in matches:
        try:
            start = _parse_hour(match.group(2))
            end = _parse_hour(match.group(3))
            if end < start:
                raise ValueError("end time is earlier than start time")
        except ValueError as e:
            raise ValueError(f"cannot parse '{match.group(0)}': {e}") from e
        ranges.append(TimeRange(timedelta(hours=start), timedelta(hours=end)))
    return ranges


class SettingSendHours(list, Saveable):
    """Default sending hours of broadcasts that set none of their own."""

    db_table = "settings"

    def db_key(self) -> bytes:
        return b"broadcast.send_hours"

    def to_cbor(self) -> Any:
        return [r.to_cbor() for r in self]

    @classmethod
    def from_cbor(cls, value: Any) -> SettingSendHours:
        return cls(TimeRange.from_cbor(item) for item in value)

    def __str__(self) -> str:
        return format_time_ranges(self)


class SettingTimezone(str, Saveable):
    """Default time zone name of broadcasts; empty means local time."""

    db_table = "settings"

    def db_key(self) -> bytes:
        return b"broadcast.timezone"