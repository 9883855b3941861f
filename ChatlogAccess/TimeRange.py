"""parsing for the `time` query argument and picking how much of a timestamp is worth
showing for a given range."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Final, Union

from ChatlogAccess.errors import InvalidArgument

DB_TIME_FORMAT: Final = "%Y-%m-%d %H:%M:%S"

_DAY = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_MONTH = re.compile(r"^(\d{4})-(\d{1,2})$")
_YEAR = re.compile(r"^(\d{4})$")


def _period_of(value: str) -> tuple[datetime, datetime]:
    """returns the first and last second of the day, month, or year in `value`."""
    try:
        if m := _DAY.match(value):
            start = datetime(int(m[1]), int(m[2]), int(m[3]))
            end = start + timedelta(days=1)
        elif m := _MONTH.match(value):
            start = datetime(int(m[1]), int(m[2]), 1)
            end = (
                datetime(start.year + 1, 1, 1)
                if start.month == 12
                else datetime(start.year, start.month + 1, 1)
            )
        elif m := _YEAR.match(value):
            start = datetime(int(m[1]), 1, 1)
            end = datetime(start.year + 1, 1, 1)
        else:
            raise InvalidArgument("time")
    except ValueError as e:
        raise InvalidArgument("time", e)
    return start, end - timedelta(seconds=1)


def time_range_of(value: Union[str, None]) -> tuple[Union[datetime, None], ...]:
    """Parses a time argument into an inclusive (start, end) pair.

    Accepts a day ("2024-03-01"), a month ("2024-03"), a year ("2024"), or two of
    those joined by "~" or "," for a range that runs from the start of the first to
    the end of the second. An empty value means no bounds at all and yields
    (None, None).
    """
    value = (value or "").strip()
    if not value:
        return None, None
    parts = [x.strip() for x in re.split(r"[~,]", value)]
    if len(parts) == 1:
        return _period_of(parts[0])
    if len(parts) != 2:
        raise InvalidArgument("time")
    start, end = _period_of(parts[0])[0], _period_of(parts[1])[1]
    if start > end:
        raise InvalidArgument("time")
    return start, end


def time_format_for(
    start: Union[datetime, None], end: Union[datetime, None]
) -> str:
    """picks the shortest strftime format that still tells apart every time in the
    range."""
    if start and end:
        if start.date() == end.date():
            return "%H:%M:%S"
        if start.year == end.year:
            return "%m-%d %H:%M:%S"
    return DB_TIME_FORMAT
