"""UTC time helpers and the raid weekend calendar."""
import datetime
from typing import List, Optional, Tuple

from config import RAID_RESET_HOUR, RAID_WEEKEND_DAYS

API_TIME_FORMAT = "%Y%m%dT%H%M%S.%fZ"
FRIDAY = 4

# Raid weekends start on the first Friday on or after each of these days
RAID_ANCHOR_DAYS = (1, 8, 15, 22)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_api_time(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse the API's compact timestamp (``20261019T070000.000Z``)."""
    if not value:
        return None
    try:
        parsed = datetime.datetime.strptime(value, API_TIME_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=datetime.timezone.utc)


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def raid_weekend_starts(year: int, month: int) -> List[datetime.datetime]:
    """Opening times of the raid weekends in a month (at most four)."""
    starts = []
    for anchor in RAID_ANCHOR_DAYS:
        day = datetime.date(year, month, anchor)
        day += datetime.timedelta(days=(FRIDAY - day.weekday()) % 7)
        if day.month != month:
            continue
        starts.append(datetime.datetime(day.year, day.month, day.day, RAID_RESET_HOUR,
                                        tzinfo=datetime.timezone.utc))
    return starts


def raid_weekend_window(now: datetime.datetime) -> Optional[Tuple[datetime.datetime, datetime.datetime]]:
    """Return ``(start, end)`` of the raid weekend containing ``now``, or None."""
    # The last weekend of a month can run into the next one
    previous = (now.replace(day=1) - datetime.timedelta(days=1))
    candidates = raid_weekend_starts(previous.year, previous.month) + raid_weekend_starts(now.year, now.month)
    length = datetime.timedelta(days=RAID_WEEKEND_DAYS)
    for start in candidates:
        if start <= now < start + length:
            return start, start + length
    return None


def next_raid_weekend(now: datetime.datetime) -> datetime.datetime:
    """Opening time of the next raid weekend strictly after ``now``."""
    year, month = now.year, now.month
    for _ in range(3):
        for start in raid_weekend_starts(year, month):
            if start > now:
                return start
        month += 1
        if month > 12:
            year, month = year + 1, 1
    raise ValueError("no raid weekend found in the next three months")


def season_key(now: datetime.datetime) -> str:
    return now.strftime("%Y-%m")
