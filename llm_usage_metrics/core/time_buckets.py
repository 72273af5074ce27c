"""
Calendar bucketing for usage events.

Maps UTC event timestamps onto local day / ISO-week / month keys in an IANA
timezone.
"""

import os
from datetime import date, datetime
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InputValidationError


class ReportGranularity(Enum):
    """Reporting period sizes."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@lru_cache(maxsize=64)
def resolve_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        InputValidationError: If the name is blank or unknown
    """
    normalized = name.strip() if isinstance(name, str) else ""
    if not normalized:
        raise InputValidationError(f"Invalid timezone: {name}")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError):
        raise InputValidationError(f"Invalid timezone: {normalized}")


def _zone_from_localtime(localtime_path: Path) -> Optional[str]:
    try:
        target = str(localtime_path.resolve())
    except OSError:
        return None
    marker = "zoneinfo/"
    index = target.find(marker)
    if index == -1:
        return None
    return target[index + len(marker):] or None


def detect_default_timezone(localtime_path: Path = Path("/etc/localtime")) -> str:
    """Best-effort name of the host timezone, falling back to UTC."""
    candidates = [os.environ.get("TZ", "").lstrip(":"), _zone_from_localtime(localtime_path)]
    for candidate in candidates:
        if not candidate:
            continue
        try:
            resolve_timezone(candidate)
        except InputValidationError:
            continue
        return candidate
    return "UTC"


def local_date(timestamp: datetime, tz: ZoneInfo) -> date:
    """Calendar date of a timestamp in the given timezone."""
    return timestamp.astimezone(tz).date()


def get_period_key(timestamp: datetime, granularity: ReportGranularity, tz: ZoneInfo) -> str:
    """Period label for a timestamp.

    Args:
        timestamp: Aware event timestamp
        granularity: Bucket size
        tz: Reporting timezone

    Returns:
        ``YYYY-MM-DD`` for daily, ``YYYY-Www`` (ISO week-year) for weekly,
        ``YYYY-MM`` for monthly
    """
    day = local_date(timestamp, tz)

    if granularity == ReportGranularity.DAILY:
        return day.isoformat()

    if granularity == ReportGranularity.MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"

    week_year, week_number, _ = day.isocalendar()
    return f"{week_year:04d}-W{week_number:02d}"
