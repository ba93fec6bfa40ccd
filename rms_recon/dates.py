from __future__ import annotations

from datetime import date, datetime
from typing import Optional

import pytz

from .settings import DEFAULT_SETTINGS, ReconSettings

# Fixed English abbreviations; upload files must not depend on the host locale.
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def trading_day(settings: ReconSettings = DEFAULT_SETTINGS) -> date:
    tz = pytz.timezone(settings.timezone)
    return datetime.now(tz).date()


def content_date(day: Optional[date] = None) -> str:
    """Date printed inside upload lines, e.g. 19-Oct-2026."""
    d = day or trading_day()
    return f"{d.day:02d}-{_MONTHS[d.month - 1]}-{d.year}"


def filename_date(day: Optional[date] = None) -> str:
    """Date embedded in output file names, DDMMYYYY."""
    d = day or trading_day()
    return f"{d.day:02d}{d.month:02d}{d.year}"


def dated_name(pattern: str, day: Optional[date] = None) -> str:
    return pattern.format(date=filename_date(day))
