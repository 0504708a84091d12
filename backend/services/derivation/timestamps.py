"""Timestamp resolution and hour arithmetic.

Every timestamp is resolved to a ``pd.Timestamp`` once and converted to
float hours since the SAS epoch (1960-01-01); all relative times downstream
are differences of those hour values.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time

import numpy as np
import pandas as pd

from services.derivation.errors import UnresolvedTimestamp

EPOCH = pd.Timestamp("1960-01-01")
ONE_HOUR = pd.Timedelta(hours=1)

# Full date, optional time down to fractional seconds ("T" or a space)
_ISO_DATETIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[T ](\d{2})(?::(\d{2})(?::(\d{2})(?:\.(\d+))?)?)?)?$"
)
# Partial ISO dates that cannot be placed on a timeline
_ISO_PARTIAL_RE = re.compile(r"^\d{4}(-\d{2})?(-{1,2}\d{2})?$")

_DURATION_RE = re.compile(
    r"^(?P<sign>[+-])?P"
    r"(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == "" or value.strip().lower() == "nan"
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def has_time_of_day(value) -> bool:
    """True when *value* carries an explicit time component."""
    if isinstance(value, (pd.Timestamp, datetime)):
        return True
    if isinstance(value, date):
        return False
    m = _ISO_DATETIME_RE.match(str(value).strip())
    return bool(m and m.group(4) is not None)


def resolve_datetime(value, *, field: str = "datetime", time_of_day: time | None = None) -> pd.Timestamp:
    """Resolve an ISO 8601 string or datetime-like value to a concrete Timestamp.

    Date-only values get *time_of_day* (midnight by default). Missing values,
    partial dates and impossible calendar dates raise UnresolvedTimestamp.
    """
    if is_missing(value):
        raise UnresolvedTimestamp(f"{field} is missing", variable=field)

    if isinstance(value, pd.Timestamp):
        return value.tz_localize(None) if value.tzinfo is not None else value
    if isinstance(value, datetime):
        return resolve_datetime(pd.Timestamp(value), field=field)
    if isinstance(value, date):
        return pd.Timestamp(datetime.combine(value, time_of_day or time(0, 0)))
    if isinstance(value, np.datetime64):
        return pd.Timestamp(value)

    s = str(value).strip()
    m = _ISO_DATETIME_RE.match(s)
    if not m:
        if _ISO_PARTIAL_RE.match(s):
            raise UnresolvedTimestamp(f"{field} '{s}' is a partial date", variable=field)
        raise UnresolvedTimestamp(f"{field} '{s}' is not ISO 8601", variable=field)

    year, month, day, hh, mm, ss, frac = m.groups()
    if hh is None:
        tod = time_of_day or time(0, 0)
        hour, minute, second, micro = tod.hour, tod.minute, tod.second, tod.microsecond
    else:
        hour, minute, second = int(hh), int(mm or 0), int(ss or 0)
        micro = int((frac or "0")[:6].ljust(6, "0"))
    try:
        return pd.Timestamp(
            year=int(year), month=int(month), day=int(day),
            hour=hour, minute=minute, second=second, microsecond=micro,
        )
    except ValueError as e:
        raise UnresolvedTimestamp(f"{field} '{s}' is not a calendar date: {e}", variable=field) from e


def to_hours(values):
    """Hours since the SAS epoch. NaT maps to NaN."""
    if isinstance(values, pd.Series):
        return (pd.to_datetime(values) - EPOCH) / ONE_HOUR
    if is_missing(values):
        return float("nan")
    return (pd.Timestamp(values) - EPOCH) / ONE_HOUR


def parse_elapsed_hours(value) -> float | None:
    """Parse an ISO 8601 duration (or a plain number of hours) to hours.

    Examples: "PT0.5H" -> 0.5, "PT1H30M" -> 1.5, "-PT30M" -> -0.5, "P1DT2H" -> 26.0
    """
    if is_missing(value):
        return None
    s = str(value).upper().strip()
    if "P" not in s:
        try:
            return float(s)
        except (ValueError, TypeError):
            return None

    m = _DURATION_RE.match(s)
    if not m or s.rstrip("T").endswith("P"):
        return None
    parts = m.groupdict()
    hours = (
        float(parts["days"] or 0) * 24.0
        + float(parts["hours"] or 0)
        + float(parts["minutes"] or 0) / 60.0
        + float(parts["seconds"] or 0) / 3600.0
    )
    return -hours if parts["sign"] == "-" else hours
