"""Expand dosing intervals into one DoseEvent per administration.

Administration times are ``start, start + step, start + 2*step, ...`` up to and
including ``end``. Nominal times advance on their own grid from the nominal
start, so actual and nominal schedules can drift apart.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

import pandas as pd

from models.records import DerivationFault, DoseEvent, DosingInterval
from services.derivation.errors import DerivationError, InvertedInterval
from services.derivation.frequency import frequency_increment
from services.derivation.timestamps import has_time_of_day, is_missing, resolve_datetime

logger = logging.getLogger(__name__)


def _visit_label(interval: DosingInterval, index: int, offset_h: float) -> str | None:
    """Visit for the administration *index* at *offset_h* nominal hours after start."""
    if interval.visit_day is not None:
        day = int(interval.visit_day) + int(offset_h // 24)
        # Study days skip 0: day -1 is followed by day 1
        if interval.visit_day < 0 and day >= 0:
            day += 1
        return f"DAY {day}"
    return interval.visit if index == 0 else None


def _resolve_bounds(interval: DosingInterval) -> tuple[pd.Timestamp, pd.Timestamp, pd.Timestamp]:
    start = resolve_datetime(interval.start, field="start")
    if is_missing(interval.end):
        end = start
    else:
        # A date-only end keeps the start's time of day so the last day is covered
        tod = None if has_time_of_day(interval.end) else start.time()
        end = resolve_datetime(interval.end, field="end", time_of_day=tod)
    if end < start:
        raise InvertedInterval(f"end {end} precedes start {start}", variable="end")

    if is_missing(interval.nominal_start):
        nominal_start = start
    else:
        nominal_start = resolve_datetime(interval.nominal_start, field="nominal_start")
    return start, end, nominal_start


def expand_interval(interval: DosingInterval, frequency_table: dict[str, float]) -> Iterator[DoseEvent]:
    """Lazily yield the administrations of one dosing interval.

    Raises UnknownFrequencyCode, UnresolvedTimestamp or InvertedInterval on
    the first ``next()`` when the interval cannot be expanded.
    """
    step_h = frequency_increment(frequency_table, interval.frequency)
    start, end, nominal_start = _resolve_bounds(interval)

    if step_h == 0 or is_missing(interval.end):
        n_doses = 1
    else:
        step = pd.Timedelta(hours=step_h)
        n_doses = int((end - start) // step) + 1

    for i in range(n_doses):
        offset = pd.Timedelta(hours=step_h * i)
        yield DoseEvent(
            record_id=f"{interval.record_id}.{i + 1:03d}",
            interval_id=interval.record_id,
            subject_id=interval.subject_id,
            drug=interval.drug,
            actual=start + offset,
            nominal=nominal_start + offset,
            dose=float(interval.dose),
            dose_unit=interval.dose_unit,
            visit=_visit_label(interval, i, step_h * i),
        )


def is_administration(interval: DosingInterval) -> bool:
    """Zero, negative and missing doses are not real administrations."""
    return not is_missing(interval.dose) and float(interval.dose) > 0


def expand_intervals(
    intervals: Iterable[DosingInterval],
    frequency_table: dict[str, float],
) -> tuple[list[DoseEvent], list[DerivationFault]]:
    """Expand every interval, collecting per-interval faults instead of failing."""
    events: list[DoseEvent] = []
    faults: list[DerivationFault] = []
    n_skipped = 0

    for interval in intervals:
        if not is_administration(interval):
            n_skipped += 1
            continue
        try:
            events.extend(expand_interval(interval, frequency_table))
        except DerivationError as e:
            logger.warning(
                "Interval %s (%s, %s) not expanded: %s",
                interval.record_id, interval.subject_id, interval.drug, e,
            )
            faults.append(e.to_fault(
                subject_id=interval.subject_id,
                drug=interval.drug,
                record_id=interval.record_id,
            ))

    if n_skipped:
        logger.info("Excluded %d non-positive dose interval(s)", n_skipped)
    logger.info("Expanded intervals into %d dose events (%d faults)", len(events), len(faults))
    return events, faults
