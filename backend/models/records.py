"""Event records flowing into the PK derivation pipeline, plus the fault model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

import pandas as pd
from pydantic import BaseModel


# ── Raw inputs ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DosingInterval:
    """One exposure record: repeated administrations between start and end.

    Timestamps may be ISO 8601 strings, datetimes or None; they are resolved
    by the Interval Expander. ``end=None`` means a single administration.
    """
    record_id: str
    subject_id: str
    drug: str
    start: Any
    frequency: str
    dose: float | None
    end: Any = None
    nominal_start: Any = None
    dose_unit: str | None = None
    visit: str | None = None
    visit_day: int | None = None  # nominal study day of the first administration


@dataclass(frozen=True)
class SampleEvent:
    """One biological sample measurement in canonical form."""
    record_id: str
    subject_id: str
    drug: str
    collected: Any  # actual sample datetime
    nominal: Any = None  # planned sample datetime
    value: float | None = None
    value_text: str | None = None  # e.g. "<LLOQ" when below quantification
    unit: str | None = None
    specimen: str | None = None
    timepoint: str | None = None
    visit: str | None = None
    lloq: float | None = None


# ── Derived ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DoseEvent:
    """A single administration produced by expanding a DosingInterval."""
    record_id: str
    interval_id: str
    subject_id: str
    drug: str
    actual: pd.Timestamp
    nominal: pd.Timestamp
    dose: float
    dose_unit: str | None
    visit: str | None


# ── Faults ──────────────────────────────────────────────────────────────

FaultKind = Literal[
    "UnknownFrequencyCode",
    "UnresolvedTimestamp",
    "InvertedInterval",
    "UndefinedVisitForDuplicate",
    "NoDosingData",
    "Conformance",
]


class DerivationFault(BaseModel):
    """A per-record problem reported alongside the derived dataset."""
    kind: FaultKind
    subject_id: str | None = None
    drug: str | None = None
    record_id: str | None = None
    variable: str | None = None
    detail: str = ""
