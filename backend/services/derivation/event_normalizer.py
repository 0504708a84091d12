"""Normalize dose and sample events into one combined record table.

The table is sorted by (USUBJID, DRUG, actual time, input order); every later
step relies on that order or re-sorts to it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import numpy as np
import pandas as pd

from models.records import DerivationFault, DoseEvent, SampleEvent
from services.derivation.errors import UnresolvedTimestamp
from services.derivation.timestamps import is_missing, resolve_datetime, to_hours

logger = logging.getLogger(__name__)

EVID_DOSE = 1
EVID_OBSERVATION = 0

BLQ_SENTINELS = {"BLQ", "BQL", "<LLOQ", "LLOQ", "NQ", "<LOQ", "BELOW LLOQ"}

# Canonical sort key shared by every downstream step
SORT_KEY = ["USUBJID", "DRUG", "_AHRS", "SRCSEQ"]

COMBINED_COLUMNS = [
    "USUBJID", "DRUG", "RECID", "SRCSEQ", "EVID",
    "ADTM", "NDTM", "_AHRS", "_NHRS",
    "DOSE", "DOSEU", "VISIT",
    "AVAL", "AVALC", "AVALU", "BLQFL", "LLOQ", "SPEC", "TPT",
    "DTYPE", "COPYOF", "AFRLT",
]
_ROW_COLUMNS = [
    c for c in COMBINED_COLUMNS
    if c not in ("SRCSEQ", "_AHRS", "_NHRS", "DTYPE", "COPYOF", "AFRLT")
]


def is_blq(value, value_text) -> bool:
    """Below-quantification sentinel: no numeric value and a BLQ-style text result."""
    if not is_missing(value):
        return False
    if is_missing(value_text):
        return False
    text = str(value_text).strip().upper()
    return text in BLQ_SENTINELS or text.startswith("<")


def _dose_row(event: DoseEvent) -> dict:
    return {
        "USUBJID": event.subject_id,
        "DRUG": event.drug,
        "RECID": event.record_id,
        "EVID": EVID_DOSE,
        "ADTM": event.actual,
        "NDTM": event.nominal,
        "DOSE": event.dose,
        "DOSEU": event.dose_unit or "",
        "VISIT": event.visit,
        "AVAL": np.nan,
        "AVALC": "",
        "AVALU": "",
        "BLQFL": "",
        "LLOQ": np.nan,
        "SPEC": "",
        "TPT": "",
    }


def _sample_row(sample: SampleEvent) -> dict:
    actual = resolve_datetime(sample.collected, field="collected")
    if is_missing(sample.nominal):
        nominal = actual
    else:
        nominal = resolve_datetime(sample.nominal, field="nominal")

    value = np.nan if is_missing(sample.value) else float(sample.value)
    if is_missing(sample.value_text):
        avalc = "" if np.isnan(value) else f"{value:g}"
    else:
        avalc = str(sample.value_text).strip()

    return {
        "USUBJID": sample.subject_id,
        "DRUG": sample.drug,
        "RECID": sample.record_id,
        "EVID": EVID_OBSERVATION,
        "ADTM": actual,
        "NDTM": nominal,
        "DOSE": np.nan,
        "DOSEU": "",
        "VISIT": None if is_missing(sample.visit) else sample.visit,
        "AVAL": value,
        "AVALC": avalc,
        "AVALU": sample.unit or "",
        "BLQFL": "Y" if is_blq(sample.value, sample.value_text) else "",
        "LLOQ": np.nan if is_missing(sample.lloq) else float(sample.lloq),
        "SPEC": sample.specimen or "",
        "TPT": sample.timepoint or "",
    }


def normalize_events(
    dose_events: Iterable[DoseEvent],
    samples: Iterable[SampleEvent],
) -> tuple[pd.DataFrame, list[DerivationFault]]:
    """Build the combined record table from expanded doses and raw samples.

    Samples whose actual time cannot be resolved are left out and reported
    as UnresolvedTimestamp faults. ``AFRLT`` is a placeholder (NaN) until the
    first-dose anchor is known.
    """
    rows: list[dict] = [_dose_row(e) for e in dose_events]
    faults: list[DerivationFault] = []

    for sample in samples:
        try:
            rows.append(_sample_row(sample))
        except UnresolvedTimestamp as e:
            logger.warning("Sample %s (%s) excluded: %s", sample.record_id, sample.subject_id, e)
            faults.append(e.to_fault(
                subject_id=sample.subject_id,
                drug=sample.drug,
                record_id=sample.record_id,
            ))

    df = pd.DataFrame(rows, columns=_ROW_COLUMNS)

    dupes = df.loc[df["RECID"].duplicated(), "RECID"]
    if not dupes.empty:
        raise ValueError(f"Duplicate record identifiers: {sorted(dupes.unique())[:5]}")

    df["ADTM"] = pd.to_datetime(df["ADTM"])
    df["NDTM"] = pd.to_datetime(df["NDTM"])
    df = df.assign(
        SRCSEQ=np.arange(len(df), dtype=np.int64),
        _AHRS=to_hours(df["ADTM"]),
        _NHRS=to_hours(df["NDTM"]),
        DTYPE="",
        COPYOF="",
        AFRLT=np.nan,
    )
    df = df[COMBINED_COLUMNS].sort_values(SORT_KEY, kind="mergesort").reset_index(drop=True)

    n_obs = int((df["EVID"] == EVID_OBSERVATION).sum())
    logger.info("Normalized %d dose and %d observation records", len(df) - n_obs, n_obs)
    return df, faults
