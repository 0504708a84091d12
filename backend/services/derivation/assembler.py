"""Final table assembly: covariates, baseline grouping, row order, ASEQ."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from services.derivation.event_normalizer import EVID_DOSE
from services.derivation.relative_time import REFTYP_DOSE, REFTYP_NEXT, REFTYP_PREVIOUS

logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = [
    "USUBJID", "DRUG", "ASEQ", "RECID", "DTYPE", "COPYOF", "EVID", "VISIT",
    "ADTM", "NDTM", "FADTM", "FNDTM",
    "AFRLT", "NFRLT", "ARRLT", "NRRLT", "AXRLT", "NXRLT", "ARRLTC",
    "REFTYP", "PREDOSFL", "RFNDTM",
    "DOSE", "DOSEU",
    "PRVADTM", "PRVADOSE", "PRVAVIS", "NXTADTM", "NXTADOSE", "NXTAVIS",
    "PRVNDTM", "PRVNDOSE", "PRVNVIS", "NXTNDTM", "NXTNDOSE", "NXTNVIS",
    "AVAL", "AVALC", "AVALU", "BLQFL", "LLOQ", "SPEC", "TPT",
]

ROW_ORDER = ["USUBJID", "RFNDTM", "ADTM", "_EVORD", "DRUG", "_CPYORD", "SRCSEQ"]


def governing_dose_time(records: pd.DataFrame) -> pd.Series:
    """Nominal time of the dose each record is grouped under (RFNDTM)."""
    reftyp = records["REFTYP"]
    prev_or_first = records["PRVNDTM"].fillna(records["FNDTM"])
    rfndtm = records["FNDTM"].copy()
    rfndtm = rfndtm.mask(reftyp == REFTYP_DOSE, records["NDTM"])
    rfndtm = rfndtm.mask(reftyp == REFTYP_PREVIOUS, prev_or_first)
    rfndtm = rfndtm.mask(reftyp == REFTYP_NEXT, records["NXTNDTM"])
    return rfndtm


def merge_covariates(records: pd.DataFrame, covariates: pd.DataFrame | None) -> pd.DataFrame:
    """Broadcast one-row-per-subject covariates onto every record (left join)."""
    if covariates is None or covariates.empty:
        return records
    if "USUBJID" not in covariates.columns:
        raise KeyError("Covariate table has no USUBJID column")

    reserved = set(records.columns) | set(OUTPUT_COLUMNS)
    clashes = [c for c in covariates.columns if c != "USUBJID" and c in reserved]
    if clashes:
        logger.warning("Covariate columns shadow derived columns and are dropped: %s", clashes)
    cov = covariates.drop(columns=clashes)
    return records.merge(cov, on="USUBJID", how="left", validate="many_to_one")


def assemble_dataset(records: pd.DataFrame, covariates: pd.DataFrame | None = None) -> pd.DataFrame:
    """Merge covariates, order rows deterministically and number them per subject.

    Order: subject, baseline group (RFNDTM), actual time, dose before
    observation, then drug, original before copy and input order.
    """
    cov_cols = [] if covariates is None else [c for c in covariates.columns if c not in OUTPUT_COLUMNS]

    out = records.assign(
        RFNDTM=governing_dose_time(records),
        _EVORD=np.where(records["EVID"] == EVID_DOSE, 0, 1),
        _CPYORD=np.where(records["DTYPE"] == "", 0, 1),
    )
    out = merge_covariates(out, covariates)
    out = out.sort_values(ROW_ORDER, kind="mergesort").reset_index(drop=True)
    out["ASEQ"] = out.groupby("USUBJID", sort=False).cumcount() + 1

    return out[OUTPUT_COLUMNS + cov_cols]
