"""Dual-role copies: one physical sample as post-dose and pre-dose observation.

A sample drawn at the nominal time of the following dose is also the
baseline of that dose. It gets a copy whose reference-relative fields point
at the following dose. The copy is the original row with a disjoint set of
fields patched; originals are never touched.
"""

from __future__ import annotations

import logging

import pandas as pd

from models.records import DerivationFault
from services.derivation.event_normalizer import EVID_OBSERVATION
from services.derivation.relative_time import REFTYP_NEXT, floor_clamp
from services.derivation.temporal_join import DEFAULT_TIE_POLICY, match_positions, ranked_doses
from services.derivation.timestamps import is_missing

logger = logging.getLogger(__name__)

DTYPE_COPY = "COPY"

# Fields a copy may differ in from its original
COPY_PATCH_FIELDS = (
    "DTYPE", "COPYOF", "VISIT", "REFTYP", "ARRLT", "NRRLT", "ARRLTC",
    "PRVADTM", "PRVADOSE", "PRVAVIS", "PRVNDTM", "PRVNDOSE", "PRVNVIS",
)


def dual_role_candidates(part: pd.DataFrame) -> pd.DataFrame:
    """Original observations at the nominal time of the following dose.

    Samples without a preceding nominal dose are already that dose's baseline
    and need no copy.
    """
    mask = (
        (part["EVID"] == EVID_OBSERVATION)
        & (part["DTYPE"] == "")
        & (part["NXRLT"] == 0)
        & part["PRVNDTM"].notna()
    )
    return part[mask]


def governing_doses(
    part: pd.DataFrame,
    candidates: pd.DataFrame,
    tie_policy: str = DEFAULT_TIE_POLICY,
) -> pd.DataFrame:
    """The dose each candidate is the baseline of, aligned to ``candidates.index``.

    That is the nominal following dose, picked with the same tie-break as the
    nominal join; every candidate has one since its NXRLT is 0.
    """
    ranked = ranked_doses(part, "nominal")
    pos = match_positions(
        ranked["_NHRS"].to_numpy(dtype=float),
        candidates["_NHRS"].to_numpy(dtype=float),
        "following",
        tie_policy,
    )
    return ranked.iloc[pos].set_axis(candidates.index)


def build_copies(candidates: pd.DataFrame, governing: pd.DataFrame) -> pd.DataFrame:
    """Copy-then-patch: the previous-dose reference becomes the governing dose.

    Both axes point at the same dose, so ARRLT is measured from the actual
    time of the dose whose visit the copy carries.
    """
    arrlt = candidates["_AHRS"].to_numpy(dtype=float) - governing["_AHRS"].to_numpy(dtype=float)
    dose = governing["DOSE"].to_numpy(dtype=float)
    visit = governing["VISIT"].to_numpy(dtype=object)
    return candidates.assign(
        DTYPE=DTYPE_COPY,
        COPYOF=candidates["RECID"],
        VISIT=visit,
        REFTYP=REFTYP_NEXT,
        ARRLT=arrlt,
        NRRLT=candidates["NXRLT"].to_numpy(dtype=float),
        ARRLTC=floor_clamp(arrlt),
        PRVADTM=governing["ADTM"].to_numpy(),
        PRVADOSE=dose,
        PRVAVIS=visit,
        PRVNDTM=governing["NDTM"].to_numpy(),
        PRVNDOSE=dose,
        PRVNVIS=visit,
    )


def add_dual_role_copies(
    part: pd.DataFrame,
    tie_policy: str = DEFAULT_TIE_POLICY,
) -> tuple[pd.DataFrame, list[DerivationFault]]:
    """Append dual-role copies to a partition; returns (records, faults).

    A copy whose following-dose visit is undefined is skipped and reported
    as an UndefinedVisitForDuplicate fault.
    """
    candidates = dual_role_candidates(part)
    faults: list[DerivationFault] = []
    if candidates.empty:
        return part, faults

    no_visit = candidates["NXTNVIS"].map(is_missing)
    for _, row in candidates[no_visit].iterrows():
        logger.warning(
            "No dual-role copy for %s (%s, %s): following dose has no visit",
            row["RECID"], row["USUBJID"], row["DRUG"],
        )
        faults.append(DerivationFault(
            kind="UndefinedVisitForDuplicate",
            subject_id=str(row["USUBJID"]),
            drug=str(row["DRUG"]),
            record_id=str(row["RECID"]),
            variable="NXTNVIS",
            detail=f"following dose at {row['NXTNDTM']} has no visit label",
        ))

    kept = candidates[~no_visit]
    if kept.empty:
        return part, faults
    copies = build_copies(kept, governing_doses(part, kept, tie_policy))
    return pd.concat([part, copies], ignore_index=True), faults
