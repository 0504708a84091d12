"""Per-partition as-of joins between records and dose events.

For every record in a (USUBJID, DRUG) partition, attach the nearest
preceding dose (time strictly before the record) and the nearest following
dose (time at or after the record), on the actual and on the nominal time
axis. One parameterized join serves all four combinations so the tie-break
rule is applied uniformly:

  - ``input_order``: among doses sharing the boundary time, the preceding
    join takes the one recorded last and the following join the one
    recorded first ("most recent applicable dose").
  - ``reverse_input_order``: the opposite choice in both directions.

Each join is a stable sort of the partition's doses plus a vectorized binary
search, O(n log n) per partition.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from services.derivation.event_normalizer import EVID_DOSE, SORT_KEY

# axis -> (datetime column, hours column, column tag)
AXES = {
    "actual": ("ADTM", "_AHRS", "A"),
    "nominal": ("NDTM", "_NHRS", "N"),
}
DIRECTIONS = {
    "preceding": "PRV",
    "following": "NXT",
}
TIE_POLICIES = ("input_order", "reverse_input_order")
DEFAULT_TIE_POLICY = "input_order"


def reference_columns(axis: str, direction: str) -> tuple[str, str, str]:
    """Column names (datetime, dose, visit) for one axis/direction reference."""
    prefix = DIRECTIONS[direction] + AXES[axis][2]
    return f"{prefix}DTM", f"{prefix}DOSE", f"{prefix}VIS"


def _check_args(axis: str, direction: str, tie_policy: str):
    if axis not in AXES:
        raise ValueError(f"Unknown time axis '{axis}' (expected one of {list(AXES)})")
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown direction '{direction}' (expected one of {list(DIRECTIONS)})")
    if tie_policy not in TIE_POLICIES:
        raise ValueError(f"Unknown tie policy '{tie_policy}' (expected one of {list(TIE_POLICIES)})")


def match_positions(
    dose_hours: np.ndarray,
    target_hours: np.ndarray,
    direction: str,
    tie_policy: str = DEFAULT_TIE_POLICY,
) -> np.ndarray:
    """Index into the sorted *dose_hours* matched by each target, -1 when none.

    *dose_hours* must be sorted ascending with ties kept in input order.
    """
    n = len(dose_hours)
    if direction == "preceding":
        # Last dose strictly before the target
        pos = np.searchsorted(dose_hours, target_hours, side="left") - 1
        found = pos >= 0
        if tie_policy == "reverse_input_order":
            pos[found] = np.searchsorted(dose_hours, dose_hours[pos[found]], side="left")
    else:
        # First dose at or after the target
        pos = np.searchsorted(dose_hours, target_hours, side="left")
        found = pos < n
        if tie_policy == "reverse_input_order":
            pos[found] = np.searchsorted(dose_hours, dose_hours[pos[found]], side="right") - 1
        pos[~found] = -1
    pos[np.isnan(target_hours)] = -1
    return pos


def ranked_doses(part: pd.DataFrame, axis: str) -> pd.DataFrame:
    """Dose rows of a partition in stable order: time on *axis*, then input order."""
    hours_col = AXES[axis][1]
    doses = part[part["EVID"] == EVID_DOSE]
    order = np.lexsort((doses["SRCSEQ"].to_numpy(), doses[hours_col].to_numpy(dtype=float)))
    return doses.iloc[order]


def asof_dose_join(
    part: pd.DataFrame,
    axis: str,
    direction: str,
    tie_policy: str = DEFAULT_TIE_POLICY,
) -> pd.DataFrame:
    """Reference dose (datetime, amount, visit) for every record of one partition.

    Returns a frame aligned to ``part.index``; records without a reference get
    NaT / NaN / None, never zero.
    """
    _check_args(axis, direction, tie_policy)
    time_col, hours_col, _ = AXES[axis]
    dtm_col, dose_col, vis_col = reference_columns(axis, direction)

    ranked = ranked_doses(part, axis)
    if ranked.empty:
        return pd.DataFrame({
            dtm_col: pd.Series(pd.NaT, index=part.index, dtype="datetime64[ns]"),
            dose_col: np.nan,
            vis_col: None,
        }, index=part.index)

    pos = match_positions(
        ranked[hours_col].to_numpy(dtype=float),
        part[hours_col].to_numpy(dtype=float),
        direction,
        tie_policy,
    )
    found = pos >= 0
    take = np.where(found, pos, 0)

    dtm = ranked[time_col].to_numpy()[take]
    dtm[~found] = np.datetime64("NaT")
    dose = ranked["DOSE"].to_numpy(dtype=float)[take]
    dose[~found] = np.nan
    visit = ranked["VISIT"].to_numpy(dtype=object)[take]
    visit[~found] = None

    return pd.DataFrame({dtm_col: dtm, dose_col: dose, vis_col: visit}, index=part.index)


def first_dose_anchor(part: pd.DataFrame, axis: str = "actual") -> pd.Timestamp:
    """Earliest dose time of the partition on *axis* (NaT without doses)."""
    time_col = AXES[axis][0]
    return part.loc[part["EVID"] == EVID_DOSE, time_col].min()


def annotate_partition(part: pd.DataFrame, tie_policy: str = DEFAULT_TIE_POLICY) -> pd.DataFrame:
    """Add first-dose anchors and all four dose references to one partition."""
    new_cols: dict[str, object] = {
        "FADTM": first_dose_anchor(part, "actual"),
        "FNDTM": first_dose_anchor(part, "nominal"),
    }
    for axis in AXES:
        for direction in DIRECTIONS:
            joined = asof_dose_join(part, axis, direction, tie_policy)
            new_cols.update({c: joined[c] for c in joined.columns})
    return part.assign(**new_cols)


def partition_records(records: pd.DataFrame) -> dict[tuple[str, str], pd.DataFrame]:
    """Split the combined table into (USUBJID, DRUG) partitions, keys in sorted order."""
    ordered = records.sort_values(SORT_KEY, kind="mergesort")
    return {
        (str(subj), str(drug)): grp.reset_index(drop=True)
        for (subj, drug), grp in ordered.groupby(["USUBJID", "DRUG"], sort=True)
    }
