"""Relative-time derivation (hours) from first-dose anchors and dose references.

  AFRLT / NFRLT  time since first dose (actual / nominal), negative before it
  ARRLT / NRRLT  time since the reference dose; 0 for dose records; falls back
                 to AFRLT / NFRLT when no preceding dose exists
  AXRLT / NXRLT  time relative to the following dose (<= 0, NaN when none)
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from services.derivation.event_normalizer import EVID_DOSE
from services.derivation.timestamps import to_hours

REFTYP_DOSE = "DOSE"
REFTYP_PREVIOUS = "PREVIOUS"
REFTYP_FIRST = "FIRST"
REFTYP_NEXT = "NEXT"


def time_since_first(t_hours, first_hours):
    """T - F in hours, sign preserved."""
    return np.asarray(t_hours, dtype=float) - np.asarray(first_hours, dtype=float)


def time_since_reference(t_hours, ref_hours, since_first, is_dose):
    """T - R where a reference exists, 0 for doses, else the time since first dose."""
    t = np.asarray(t_hours, dtype=float)
    ref = np.asarray(ref_hours, dtype=float)
    fallback = np.asarray(since_first, dtype=float)
    return np.where(np.asarray(is_dose, dtype=bool), 0.0, np.where(np.isnan(ref), fallback, t - ref))


def floor_clamp(values, floor: float = 0.0):
    """Raise values below *floor* to *floor*; NaN stays NaN."""
    arr = np.asarray(values, dtype=float)
    return np.where(arr < floor, floor, arr)


def derive_relative_times(part: pd.DataFrame) -> pd.DataFrame:
    """Add AFRLT, NFRLT, ARRLT, NRRLT, AXRLT, NXRLT, ARRLTC, REFTYP and PREDOSFL."""
    a_hours = part["_AHRS"].to_numpy(dtype=float)
    n_hours = part["_NHRS"].to_numpy(dtype=float)
    is_dose = (part["EVID"] == EVID_DOSE).to_numpy()

    afrlt = time_since_first(a_hours, to_hours(part["FADTM"]))
    nfrlt = time_since_first(n_hours, to_hours(part["FNDTM"]))

    prev_a = to_hours(part["PRVADTM"]).to_numpy(dtype=float)
    prev_n = to_hours(part["PRVNDTM"]).to_numpy(dtype=float)

    reftyp = np.select(
        [is_dose, ~np.isnan(prev_a)],
        [REFTYP_DOSE, REFTYP_PREVIOUS],
        default=REFTYP_FIRST,
    )

    return part.assign(
        AFRLT=afrlt,
        NFRLT=nfrlt,
        ARRLT=time_since_reference(a_hours, prev_a, afrlt, is_dose),
        NRRLT=time_since_reference(n_hours, prev_n, nfrlt, is_dose),
        AXRLT=a_hours - to_hours(part["NXTADTM"]).to_numpy(dtype=float),
        NXRLT=n_hours - to_hours(part["NXTNDTM"]).to_numpy(dtype=float),
        ARRLTC=np.nan,
        REFTYP=reftyp,
        PREDOSFL=np.where(afrlt < 0, "Y", ""),
    )
