"""Read SEND EX + PC + DM domains into derivation inputs.

EX rows become dosing intervals, PC rows become sample events, DM supplies
the reference start date (for nominal times) and subject covariates.

Nominal times: RFSTDTC date + (study day - 1) days, plus PCELTM for samples.
Without a study day the nominal time falls back to the actual time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pandas as pd

from models.records import DosingInterval, SampleEvent
from services.derivation.errors import UnresolvedTimestamp
from services.derivation.timestamps import is_missing, parse_elapsed_hours, resolve_datetime
from services.study_discovery import StudyInfo
from services.xpt_processor import read_domain

logger = logging.getLogger(__name__)

# DM columns never carried as covariates (dates, keys, free text)
_DM_EXCLUDE = {"STUDYID", "DOMAIN", "SUBJID", "DMDTC", "DMDY", "RFSTDTC", "RFENDTC",
               "RFXSTDTC", "RFXENDTC", "RFICDTC", "RFPENDTC", "DTHDTC", "BRTHDTC"}


@dataclass
class StudyInputs:
    intervals: list[DosingInterval] = field(default_factory=list)
    samples: list[SampleEvent] = field(default_factory=list)
    covariates: pd.DataFrame | None = None


# ── Helpers ───────────────────────────────────────────────────────────────

def _safe_read(study: StudyInfo, domain: str) -> pd.DataFrame | None:
    """Read an XPT domain, return None if missing or unreadable."""
    key = domain.lower()
    if key not in study.xpt_files:
        return None
    try:
        return read_domain(study.xpt_files[key])
    except Exception as e:
        logger.warning("Failed to read %s for %s: %s", domain, study.study_id, e)
        return None


def _str(row: pd.Series, col: str) -> str | None:
    val = row.get(col)
    if is_missing(val):
        return None
    return str(val).strip()


def _num(row: pd.Series, col: str) -> float | None:
    val = row.get(col)
    if is_missing(val):
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _study_day(row: pd.Series, *cols: str) -> int | None:
    """First usable study day among *cols* (e.g. VISITDY, then --DY)."""
    for col in cols:
        val = _num(row, col)
        if val is not None:
            return int(val)
    return None


def _reference_starts(dm_df: pd.DataFrame | None) -> dict[str, pd.Timestamp]:
    """USUBJID -> midnight of RFSTDTC."""
    starts: dict[str, pd.Timestamp] = {}
    if dm_df is None or "RFSTDTC" not in dm_df.columns:
        return starts
    for _, row in dm_df.iterrows():
        subj = _str(row, "USUBJID")
        raw = _str(row, "RFSTDTC")
        if not subj or not raw:
            continue
        try:
            starts[subj] = resolve_datetime(raw[:10], field="RFSTDTC")
        except UnresolvedTimestamp as e:
            logger.warning("RFSTDTC unusable for %s: %s", subj, e)
    return starts


def nominal_day_start(ref_start: pd.Timestamp | None, day: int | None) -> pd.Timestamp | None:
    """Midnight of study *day* (day 1 = reference start, no day 0)."""
    if ref_start is None or day is None:
        return None
    offset = day - 1 if day > 0 else day
    return ref_start + pd.Timedelta(days=offset)


def resolve_drug_map(ex_df: pd.DataFrame, pc_df: pd.DataFrame, drug_map: dict[str, str] | None) -> dict[str, str]:
    """PCTESTCD -> EXTRT so samples and doses share the partition key.

    An explicit map wins; a study with a single treatment maps every analyte
    to it; otherwise analytes are used verbatim.
    """
    if drug_map:
        return dict(drug_map)
    treatments = sorted({str(t).strip() for t in ex_df.get("EXTRT", pd.Series(dtype=str)).dropna()})
    analytes = sorted({str(a).strip() for a in pc_df.get("PCTESTCD", pd.Series(dtype=str)).dropna()})
    if len(treatments) == 1:
        return {a: treatments[0] for a in analytes}
    return {a: a for a in analytes}


# ── Domain mapping ──────────────────────────────────────────────────────

def intervals_from_ex(ex_df: pd.DataFrame, ref_starts: dict[str, pd.Timestamp]) -> list[DosingInterval]:
    intervals = []
    for idx, row in ex_df.iterrows():
        subj = _str(row, "USUBJID") or ""
        seq = _num(row, "EXSEQ")
        day = _study_day(row, "VISITDY", "EXSTDY")
        intervals.append(DosingInterval(
            record_id=f"{subj}/EX/{int(seq) if seq is not None else idx + 1}",
            subject_id=subj,
            drug=_str(row, "EXTRT") or "",
            start=_str(row, "EXSTDTC"),
            end=_str(row, "EXENDTC"),
            nominal_start=nominal_day_start(ref_starts.get(subj), day),
            frequency=_str(row, "EXDOSFRQ") or "ONCE",
            dose=_num(row, "EXDOSE"),
            dose_unit=_str(row, "EXDOSU"),
            visit=_str(row, "VISIT"),
            visit_day=day,
        ))
    return intervals


def samples_from_pc(
    pc_df: pd.DataFrame,
    ref_starts: dict[str, pd.Timestamp],
    drug_map: dict[str, str],
) -> list[SampleEvent]:
    samples = []
    for idx, row in pc_df.iterrows():
        subj = _str(row, "USUBJID") or ""
        seq = _num(row, "PCSEQ")
        analyte = _str(row, "PCTESTCD") or ""

        nominal = None
        day_start = nominal_day_start(ref_starts.get(subj), _study_day(row, "VISITDY", "PCDY"))
        elapsed = parse_elapsed_hours(row.get("PCELTM"))
        if day_start is not None and elapsed is not None:
            nominal = day_start + pd.Timedelta(hours=elapsed)

        samples.append(SampleEvent(
            record_id=f"{subj}/PC/{int(seq) if seq is not None else idx + 1}",
            subject_id=subj,
            drug=drug_map.get(analyte, analyte),
            collected=_str(row, "PCDTC"),
            nominal=nominal,
            value=_num(row, "PCSTRESN"),
            value_text=_str(row, "PCSTRESC") or _str(row, "PCORRES"),
            unit=_str(row, "PCSTRESU"),
            specimen=_str(row, "PCSPEC"),
            timepoint=_str(row, "PCTPT"),
            visit=_str(row, "VISIT"),
            lloq=_num(row, "PCLLOQ"),
        ))
    return samples


def covariates_from_dm(dm_df: pd.DataFrame | None) -> pd.DataFrame | None:
    if dm_df is None or "USUBJID" not in dm_df.columns:
        return None
    keep = ["USUBJID"] + [
        c for c in dm_df.columns
        if c != "USUBJID" and c not in _DM_EXCLUDE and not c.endswith("DTC")
    ]
    cov = dm_df[keep].drop_duplicates(subset="USUBJID", keep="first")
    return cov.reset_index(drop=True)


def load_study_inputs(study: StudyInfo, drug_map: dict[str, str] | None = None) -> StudyInputs:
    """Load EX/PC/DM for *study*. Missing EX or PC yields empty inputs."""
    ex_df = _safe_read(study, "ex")
    pc_df = _safe_read(study, "pc")
    dm_df = _safe_read(study, "dm")

    if ex_df is None or pc_df is None:
        logger.warning("Study %s lacks EX or PC; no PK inputs", study.study_id)
        return StudyInputs(covariates=covariates_from_dm(dm_df))

    ref_starts = _reference_starts(dm_df)
    mapping = resolve_drug_map(ex_df, pc_df, drug_map)
    inputs = StudyInputs(
        intervals=intervals_from_ex(ex_df, ref_starts),
        samples=samples_from_pc(pc_df, ref_starts, mapping),
        covariates=covariates_from_dm(dm_df),
    )
    logger.info(
        "Loaded %s: %d EX intervals, %d PC samples, %d subjects",
        study.study_id, len(inputs.intervals), len(inputs.samples),
        0 if inputs.covariates is None else len(inputs.covariates),
    )
    return inputs
