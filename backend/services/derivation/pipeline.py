"""PK analysis dataset derivation: intervals + samples -> one flat record table.

Order:
  1. Expand dosing intervals into dose events
  2. Normalize doses and samples into the combined record table
  3. Per (USUBJID, DRUG) partition: as-of dose joins (actual + nominal)
  4. Per partition: relative times
  5. Per partition: dual-role copies
  6. Assemble: covariates, row order, ASEQ

Steps 3-5 only see their own partition, so partitions can be fanned out to a
thread pool. Results are collected in sorted partition order, never in
completion order, so the output does not depend on ``max_workers``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import pandas as pd

from models.records import DerivationFault, DosingInterval, SampleEvent
from services.derivation.assembler import OUTPUT_COLUMNS, assemble_dataset
from services.derivation.dual_role import DTYPE_COPY, add_dual_role_copies
from services.derivation.event_normalizer import EVID_DOSE, normalize_events
from services.derivation.frequency import load_frequency_table
from services.derivation.interval_expander import expand_intervals
from services.derivation.relative_time import derive_relative_times
from services.derivation.temporal_join import (
    DEFAULT_TIE_POLICY,
    TIE_POLICIES,
    annotate_partition,
    partition_records,
)

log = logging.getLogger(__name__)


@dataclass
class DerivationResult:
    dataset: pd.DataFrame
    faults: list[DerivationFault] = field(default_factory=list)

    def summary(self) -> dict:
        ds = self.dataset
        by_kind: dict[str, int] = {}
        for f in self.faults:
            by_kind[f.kind] = by_kind.get(f.kind, 0) + 1
        return {
            "rows": int(len(ds)),
            "subjects": int(ds["USUBJID"].nunique()) if len(ds) else 0,
            "doses": int((ds["EVID"] == EVID_DOSE).sum()) if len(ds) else 0,
            "observations": int((ds["EVID"] != EVID_DOSE).sum()) if len(ds) else 0,
            "copies": int((ds["DTYPE"] == DTYPE_COPY).sum()) if len(ds) else 0,
            "faults": len(self.faults),
            "faults_by_kind": dict(sorted(by_kind.items())),
        }


def derive_partition(
    key: tuple[str, str],
    part: pd.DataFrame,
    tie_policy: str = DEFAULT_TIE_POLICY,
) -> tuple[pd.DataFrame | None, list[DerivationFault]]:
    """Steps 3-5 for one (USUBJID, DRUG) partition.

    A partition without dose events has no timeline to anchor to and is
    dropped with a NoDosingData fault.
    """
    subject_id, drug = key
    if not (part["EVID"] == EVID_DOSE).any():
        log.warning("No dosing data for %s / %s: %d record(s) dropped", subject_id, drug, len(part))
        return None, [DerivationFault(
            kind="NoDosingData",
            subject_id=subject_id,
            drug=drug,
            detail=f"{len(part)} observation(s) without any dose event",
        )]

    annotated = annotate_partition(part, tie_policy)
    timed = derive_relative_times(annotated)
    return add_dual_role_copies(timed, tie_policy)


def _empty_dataset(covariates: pd.DataFrame | None) -> pd.DataFrame:
    cov_cols = [] if covariates is None else [c for c in covariates.columns if c not in OUTPUT_COLUMNS]
    return pd.DataFrame(columns=OUTPUT_COLUMNS + cov_cols)


def derive_pk_dataset(
    intervals: Iterable[DosingInterval],
    samples: Iterable[SampleEvent],
    covariates: pd.DataFrame | None = None,
    frequency_table: dict[str, float] | None = None,
    *,
    tie_policy: str = DEFAULT_TIE_POLICY,
    max_workers: int = 1,
) -> DerivationResult:
    """Run the full derivation and return the dataset with collected faults."""
    if tie_policy not in TIE_POLICIES:
        raise ValueError(f"Unknown tie policy '{tie_policy}' (expected one of {list(TIE_POLICIES)})")
    table = frequency_table if frequency_table is not None else load_frequency_table()

    dose_events, faults = expand_intervals(intervals, table)
    records, sample_faults = normalize_events(dose_events, samples)
    faults.extend(sample_faults)

    partitions = partition_records(records)
    keys = list(partitions)

    def _run(key):
        return derive_partition(key, partitions[key], tie_policy)

    if max_workers > 1 and len(keys) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(_run, keys))
    else:
        results = [_run(k) for k in keys]

    frames = []
    for frame, part_faults in results:
        faults.extend(part_faults)
        if frame is not None:
            frames.append(frame)

    if frames:
        dataset = assemble_dataset(pd.concat(frames, ignore_index=True), covariates)
    else:
        dataset = _empty_dataset(covariates)

    result = DerivationResult(dataset=dataset, faults=faults)
    log.info("PK dataset derived: %s", result.summary())
    return result
