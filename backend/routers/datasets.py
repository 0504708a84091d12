"""API router for the derived PK analysis dataset."""

import math

import numpy as np
import pandas as pd
from fastapi import APIRouter, HTTPException, Query

from config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MAX_WORKERS, TIE_POLICY
from generator.dataset_spec import DatasetSpec, load_dataset_spec
from models.schemas import ColumnInfo, DatasetPage, DerivationSummary, FaultsResponse, StudySummary
from services.derivation.pipeline import DerivationResult, derive_pk_dataset
from services.study_discovery import StudyInfo
from services.study_loader import load_study_inputs

router = APIRouter(prefix="/api")

# Populated at startup
_studies: dict[str, StudyInfo] = {}
_results: dict[str, DerivationResult] = {}
_dataset_spec: DatasetSpec | None = None


def init_studies(studies: dict[str, StudyInfo]):
    _studies.clear()
    _studies.update(studies)
    _results.clear()


def _get_study(study_id: str) -> StudyInfo:
    if study_id not in _studies:
        raise HTTPException(status_code=404, detail=f"Study '{study_id}' not found")
    return _studies[study_id]


def _get_spec() -> DatasetSpec:
    global _dataset_spec
    if _dataset_spec is None:
        _dataset_spec = load_dataset_spec()
    return _dataset_spec


def _get_result(study: StudyInfo) -> DerivationResult:
    """Derive once per study, then serve from memory."""
    if not study.has_pk_inputs:
        raise HTTPException(
            status_code=404,
            detail=f"Study '{study.study_id}' is missing domain(s) {study.missing_pk_domains} needed for a PK dataset",
        )
    if study.study_id not in _results:
        inputs = load_study_inputs(study)
        _results[study.study_id] = derive_pk_dataset(
            inputs.intervals,
            inputs.samples,
            inputs.covariates,
            tie_policy=TIE_POLICY,
            max_workers=MAX_WORKERS,
        )
    return _results[study.study_id]


def _cell(val):
    """JSON-safe cell value: missing -> None, timestamps -> ISO 8601."""
    if val is None or val is pd.NaT:
        return None
    if isinstance(val, pd.Timestamp):
        return val.isoformat()
    if isinstance(val, (np.integer,)):
        return int(val)
    if isinstance(val, (float, np.floating)):
        val = float(val)
        return None if math.isnan(val) else val
    if val == "":
        return None
    return val


@router.get("/studies", response_model=list[StudySummary])
def list_studies():
    return [
        StudySummary(
            study_id=study.study_id,
            name=study.name,
            domain_count=len(study.xpt_files),
            domains=sorted(study.xpt_files),
            has_pk_inputs=study.has_pk_inputs,
            missing_domains=study.missing_pk_domains,
        )
        for _, study in sorted(_studies.items())
    ]


@router.get("/studies/{study_id}/pk-dataset", response_model=DatasetPage)
def get_pk_dataset(
    study_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    usubjid: str | None = Query(None, description="Filter by subject"),
):
    study = _get_study(study_id)
    result = _get_result(study)
    spec = _get_spec()

    df = result.dataset
    if usubjid:
        df = df[df["USUBJID"] == usubjid]

    total_rows = len(df)
    total_pages = max(1, math.ceil(total_rows / page_size))

    # Paginate
    start = (page - 1) * page_size
    page_df = df.iloc[start:start + page_size]

    labels = {v.name: v.label for v in spec.variables}
    columns = [ColumnInfo(name=c, label=labels.get(c, c)) for c in df.columns]
    rows = [
        {col: _cell(val) for col, val in zip(df.columns, values)}
        for values in page_df.itertuples(index=False, name=None)
    ]

    return DatasetPage(
        study_id=study_id,
        dataset=spec.name,
        label=spec.label,
        columns=columns,
        rows=rows,
        total_rows=total_rows,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.get("/studies/{study_id}/pk-dataset/faults", response_model=FaultsResponse)
def get_pk_dataset_faults(study_id: str):
    study = _get_study(study_id)
    result = _get_result(study)
    return FaultsResponse(
        study_id=study_id,
        summary=DerivationSummary(**result.summary()),
        faults=result.faults,
    )
