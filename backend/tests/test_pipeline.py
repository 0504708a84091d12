"""End-to-end tests for derive_pk_dataset."""

import numpy as np
import pandas as pd
import pytest

from models.records import DosingInterval, SampleEvent
from services.derivation.assembler import OUTPUT_COLUMNS
from services.derivation.dual_role import DTYPE_COPY
from services.derivation.pipeline import derive_partition, derive_pk_dataset
from services.derivation.event_normalizer import normalize_events

TABLE = {"QD": 24.0, "BID": 12.0, "ONCE": 0.0}
DAY1 = pd.Timestamp("2024-01-01 00:00")


def _h(hours: float) -> pd.Timestamp:
    return DAY1 + pd.Timedelta(hours=hours)


def _interval(subject_id="S1", record_id=None, **kw) -> DosingInterval:
    fields = dict(
        record_id=record_id or f"{subject_id}/EX/1",
        subject_id=subject_id,
        drug="X",
        start="2024-01-01T00:00",
        end="2024-01-03T00:00",
        frequency="QD",
        dose=100.0,
        dose_unit="mg",
        visit_day=1,
    )
    fields.update(kw)
    return DosingInterval(**fields)


def _sample(record_id, hours, subject_id="S1", value=1.0, drug="X") -> SampleEvent:
    return SampleEvent(record_id=record_id, subject_id=subject_id, drug=drug, collected=_h(hours),
                       value=value, unit="ng/mL")


def _study(n_subjects=5):
    intervals, samples = [], []
    for i in range(n_subjects):
        subj = f"S{i:02d}"
        intervals.append(_interval(subj, start=f"2024-01-0{1 + i % 3}T08:00", end=f"2024-01-0{4 + i % 3}T08:00"))
        for j, hours in enumerate([-1, 0.5, 2, 24, 26, 48, 50.5, 72, 80]):
            samples.append(_sample(f"{subj}/PC/{j}", 8 + 24 * (i % 3) + hours, subject_id=subj, value=float(j)))
    cov = pd.DataFrame({
        "USUBJID": [f"S{i:02d}" for i in range(n_subjects)],
        "SEX": ["F" if i % 2 else "M" for i in range(n_subjects)],
        "AGE": [30 + i for i in range(n_subjects)],
    })
    return intervals, samples, cov


def _row(df, recid, dtype=""):
    return df[(df["RECID"] == recid) & (df["DTYPE"] == dtype)].iloc[0]


# ─── End-to-end example ─────────────────────────────────────

class TestEndToEndExample:
    """Daily dosing Day 1-3 at 00:00, samples at Day 1 00:30 and Day 2 00:00."""

    @pytest.fixture(scope="class")
    def result(self):
        return derive_pk_dataset(
            [_interval()],
            [_sample("P1", 0.5), _sample("P2", 24)],
            frequency_table=TABLE,
        )

    def test_three_doses(self, result):
        doses = result.dataset[result.dataset["EVID"] == 1]
        assert list(doses["ADTM"]) == [_h(0), _h(24), _h(48)]
        assert list(doses["VISIT"]) == ["DAY 1", "DAY 2", "DAY 3"]

    def test_post_dose_sample(self, result):
        row = _row(result.dataset, "P1")
        assert row["AFRLT"] == 0.5
        assert row["ARRLT"] == 0.5
        assert row["PRVADTM"] == _h(0)
        assert row["REFTYP"] == "PREVIOUS"

    def test_sample_at_second_dose(self, result):
        row = _row(result.dataset, "P2")
        assert row["AFRLT"] == 24
        assert row["ARRLT"] == 24
        assert row["AXRLT"] == 0
        assert row["NXTADTM"] == _h(24)

    def test_dual_role_copy(self, result):
        copy = _row(result.dataset, "P2", DTYPE_COPY)
        assert copy["COPYOF"] == "P2"
        assert copy["VISIT"] == "DAY 2"
        assert copy["REFTYP"] == "NEXT"
        assert copy["ARRLT"] == 0
        assert copy["ARRLTC"] == 0
        assert copy["RFNDTM"] == _h(24)

    def test_shape(self, result):
        ds = result.dataset
        assert len(ds) == 6
        assert list(ds.columns) == OUTPUT_COLUMNS
        assert list(ds["ASEQ"]) == [1, 2, 3, 4, 5, 6]
        assert result.faults == []

    def test_summary(self, result):
        s = result.summary()
        assert s["rows"] == 6
        assert s["subjects"] == 1
        assert s["doses"] == 3
        assert s["observations"] == 3
        assert s["copies"] == 1
        assert s["faults"] == 0


# ─── Dose change at the baseline ────────────────────────────

class TestDoseChange:
    """100 mg on Day 1, 200 mg on Days 2-3, sample at Day 2 00:00."""

    @pytest.fixture(scope="class")
    def ds(self):
        intervals = [
            _interval(record_id="S1/EX/1", end=None, dose=100.0),
            _interval(record_id="S1/EX/2", start="2024-01-02T00:00", end="2024-01-03T00:00",
                      dose=200.0, visit_day=2),
        ]
        return derive_pk_dataset(intervals, [_sample("P2", 24)], frequency_table=TABLE).dataset

    def test_original_refers_to_first_dose(self, ds):
        row = _row(ds, "P2")
        assert row["PRVADOSE"] == 100.0
        assert row["PRVAVIS"] == "DAY 1"
        assert row["NXTADOSE"] == 200.0

    def test_copy_refers_to_following_dose(self, ds):
        copy = _row(ds, "P2", DTYPE_COPY)
        assert copy["VISIT"] == "DAY 2"
        assert copy["PRVADOSE"] == copy["NXTADOSE"] == 200.0
        assert copy["PRVNDOSE"] == copy["NXTNDOSE"] == 200.0
        assert copy["PRVAVIS"] == copy["PRVNVIS"] == "DAY 2"
        assert copy["PRVADTM"] == copy["RFNDTM"] == _h(24)


# ─── Edge cases ─────────────────────────────────────────────

class TestEdgeCases:

    def test_pre_first_dose_sample(self):
        result = derive_pk_dataset([_interval()], [_sample("PRE", -2)], frequency_table=TABLE)
        row = _row(result.dataset, "PRE")
        assert row["AFRLT"] == -2
        assert row["ARRLT"] == row["AFRLT"]
        assert row["REFTYP"] == "FIRST"
        assert row["PREDOSFL"] == "Y"
        assert pd.isna(row["PRVADTM"])

    def test_subject_without_doses_excluded(self):
        result = derive_pk_dataset(
            [_interval("S1")],
            [_sample("P1", 1), _sample("Q1", 1, subject_id="S2")],
            frequency_table=TABLE,
        )
        assert set(result.dataset["USUBJID"]) == {"S1"}
        assert [(f.kind, f.subject_id) for f in result.faults] == [("NoDosingData", "S2")]

    def test_faults_do_not_abort_run(self):
        intervals = [
            _interval("S1"),
            _interval("S2", frequency="Q5H"),
            _interval("S3", end="2023-12-01T00:00"),
        ]
        samples = [_sample("P1", 1), SampleEvent(record_id="P2", subject_id="S1", drug="X", collected="2024-01")]
        result = derive_pk_dataset(intervals, samples, frequency_table=TABLE)
        kinds = [f.kind for f in result.faults]
        assert kinds == ["UnknownFrequencyCode", "InvertedInterval", "UnresolvedTimestamp"]
        assert set(result.dataset["USUBJID"]) == {"S1"}

    def test_no_usable_data(self):
        result = derive_pk_dataset([], [], frequency_table=TABLE)
        assert result.dataset.empty
        assert list(result.dataset.columns) == OUTPUT_COLUMNS
        assert result.summary()["rows"] == 0

    def test_unknown_tie_policy(self):
        with pytest.raises(ValueError, match="tie policy"):
            derive_pk_dataset([], [], frequency_table=TABLE, tie_policy="latest")

    def test_default_frequency_table(self):
        result = derive_pk_dataset([_interval(frequency="Q24H")], [])
        assert len(result.dataset) == 3

    def test_derive_partition_without_doses(self):
        records, _ = normalize_events([], [_sample("P1", 1)])
        frame, faults = derive_partition(("S1", "X"), records)
        assert frame is None
        assert faults[0].kind == "NoDosingData"


# ─── Tie policies through the pipeline ──────────────────────

class TestTiePolicy:

    def _inputs(self):
        intervals = [
            _interval(record_id="S1/EX/1", end=None, dose=10.0),
            _interval(record_id="S1/EX/2", end=None, dose=20.0),
        ]
        return intervals, [_sample("P1", 1)]

    def test_input_order_takes_last_recorded(self):
        result = derive_pk_dataset(*self._inputs(), frequency_table=TABLE)
        assert _row(result.dataset, "P1")["PRVADOSE"] == 20.0

    def test_reverse_input_order_takes_first_recorded(self):
        result = derive_pk_dataset(*self._inputs(), frequency_table=TABLE, tie_policy="reverse_input_order")
        assert _row(result.dataset, "P1")["PRVADOSE"] == 10.0


# ─── Determinism ────────────────────────────────────────────

class TestDeterminism:

    def test_rerun_identical(self):
        intervals, samples, cov = _study()
        a = derive_pk_dataset(intervals, samples, cov, frequency_table=TABLE)
        b = derive_pk_dataset(intervals, samples, cov, frequency_table=TABLE)
        pd.testing.assert_frame_equal(a.dataset, b.dataset)
        assert a.faults == b.faults

    def test_parallel_matches_sequential(self):
        intervals, samples, cov = _study(8)
        seq = derive_pk_dataset(intervals, samples, cov, frequency_table=TABLE, max_workers=1)
        par = derive_pk_dataset(intervals, samples, cov, frequency_table=TABLE, max_workers=4)
        pd.testing.assert_frame_equal(seq.dataset, par.dataset)
        assert seq.faults == par.faults


# ─── Properties over a multi-subject study ──────────────────

class TestProperties:

    @pytest.fixture(scope="class")
    def ds(self):
        intervals, samples, cov = _study()
        return derive_pk_dataset(intervals, samples, cov, frequency_table=TABLE).dataset

    def test_covariates_attached(self, ds):
        assert ds["SEX"].notna().all()
        assert (ds.loc[ds["USUBJID"] == "S03", "AGE"] == 33).all()

    def test_aseq_strictly_increasing(self, ds):
        for _, grp in ds.groupby("USUBJID"):
            assert grp["ASEQ"].is_monotonic_increasing
            assert grp["ASEQ"].iloc[0] == 1
            assert grp["ASEQ"].is_unique

    def test_monotone_time_since_first(self, ds):
        originals = ds[ds["DTYPE"] == ""]
        for _, grp in originals.groupby(["USUBJID", "DRUG"]):
            assert grp.sort_values("ADTM", kind="mergesort")["AFRLT"].is_monotonic_increasing

    def test_reference_consistency(self, ds):
        obs = ds[(ds["EVID"] == 0) & (ds["DTYPE"] == "") & ds["PRVADTM"].notna()]
        ref_since_first = (obs["PRVADTM"] - obs["FADTM"]) / pd.Timedelta(hours=1)
        np.testing.assert_allclose(obs["ARRLT"], obs["AFRLT"] - ref_since_first, atol=1e-6)

    def test_copies(self, ds):
        copies = ds[ds["DTYPE"] == DTYPE_COPY]
        originals = ds[ds["DTYPE"] == ""]
        # samples at 24h, 48h and 72h coincide with the 2nd-4th doses
        assert len(copies) == 3 * 5
        assert (copies["ARRLTC"] >= 0).all()
        since_governing = (copies["ADTM"] - copies["PRVADTM"]) / pd.Timedelta(hours=1)
        np.testing.assert_allclose(copies["ARRLT"], since_governing, atol=1e-6)
        for recid in copies["COPYOF"]:
            assert (originals["RECID"] == recid).sum() == 1
