"""Tests for final table assembly: covariates, row order, ASEQ."""

import pandas as pd
import pytest

from models.records import DoseEvent, SampleEvent
from services.derivation.assembler import (
    OUTPUT_COLUMNS,
    assemble_dataset,
    governing_dose_time,
    merge_covariates,
)
from services.derivation.dual_role import add_dual_role_copies
from services.derivation.event_normalizer import normalize_events
from services.derivation.relative_time import derive_relative_times
from services.derivation.temporal_join import annotate_partition, partition_records

T0 = pd.Timestamp("2024-01-01 00:00")


def _h(hours: float) -> pd.Timestamp:
    return T0 + pd.Timedelta(hours=hours)


def _records(subject_id="S1") -> pd.DataFrame:
    """Three daily doses, a pre-dose sample, a post-dose sample and a trough at the second dose."""
    doses = [
        DoseEvent(record_id=f"{subject_id}/D{i}", interval_id="EX", subject_id=subject_id, drug="X",
                  actual=_h(24 * i), nominal=_h(24 * i), dose=10.0, dose_unit="mg", visit=f"DAY {i + 1}")
        for i in range(3)
    ]
    samples = [
        SampleEvent(record_id=f"{subject_id}/PRE", subject_id=subject_id, drug="X", collected=_h(-1), value=0.0),
        SampleEvent(record_id=f"{subject_id}/POST", subject_id=subject_id, drug="X", collected=_h(2), value=5.0),
        SampleEvent(record_id=f"{subject_id}/TROUGH", subject_id=subject_id, drug="X", collected=_h(24), value=1.0),
    ]
    records, _ = normalize_events(doses, samples)
    frames = []
    for part in partition_records(records).values():
        out, _ = add_dual_role_copies(derive_relative_times(annotate_partition(part)))
        frames.append(out)
    return pd.concat(frames, ignore_index=True)


# ─── Baseline grouping ──────────────────────────────────────

class TestGoverningDoseTime:

    def test_by_reference_type(self):
        rec = _records()
        rfndtm = governing_dose_time(rec)
        by_id = {
            (r["RECID"], r["DTYPE"]): rfndtm[i]
            for i, r in rec.iterrows()
        }
        assert by_id[("S1/D1", "")] == _h(24)            # dose: itself
        assert by_id[("S1/POST", "")] == _h(0)           # previous dose
        assert by_id[("S1/PRE", "")] == _h(0)            # no dose yet: first dose
        assert by_id[("S1/TROUGH", "")] == _h(0)         # original: previous dose
        assert by_id[("S1/TROUGH", "COPY")] == _h(24)    # copy: following dose


# ─── Covariates ─────────────────────────────────────────────

class TestMergeCovariates:

    def test_broadcast_to_every_record(self):
        rec = _records()
        cov = pd.DataFrame({"USUBJID": ["S1", "S9"], "SEX": ["F", "M"], "AGE": [34, 50]})
        out = merge_covariates(rec, cov)
        assert len(out) == len(rec)
        assert (out["SEX"] == "F").all()
        assert (out["AGE"] == 34).all()

    def test_none_is_noop(self):
        rec = _records()
        assert merge_covariates(rec, None) is rec

    def test_missing_key_raises(self):
        with pytest.raises(KeyError):
            merge_covariates(_records(), pd.DataFrame({"SUBJ": ["S1"]}))

    def test_duplicate_subject_rows_raise(self):
        cov = pd.DataFrame({"USUBJID": ["S1", "S1"], "SEX": ["F", "F"]})
        with pytest.raises(pd.errors.MergeError):
            merge_covariates(_records(), cov)

    def test_clashing_columns_dropped(self, caplog):
        cov = pd.DataFrame({"USUBJID": ["S1"], "DOSE": [999.0], "SEX": ["F"]})
        out = merge_covariates(_records(), cov)
        assert 999.0 not in set(out["DOSE"])
        assert "SEX" in out.columns
        assert "shadow" in caplog.text


# ─── assemble_dataset ───────────────────────────────────────

class TestAssembleDataset:

    def test_columns(self):
        cov = pd.DataFrame({"USUBJID": ["S1"], "SEX": ["F"]})
        out = assemble_dataset(_records(), cov)
        assert list(out.columns) == OUTPUT_COLUMNS + ["SEX"]

    def test_covariates_named_like_assembled_columns(self):
        cov = pd.DataFrame({"USUBJID": ["S1"], "ASEQ": [99], "RFNDTM": ["x"], "SEX": ["F"]})
        out = assemble_dataset(_records(), cov)
        assert list(out.columns) == OUTPUT_COLUMNS + ["SEX"]
        assert out.columns.is_unique
        assert out["ASEQ"].iloc[0] == 1

    def test_row_order(self):
        out = assemble_dataset(_records())
        assert list(zip(out["RECID"], out["DTYPE"])) == [
            ("S1/PRE", ""),
            ("S1/D0", ""),
            ("S1/POST", ""),
            ("S1/TROUGH", ""),
            ("S1/D1", ""),
            ("S1/TROUGH", "COPY"),
            ("S1/D2", ""),
        ]

    def test_dose_before_observation_at_same_time(self):
        rec = _records()
        # Move the post-dose sample onto the first dose instant
        rec.loc[rec["RECID"] == "S1/POST", "ADTM"] = _h(0)
        out = assemble_dataset(rec)
        ids = list(out["RECID"])
        assert ids.index("S1/D0") < ids.index("S1/POST")

    def test_aseq_per_subject(self):
        rec = pd.concat([_records("S2"), _records("S1")], ignore_index=True)
        out = assemble_dataset(rec)
        assert list(out["USUBJID"].unique()) == ["S1", "S2"]
        for _, grp in out.groupby("USUBJID"):
            assert list(grp["ASEQ"]) == list(range(1, len(grp) + 1))

    def test_deterministic(self):
        a = assemble_dataset(_records())
        b = assemble_dataset(_records())
        pd.testing.assert_frame_equal(a, b)
