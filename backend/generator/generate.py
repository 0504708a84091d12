"""CLI entry point: loads EX/PC/DM XPT, derives the PK dataset, writes XPT + faults.

Usage:
    cd backend && python -m generator.generate <study_id>
"""

import json
import logging
import math
import sys
from pathlib import Path

import numpy as np

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import MAX_WORKERS, OUTPUT_DIR, PK_DATA_DIR, TIE_POLICY
from generator.dataset_spec import check_conformance, load_dataset_spec, write_dataset
from services.derivation.pipeline import derive_pk_dataset
from services.study_discovery import StudyInfo, discover_studies, study_from_folder
from services.study_loader import load_study_inputs


def _sanitize(obj):
    """Replace NaN/Inf with None, convert numpy types to Python types."""
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    if isinstance(obj, (float, np.floating)):
        val = float(obj)
        return None if (math.isnan(val) or math.isinf(val)) else val
    if isinstance(obj, dict):
        return {k: _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize(v) for v in obj]
    if isinstance(obj, set):
        return sorted(_sanitize(v) for v in obj)
    return obj


def _write_json(path: Path, data):
    """Write sanitized JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(_sanitize(data), f, indent=2)
    print(f"  wrote {path.name} ({len(data) if isinstance(data, list) else 1} items)")


def _find_study(study_id: str) -> StudyInfo | None:
    studies = discover_studies()
    if study_id in studies:
        return studies[study_id]
    # Not in the allowed set: try the folder directly
    return study_from_folder(study_id, PK_DATA_DIR / study_id)


def generate(study_id: str, output_dir: Path | None = None) -> dict:
    """Run the full derivation for a study and write its outputs."""
    print(f"=== Deriving PK analysis dataset for {study_id} ===")

    study = _find_study(study_id)
    if study is None:
        print(f"ERROR: Study '{study_id}' not found")
        sys.exit(1)
    if not study.has_pk_inputs:
        missing = "/".join(study.missing_pk_domains).upper()
        print(f"ERROR: Study '{study_id}' has no {missing} domain(s)")
        sys.exit(1)

    out_dir = (output_dir or OUTPUT_DIR) / study_id

    print("Phase 1: Loading EX / PC / DM...")
    inputs = load_study_inputs(study)
    print(f"  {len(inputs.intervals)} dosing intervals, {len(inputs.samples)} samples")

    print("Phase 2: Deriving records...")
    result = derive_pk_dataset(
        inputs.intervals,
        inputs.samples,
        inputs.covariates,
        tie_policy=TIE_POLICY,
        max_workers=MAX_WORKERS,
    )
    summary = result.summary()
    print(f"  {summary['rows']} rows ({summary['doses']} doses, {summary['observations']} observations, "
          f"{summary['copies']} dual-role copies) for {summary['subjects']} subjects")

    print("Phase 3: Checking conformance...")
    spec = load_dataset_spec()
    conformance = check_conformance(result.dataset, spec)
    print(f"  {len(conformance)} conformance fault(s)")

    print("Writing output files...")
    xpt_path = write_dataset(result.dataset, spec, out_dir / f"{spec.name.lower()}.xpt")
    print(f"  wrote {xpt_path.name}")
    faults = [f.model_dump() for f in result.faults + conformance]
    _write_json(out_dir / "derivation_faults.json", faults)
    _write_json(out_dir / "derivation_summary.json", summary)

    print(f"\n=== Derivation complete: {out_dir} ===")
    print(f"  Faults: {len(faults)}")
    return summary


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if len(sys.argv) < 2:
        print("Usage: python -m generator.generate <study_id>")
        sys.exit(1)
    generate(sys.argv[1])
