"""Shared fixtures: a small SEND study written to XPT on disk."""

import numpy as np
import pandas as pd
import pytest

from services.xpt_processor import write_xpt


def _write_domain(folder, name: str, df: pd.DataFrame):
    write_xpt(df, folder / f"{name}.xpt", table_name=name.upper())


@pytest.fixture
def study_dir(tmp_path):
    """data/PKSTUDY/{dm,ex,pc}.xpt: two subjects, daily dosing for 3 days."""
    folder = tmp_path / "data" / "PKSTUDY"
    folder.mkdir(parents=True)

    _write_domain(folder, "dm", pd.DataFrame({
        "STUDYID": ["PK1", "PK1"],
        "USUBJID": ["PK1-001", "PK1-002"],
        "RFSTDTC": ["2024-01-01", "2024-01-01T07:30"],
        "SEX": ["F", "M"],
        "AGE": [34.0, 51.0],
        "AGEU": ["YEARS", "YEARS"],
    }))
    _write_domain(folder, "ex", pd.DataFrame({
        "STUDYID": ["PK1", "PK1"],
        "USUBJID": ["PK1-001", "PK1-002"],
        "EXSEQ": [1.0, 1.0],
        "EXTRT": ["DRUGX", "DRUGX"],
        "EXDOSE": [10.0, 20.0],
        "EXDOSU": ["mg", "mg"],
        "EXDOSFRQ": ["QD", "QD"],
        "EXSTDTC": ["2024-01-01T08:00", "2024-01-01T08:10"],
        "EXENDTC": ["2024-01-03T08:00", "2024-01-03"],
        "VISIT": ["DAY 1", "DAY 1"],
        "VISITDY": [1.0, 1.0],
    }))
    _write_domain(folder, "pc", pd.DataFrame({
        "STUDYID": ["PK1"] * 4,
        "USUBJID": ["PK1-001", "PK1-001", "PK1-002", "PK1-002"],
        "PCSEQ": [1.0, 2.0, 1.0, 2.0],
        "PCTESTCD": ["DRUGXA"] * 4,
        "PCORRES": ["12.1", "<LLOQ", "30.5", "4.2"],
        "PCSTRESC": ["12.1", "<LLOQ", "30.5", "4.2"],
        "PCSTRESN": [12.1, np.nan, 30.5, 4.2],
        "PCSTRESU": ["ng/mL"] * 4,
        "PCSPEC": ["PLASMA"] * 4,
        "PCTPT": ["1H POST-DOSE", "PRE-DOSE", "1H POST-DOSE", "PRE-DOSE"],
        "PCELTM": ["PT1H", "PT0H", "PT1H", "PT0H"],
        "PCLLOQ": [1.0] * 4,
        "PCDTC": ["2024-01-01T09:00", "2024-01-02T07:55", "2024-01-01T09:15", "2024-01-02"],
        "VISITDY": [1.0, 2.0, 1.0, 2.0],
    }))
    return folder
