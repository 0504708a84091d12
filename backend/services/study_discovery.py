import logging
from dataclasses import dataclass, field
from pathlib import Path

from config import ALLOWED_STUDIES, PK_DATA_DIR, SKIP_FOLDERS

logger = logging.getLogger(__name__)

# Domains a PK analysis dataset is derived from; DM only adds covariates
PK_DOMAINS = ("ex", "pc")


@dataclass
class StudyInfo:
    study_id: str
    name: str
    path: Path
    xpt_files: dict[str, Path] = field(default_factory=dict)  # domain (lowercase, no ext) -> Path

    @property
    def missing_pk_domains(self) -> list[str]:
        return [d for d in PK_DOMAINS if d not in self.xpt_files]

    @property
    def has_pk_inputs(self) -> bool:
        """EX and PC are both needed to build a PK analysis dataset."""
        return not self.missing_pk_domains


def discover_studies(data_dir: Path | None = None) -> dict[str, StudyInfo]:
    """Scan the data directory and return a dict of study_id -> StudyInfo.

    A folder holding .xpt files is a study. A folder without any is treated
    as a container and searched further down; nested study ids join the
    folder names with ``--``.
    """
    root = data_dir or PK_DATA_DIR
    studies: dict[str, StudyInfo] = {}
    if not root.is_dir():
        logger.warning("Data directory %s does not exist", root)
        return studies

    _scan(root, None, studies)

    if ALLOWED_STUDIES:
        studies = {k: v for k, v in studies.items() if k in ALLOWED_STUDIES}

    for study in studies.values():
        if not study.has_pk_inputs:
            logger.info("Study %s has no %s domain(s)", study.study_id, "/".join(study.missing_pk_domains).upper())
    return studies


def study_from_folder(study_id: str, folder: Path) -> StudyInfo | None:
    """StudyInfo for a single folder, None when it holds no .xpt files."""
    xpt_files = find_xpt_files(folder) if folder.is_dir() else {}
    if not xpt_files:
        return None
    return StudyInfo(study_id=study_id, name=folder.name, path=folder, xpt_files=xpt_files)


def find_xpt_files(folder: Path) -> dict[str, Path]:
    """Find .xpt files directly in a folder (not recursive). Returns domain_name -> Path."""
    xpt_files = {}
    for f in sorted(folder.iterdir()):
        if f.is_file() and f.suffix.lower() == ".xpt":
            xpt_files[f.stem.lower()] = f
    return xpt_files


def _is_skipped(entry: Path) -> bool:
    # Hidden folders, archive artifacts (__MACOSX) and PK_SKIP_FOLDERS
    return entry.name.startswith(".") or entry.name in SKIP_FOLDERS


def _scan(folder: Path, prefix: str | None, studies: dict[str, StudyInfo]):
    for entry in sorted(folder.iterdir()):
        if not entry.is_dir() or _is_skipped(entry):
            continue

        study_id = entry.name if prefix is None else f"{prefix}--{entry.name}"
        study = study_from_folder(study_id, entry)
        if study is not None:
            studies[study_id] = study
        else:
            _scan(entry, study_id, studies)
