import os
from pathlib import Path

BASE_DIR = Path(__file__).parent

PK_DATA_DIR = Path(os.environ.get("PK_DATA_DIR", BASE_DIR.parent / "data"))
OUTPUT_DIR = Path(os.environ.get("PK_OUTPUT_DIR", BASE_DIR / "generated"))

# Folders never scanned for studies, besides hidden ones
SKIP_FOLDERS: set[str] = {"__MACOSX"} | set(
    s.strip() for s in os.environ.get("PK_SKIP_FOLDERS", "").split(",") if s.strip()
)

# Empty set = every discovered study
ALLOWED_STUDIES: set[str] = set(
    s for s in os.environ.get("PK_ALLOWED_STUDIES", "").split(",") if s.strip()
)

METADATA_DIR = BASE_DIR / "metadata"
FREQUENCY_TABLE_FILE = Path(os.environ.get("PK_FREQUENCY_TABLE", METADATA_DIR / "frequency_codes.yaml"))
DATASET_SPEC_FILE = Path(os.environ.get("PK_DATASET_SPEC", METADATA_DIR / "adppk_variables.yaml"))

# Partition fan-out for the derivation pipeline (1 = sequential)
MAX_WORKERS = int(os.environ.get("PK_MAX_WORKERS", "1"))

# "input_order" or "reverse_input_order" for doses sharing a timestamp
TIE_POLICY = os.environ.get("PK_TIE_POLICY", "input_order")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
