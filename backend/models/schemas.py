from pydantic import BaseModel

from models.records import DerivationFault


class StudySummary(BaseModel):
    study_id: str
    name: str
    domain_count: int
    domains: list[str] = []
    has_pk_inputs: bool = False
    missing_domains: list[str] = []


class ColumnInfo(BaseModel):
    name: str
    label: str


class DatasetPage(BaseModel):
    study_id: str
    dataset: str
    label: str
    columns: list[ColumnInfo]
    rows: list[dict]
    total_rows: int
    page: int
    page_size: int
    total_pages: int


class DerivationSummary(BaseModel):
    rows: int
    subjects: int
    doses: int
    observations: int
    copies: int
    faults: int
    faults_by_kind: dict[str, int] = {}


class FaultsResponse(BaseModel):
    study_id: str
    summary: DerivationSummary
    faults: list[DerivationFault]
