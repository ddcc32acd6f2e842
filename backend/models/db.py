from datetime import datetime
from typing import Optional, Dict, Any, List
from uuid import uuid4
from sqlmodel import Field, SQLModel, Column, JSON


def _new_id() -> str:
    return str(uuid4())


class LabUpload(SQLModel, table=True):
    """
    One uploaded lab report and the state of its extraction job.

    Written only by the pipeline (see workers.extraction.job_state); the API
    creates the pending record and reads it back for polling.
    """
    __tablename__ = "lab_upload"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    filename: str
    storage_path: str
    file_size: Optional[int] = Field(default=None)
    skip_verification: bool = Field(default=False)

    status: str = Field(default="pending", index=True)  # pending, processing, complete, partial, failed
    processing_stage: Optional[str] = Field(default=None)
    current_page: Optional[int] = Field(default=None)
    total_pages: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    # Results
    extracted_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    extraction_confidence: Optional[float] = Field(default=None)
    verification_status: Optional[str] = Field(default=None)  # clean, corrected, failed
    verification_passed: Optional[bool] = Field(default=None)
    corrections: List[str] = Field(default=[], sa_column=Column(JSON))
    warnings: List[str] = Field(default=[], sa_column=Column(JSON))
    debug_info: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


class BiomarkerStandardRecord(SQLModel, table=True):
    """
    Canonical biomarker definition.

    Seeded from config/biomarker_standards.yaml at startup and used for
    matching extracted names and converting units.
    """
    __tablename__ = "biomarker_standard"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True)  # e.g., "glucose"
    name: str = Field(index=True)  # e.g., "Glucose"
    category: Optional[str] = Field(default=None, index=True)
    standard_unit: str
    decimal_places: int = Field(default=1)
    aliases: List[str] = Field(default=[], sa_column=Column(JSON))
    unit_conversions: Dict[str, float] = Field(default={}, sa_column=Column(JSON))
    reference_ranges: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
