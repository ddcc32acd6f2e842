"""
Lab Report Extraction Pipeline - Main FastAPI Application.

Routes are organized in modular files under backend/api/:
- lab_uploads.py: job creation, processing, polling, streaming
- standards.py: biomarker standards listing
"""

import logging
from pathlib import Path
from dataclasses import asdict
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from backend.core.config import get_settings, project_root
from backend.core.database import create_db_and_tables, engine
from backend.models.db import BiomarkerStandardRecord
from workers.extraction.errors import (
    AuthorizationError,
    DocumentValidationError,
    JobConflictError,
    JobNotFoundError,
    StandardsError,
)
from workers.extraction.standardizer import load_standards

# Import routers
from backend.api.lab_uploads import router as lab_uploads_router
from backend.api.standards import router as standards_router

logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(
    title="Lab Report Extraction Pipeline",
    description="PDF lab report extraction, verification and biomarker standardization",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Initialize database and seed biomarker standards."""
    create_db_and_tables()
    seed_standards(engine)


def seed_standards(target_engine, standards_path: Path = None) -> int:
    """Insert standards from YAML that are not in the database yet."""
    path = standards_path or Path(settings.standardization.standards_path)
    if not path.is_absolute():
        path = project_root / path

    try:
        standards = load_standards(path)
    except StandardsError as e:
        logger.warning(f"Failed to load biomarker standards: {e}")
        return 0

    added = 0
    with Session(target_engine) as session:
        for standard in standards:
            existing = session.exec(
                select(BiomarkerStandardRecord)
                .where(BiomarkerStandardRecord.code == standard.code)
            ).first()
            if not existing:
                session.add(BiomarkerStandardRecord(**asdict(standard)))
                added += 1
        session.commit()

    logger.info(f"Seeded {added} biomarker standards")
    return added


# =============================================================================
# Error Handlers
# =============================================================================

ERROR_STATUS = {
    DocumentValidationError: 400,
    AuthorizationError: 403,
    JobNotFoundError: 404,
    JobConflictError: 409,
}


def _pipeline_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=ERROR_STATUS[type(exc)], content={"detail": str(exc)})


for error_type in ERROR_STATUS:
    app.add_exception_handler(error_type, _pipeline_error_handler)


# =============================================================================
# Include Routers
# =============================================================================

# All routes are prefixed with /api/v1
app.include_router(lab_uploads_router, prefix="/api/v1")
app.include_router(standards_router, prefix="/api/v1")


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}
