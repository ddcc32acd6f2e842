"""
Lab Upload Routes - job creation, processing trigger, polling and streaming.
"""

import logging
import threading
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlmodel import Session, select
from rq import Queue

from backend.core.auth import check_storage_path, get_current_user
from backend.core.config import get_settings
from backend.core.database import get_session
from backend.core.queue import get_queue
from backend.core.storage import get_storage
from backend.models.db import LabUpload
from workers.extraction.errors import (
    AuthorizationError,
    DocumentValidationError,
    JobConflictError,
)
from workers.extraction.job_state import EventStream, JobStatus

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(tags=["Lab Uploads"])


class LabUploadCreate(BaseModel):
    storage_path: str
    filename: Optional[str] = None
    file_size: Optional[int] = None
    skip_verification: bool = False


def _validated_path(storage_path: str, user_id: str) -> str:
    try:
        return check_storage_path(storage_path, user_id)
    except DocumentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AuthorizationError as e:
        raise HTTPException(status_code=403, detail=str(e))


def _get_owned_upload(upload_id: str, user_id: str, session: Session) -> LabUpload:
    upload = session.get(LabUpload, upload_id)
    if not upload:
        raise HTTPException(status_code=404, detail="Lab upload not found")
    if upload.user_id != user_id:
        raise HTTPException(status_code=403, detail="Unauthorized")
    return upload


def _create_upload(body: LabUploadCreate, user_id: str, session: Session) -> LabUpload:
    storage_path = _validated_path(body.storage_path, user_id)
    upload = LabUpload(
        user_id=user_id,
        filename=body.filename or storage_path.rsplit("/", 1)[-1],
        storage_path=storage_path,
        file_size=body.file_size,
        skip_verification=body.skip_verification,
    )
    session.add(upload)
    session.commit()
    session.refresh(upload)
    return upload


def _status_payload(upload: LabUpload) -> dict:
    """Polling contract for a lab upload."""
    return {
        "id": upload.id,
        "filename": upload.filename,
        "status": upload.status,
        "processing_stage": upload.processing_stage,
        "current_page": upload.current_page,
        "total_pages": upload.total_pages,
        "skip_verification": upload.skip_verification,
        "created_at": upload.created_at.isoformat() if upload.created_at else None,
        "started_at": upload.started_at.isoformat() if upload.started_at else None,
        "completed_at": upload.completed_at.isoformat() if upload.completed_at else None,
        "error_message": upload.error_message,
        "extracted_data": upload.extracted_data,
        "extraction_confidence": upload.extraction_confidence,
        "verification_status": upload.verification_status,
        "verification_passed": upload.verification_passed,
        "corrections": upload.corrections or [],
        "warnings": upload.warnings or [],
    }


@router.post("/lab-uploads", status_code=201)
def create_lab_upload(
    body: LabUploadCreate,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Register an uploaded PDF as a pending extraction job."""
    upload = _create_upload(body, user_id, session)
    logger.info(f"Created lab upload {upload.id} for {upload.storage_path}")
    return _status_payload(upload)


@router.post("/lab-uploads/{upload_id}/process", status_code=202)
def process_lab_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_session),
    queue: Queue = Depends(get_queue)
):
    """Queue a lab upload for extraction."""
    upload = _get_owned_upload(upload_id, user_id, session)
    if upload.status == JobStatus.PROCESSING:
        raise HTTPException(status_code=409, detail="Lab upload is already being processed")

    queue.enqueue(
        'workers.extraction.main.process_lab_upload',
        upload_id,
        job_timeout=settings.processing.job_timeout
    )
    return {"id": upload_id, "status": upload.status, "queued": True}


@router.get("/lab-uploads/{upload_id}")
def get_lab_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Poll the status and results of a lab upload."""
    return _status_payload(_get_owned_upload(upload_id, user_id, session))


@router.get("/lab-uploads")
def list_lab_uploads(
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_session)
) -> List[dict]:
    uploads = session.exec(
        select(LabUpload)
        .where(LabUpload.user_id == user_id)
        .order_by(LabUpload.created_at.desc())
    ).all()
    return [_status_payload(u) for u in uploads]


@router.post("/extract")
def extract_lab_results(
    body: LabUploadCreate,
    user_id: str = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """
    Create a job and run the pipeline inline, streaming progress as NDJSON.

    Each line is one event: ``stage`` and ``progress`` while running, then
    exactly one ``complete`` or ``error``.
    """
    from workers.extraction.main import run_pipeline

    upload = _create_upload(body, user_id, session)
    if not get_storage().exists(upload.storage_path):
        raise HTTPException(status_code=404, detail="Document not found in storage")

    stream = EventStream()
    stream.emit({"type": "created", "id": upload.id})

    def run():
        try:
            run_pipeline(upload.id, user_id, events=stream)
        except (JobConflictError, AuthorizationError, DocumentValidationError) as e:
            stream.emit({"type": "error", "error": str(e)})
        except Exception as e:
            logger.error(f"Streaming extraction failed for {upload.id}: {e}", exc_info=True)
            stream.emit({"type": "error", "error": str(e)})

    threading.Thread(target=run, daemon=True).start()
    return StreamingResponse(iter(stream), media_type="application/x-ndjson")
