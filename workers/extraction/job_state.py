"""
Job State Machine.

Every change to a LabUpload goes through JobTracker, which opens its own
session per update so each transition is committed on its own. Progress
and terminal events can also be forwarded to a listener such as an
EventStream feeding the NDJSON endpoint.

    pending -> processing -> complete | partial | failed
    complete | partial | failed -> processing   (re-run via begin_run only)
"""

import json
import queue
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import update
from sqlmodel import Session

from backend.models.db import LabUpload
from workers.extraction.errors import (
    InvalidTransitionError,
    JobConflictError,
    JobNotFoundError,
)

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETE, JobStatus.PARTIAL, JobStatus.FAILED}


class JobStage(str, Enum):
    FETCHING_SOURCE = "fetching_source"
    SPLITTING_PAGES = "splitting_pages"
    EXTRACTING = "extracting"
    VERIFYING = "verifying"
    POST_PROCESSING = "post_processing"


STAGE_ORDER = [
    JobStage.FETCHING_SOURCE,
    JobStage.SPLITTING_PAGES,
    JobStage.EXTRACTING,
    JobStage.VERIFYING,
    JobStage.POST_PROCESSING,
]


def stage_allowed(current: Optional[str], new: str) -> bool:
    """Stages only move forward, except verifying -> extracting between chunks."""
    if current is None:
        return True
    current_index = STAGE_ORDER.index(JobStage(current))
    new_index = STAGE_ORDER.index(JobStage(new))
    if new_index >= current_index:
        return True
    return current == JobStage.VERIFYING and new == JobStage.EXTRACTING


class JobTracker:
    """
    Persists job transitions.

    Args:
        job_id: LabUpload id
        engine: SQLAlchemy engine; defaults to the application engine
        listener: Optional callable receiving event dicts after each commit
    """

    def __init__(self, job_id: str, engine=None, listener: Optional[Callable[[Dict], Any]] = None):
        if engine is None:
            from backend.core.database import engine as default_engine
            engine = default_engine
        self.job_id = job_id
        self.engine = engine
        self.listener = listener

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.listener is not None:
            self.listener(event)

    def load(self) -> LabUpload:
        with Session(self.engine) as session:
            job = session.get(LabUpload, self.job_id)
            if job is None:
                raise JobNotFoundError(f"Lab upload {self.job_id} not found")
            return job

    def _update(self, mutate: Callable[[LabUpload], None]) -> None:
        with Session(self.engine) as session:
            job = session.get(LabUpload, self.job_id)
            if job is None:
                raise JobNotFoundError(f"Lab upload {self.job_id} not found")
            mutate(job)
            session.add(job)
            session.commit()

    @staticmethod
    def _require_processing(job: LabUpload, action: str) -> None:
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(
                f"Cannot {action} job {job.id} in status '{job.status}'"
            )

    def begin_run(self) -> None:
        """Claim the job for a run, resetting any previous result.

        Raises:
            JobConflictError: the job is already processing
        """
        reset = dict(
            status=JobStatus.PROCESSING.value,
            processing_stage=None,
            current_page=None,
            total_pages=None,
            started_at=datetime.utcnow(),
            completed_at=None,
            error_message=None,
            extracted_data=None,
            extraction_confidence=None,
            verification_status=None,
            verification_passed=None,
            corrections=[],
            warnings=[],
            debug_info=None,
        )
        with Session(self.engine) as session:
            job = session.get(LabUpload, self.job_id)
            if job is None:
                raise JobNotFoundError(f"Lab upload {self.job_id} not found")
            if job.status == JobStatus.PROCESSING:
                raise JobConflictError(f"Lab upload {self.job_id} is already being processed")

            # Conditional update so two workers cannot both claim the job
            result = session.connection().execute(
                update(LabUpload)
                .where(LabUpload.id == self.job_id)
                .where(LabUpload.status != JobStatus.PROCESSING.value)
                .values(**reset)
            )
            if result.rowcount == 0:
                session.rollback()
                raise JobConflictError(f"Lab upload {self.job_id} is already being processed")
            session.commit()

        logger.info(f"Job {self.job_id}: processing started")

    def set_stage(self, stage: JobStage) -> None:
        stage = JobStage(stage)

        def mutate(job: LabUpload):
            self._require_processing(job, f"move to stage '{stage.value}'")
            if not stage_allowed(job.processing_stage, stage.value):
                raise InvalidTransitionError(
                    f"Stage cannot go from '{job.processing_stage}' to '{stage.value}'"
                )
            job.processing_stage = stage.value

        self._update(mutate)
        logger.info(f"Job {self.job_id}: stage {stage.value}")
        self._emit({"type": "stage", "stage": stage.value})

    def set_progress(self, current: int, total: int) -> None:
        def mutate(job: LabUpload):
            self._require_processing(job, "report progress for")
            job.current_page = current
            job.total_pages = total

        self._update(mutate)
        self._emit({"type": "progress", "current_page": current, "total_pages": total})

    def complete(
        self,
        status: JobStatus,
        extracted_data: Dict[str, Any],
        extraction_confidence: Optional[float] = None,
        verification_status: Optional[str] = None,
        verification_passed: Optional[bool] = None,
        corrections: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        debug_info: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Write the terminal result of a run."""
        status = JobStatus(status)
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"'{status.value}' is not a terminal status")

        def mutate(job: LabUpload):
            self._require_processing(job, f"mark as {status.value}")
            job.status = status.value
            job.processing_stage = None
            job.completed_at = datetime.utcnow()
            job.extracted_data = extracted_data
            job.extraction_confidence = extraction_confidence
            job.verification_status = verification_status
            job.verification_passed = verification_passed
            job.corrections = list(corrections or [])
            job.warnings = list(warnings or [])
            job.debug_info = debug_info
            job.error_message = error_message

        self._update(mutate)
        logger.info(f"Job {self.job_id}: finished with status {status.value}")

        if status == JobStatus.FAILED:
            self._emit({"type": "error", "error": error_message or "Processing failed"})
        else:
            self._emit({"type": "complete", "data": {
                "status": status.value,
                "extracted_data": extracted_data,
                "extraction_confidence": extraction_confidence,
                "verification_status": verification_status,
                "verification_passed": verification_passed,
                "corrections": list(corrections or []),
                "warnings": list(warnings or []),
                "error_message": error_message,
            }})

    def fail(self, message: str, debug_info: Optional[Dict[str, Any]] = None) -> None:
        def mutate(job: LabUpload):
            self._require_processing(job, "fail")
            job.status = JobStatus.FAILED.value
            job.processing_stage = None
            job.completed_at = datetime.utcnow()
            job.error_message = message
            job.debug_info = debug_info

        self._update(mutate)
        logger.error(f"Job {self.job_id}: failed: {message}")
        self._emit({"type": "error", "error": message})


class EventStream:
    """
    Ordered, single-use stream of job events.

    Accepts stage/progress events until exactly one terminal event
    (``complete`` or ``error``) arrives, then closes. Iterating yields one
    JSON document per line.
    """

    TERMINAL_TYPES = ("complete", "error")

    def __init__(self):
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __call__(self, event: Dict[str, Any]) -> bool:
        return self.emit(event)

    def emit(self, event: Dict[str, Any]) -> bool:
        """Queue an event. Returns False if the stream already closed."""
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping event after close: {event.get('type')}")
                return False
            if event.get("type") in self.TERMINAL_TYPES:
                self._closed = True
            self._queue.put(event)
            return True

    def events(self, timeout: Optional[float] = None) -> Iterator[Dict[str, Any]]:
        if self._consumed:
            raise InvalidTransitionError("Event stream has already been consumed")
        self._consumed = True
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.get("type") in self.TERMINAL_TYPES:
                return

    def __iter__(self) -> Iterator[str]:
        for event in self.events():
            yield json.dumps(event, default=str) + "\n"
