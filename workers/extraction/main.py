"""
Worker for processing uploaded lab reports.

Pipeline:
1. Authorize the storage path against the job owner
2. Fetch the PDF and split it when it exceeds the page threshold
3. Extract then verify every chunk (PageOrchestrator)
4. Merge chunk results into one biomarker set
5. Match biomarkers to the standards table
6. Write the terminal job status
"""

import time
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from backend.core.auth import check_storage_path
from backend.core.config import get_settings
from backend.core.storage import get_storage
from workers.extraction.errors import (
    AuthorizationError,
    DocumentValidationError,
    JobConflictError,
    JobNotFoundError,
)
from workers.extraction.gemini import GeminiExtractionAdapter
from workers.extraction.job_state import JobStage, JobStatus, JobTracker
from workers.extraction.merger import (
    calculate_overall_verification_status,
    merge_biomarkers,
    merge_corrections,
    merge_patient_fields,
)
from workers.extraction.orchestrator import PageOrchestrator, all_failed, failed_pages
from workers.extraction.page_splitter import get_page_count, plan_chunks
from workers.extraction.standardizer import load_matcher, resolve_gender
from workers.extraction.verification import VerificationAdapter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

CONFIDENCE_VERIFIED = 0.95
CONFIDENCE_UNVERIFIED = 0.7
CONFIDENCE_SKIPPED = 0.8


def _ms_since(start: float) -> float:
    return round((time.time() - start) * 1000, 1)


def _confidence(skip_verification: bool, verification_status: str) -> float:
    if skip_verification:
        return CONFIDENCE_SKIPPED
    if verification_status == 'failed':
        return CONFIDENCE_UNVERIFIED
    return CONFIDENCE_VERIFIED


def _chunk_debug(outcomes, preview_chars: int) -> List[Dict[str, Any]]:
    return [
        {
            'page_number': o.page_number,
            'extraction_failed': o.extraction_failed,
            'error': o.error,
            'biomarker_count': len(o.biomarkers),
            'verification_status': o.verification_status,
            'confidence': o.confidence,
            'extraction_ms': round(o.extraction_ms, 1),
            'verification_ms': round(o.verification_ms, 1),
            'raw_response_preview': (o.raw_response_preview or '')[:preview_chars] or None,
        }
        for o in outcomes
    ]


def run_pipeline(
    job_id: str,
    user_id: str,
    *,
    storage=None,
    extractor=None,
    verifier=None,
    matcher=None,
    engine=None,
    events=None,
    profile_gender: Optional[str] = None,
):
    """
    Run the full extraction pipeline for one job.

    Args:
        job_id: LabUpload id
        user_id: Authenticated caller; must own the job and its storage path
        storage: Document storage (defaults to configured local storage)
        extractor: Extraction capability (defaults to Gemini)
        verifier: Verification capability (defaults to OpenAI)
        matcher: StandardsMatcher (defaults to the database standards table)
        engine: Database engine (defaults to the application engine)
        events: Optional listener, e.g. an EventStream, for progress events
        profile_gender: Gender from the user's profile, preferred for reference ranges

    Returns:
        The LabUpload record after the run

    Raises:
        AuthorizationError, DocumentValidationError: rejected before processing
        JobConflictError: the job is already processing
    """
    tracker = JobTracker(job_id, engine=engine, listener=events)
    job = tracker.load()
    if job.user_id != user_id:
        raise AuthorizationError("Unauthorized: lab upload belongs to another user")
    check_storage_path(job.storage_path, user_id)

    tracker.begin_run()
    logger.info(f"Starting processing for lab upload {job_id}")

    timings: Dict[str, float] = {}
    debug: Dict[str, Any] = {'stage_timings_ms': timings}
    total_start = time.time()

    try:
        extractor = extractor or GeminiExtractionAdapter()
        verifier = verifier or VerificationAdapter()
        storage = storage or get_storage()

        start = time.time()
        tracker.set_stage(JobStage.FETCHING_SOURCE)
        pdf_bytes = storage.read(job.storage_path)
        page_count = get_page_count(pdf_bytes)
        timings['fetching_source'] = _ms_since(start)
        debug['page_count'] = page_count
        debug['file_size'] = len(pdf_bytes)

        if page_count == 0:
            tracker.fail("Document has no pages", debug_info=debug)
            return tracker.load()

        threshold = settings.processing.page_split_threshold
        start = time.time()
        if page_count > threshold:
            tracker.set_stage(JobStage.SPLITTING_PAGES)
        chunks = plan_chunks(pdf_bytes, threshold)
        timings['splitting_pages'] = _ms_since(start)
        debug['chunk_count'] = len(chunks)

        start = time.time()
        orchestrator = PageOrchestrator(
            extractor,
            verifier,
            reporter=tracker,
            max_workers=settings.processing.max_workers,
            skip_verification=job.skip_verification,
        )
        outcomes = orchestrator.run(chunks)
        timings['extraction_and_verification'] = _ms_since(start)
        debug['pages'] = _chunk_debug(outcomes, settings.processing.debug_preview_chars)

        if all_failed(outcomes):
            errors = '; '.join(f"page {o.page_number}: {o.error}" for o in outcomes)
            timings['total'] = _ms_since(total_start)
            tracker.complete(
                JobStatus.FAILED,
                extracted_data=None,
                debug_info=debug,
                error_message=f"Extraction failed for all pages ({errors})",
            )
            return tracker.load()

        merge = merge_biomarkers(outcomes, settings.processing.conflict_tolerance)
        corrections = merge_corrections(outcomes)
        verification_status = calculate_overall_verification_status(outcomes)
        patient = merge_patient_fields(outcomes)
        debug['merge'] = {
            'duplicates_removed': merge.duplicates_removed,
            'source_pages': merge.source_pages,
            'conflicts': [asdict(c) for c in merge.conflicts],
        }

        start = time.time()
        tracker.set_stage(JobStage.POST_PROCESSING)
        report = None
        try:
            matcher = matcher or load_matcher(engine)
            gender = resolve_gender(
                profile_gender,
                patient.get('client_gender'),
                settings.standardization.default_gender,
            )
            report = matcher.process_all(merge.biomarkers, gender)
        except Exception as e:
            logger.error(f"Standards matching failed for {job_id}: {e}", exc_info=True)
            corrections.append(f"Post-processing failed: {e} - biomarkers not standardized")
        timings['post_processing'] = _ms_since(start)

        if report is not None:
            debug['match_details'] = report.match_details
            if report.unmatched_count:
                corrections.append(
                    f"{report.unmatched_count} biomarker(s) could not be matched "
                    f"to standards - review required"
                )

        extracted_data = {
            **patient,
            'biomarkers': [b.to_dict() for b in merge.biomarkers],
            'processed_biomarkers': [p.to_dict() for p in report.processed] if report else None,
        }

        failed = failed_pages(outcomes)
        error_message = None
        if failed:
            status = JobStatus.FAILED
            error_message = (
                f"Extraction failed for page(s) {', '.join(str(p) for p in failed)}; "
                f"results from the remaining pages are incomplete"
            )
        elif not merge.biomarkers:
            status = JobStatus.FAILED
            error_message = "No biomarkers found in document"
        elif report is None:
            status = JobStatus.PARTIAL
            error_message = "Biomarkers extracted but could not be standardized"
        elif report.matched_count == 0:
            status = JobStatus.PARTIAL
            error_message = "No biomarkers could be matched to standards"
        else:
            status = JobStatus.COMPLETE

        timings['total'] = _ms_since(total_start)
        tracker.complete(
            status,
            extracted_data=extracted_data,
            extraction_confidence=_confidence(job.skip_verification, verification_status),
            verification_status=verification_status,
            verification_passed=None if job.skip_verification else verification_status != 'failed',
            corrections=corrections,
            warnings=merge.warnings,
            debug_info=debug,
            error_message=error_message,
        )
        logger.info(
            f"Lab upload {job_id}: {status.value}, {len(merge.biomarkers)} biomarkers, "
            f"verification {verification_status}"
        )

    except Exception as e:
        logger.error(f"Error processing lab upload {job_id}: {e}", exc_info=True)
        timings['total'] = _ms_since(total_start)
        debug['error_type'] = type(e).__name__
        tracker.fail(str(e), debug_info=debug)

    return tracker.load()


def process_lab_upload(upload_id: str) -> Optional[str]:
    """
    RQ entry point: process a queued lab upload.

    Returns the terminal status, or None when the job was missing or
    already being processed.
    """
    tracker = JobTracker(upload_id)
    try:
        job = tracker.load()
    except JobNotFoundError:
        logger.error(f"Lab upload {upload_id} not found")
        return None

    try:
        result = run_pipeline(upload_id, job.user_id)
    except JobConflictError as e:
        logger.warning(str(e))
        return None
    except (AuthorizationError, DocumentValidationError) as e:
        logger.error(f"Lab upload {upload_id} rejected: {e}")
        return None

    return result.status
