"""
Page Orchestrator - runs extraction then verification for every chunk.

Each chunk goes through the two passes in order. Chunks themselves can run
concurrently on a bounded thread pool; outcomes always come back sorted by
page number so downstream merging is deterministic.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List

from workers.extraction.capabilities import CapabilityContext
from workers.extraction.errors import ExtractionError
from workers.extraction.job_state import JobStage
from workers.extraction.models import ChunkOutcome, PageChunk

logger = logging.getLogger(__name__)

SKIPPED_CORRECTION = "Verification skipped by user"


def all_failed(outcomes: List[ChunkOutcome]) -> bool:
    """True when there was at least one chunk and every one failed extraction."""
    return bool(outcomes) and all(o.extraction_failed for o in outcomes)


def failed_pages(outcomes: List[ChunkOutcome]) -> List[int]:
    return [o.page_number for o in outcomes if o.extraction_failed]


class NullReporter:
    """Reporter that drops progress updates."""

    def set_stage(self, stage):
        pass

    def set_progress(self, current, total):
        pass


class PageOrchestrator:
    """
    Drives the two capabilities over a list of chunks.

    Usage:
        orchestrator = PageOrchestrator(extractor, verifier, tracker, max_workers=2)
        outcomes = orchestrator.run(chunks)

    The reporter receives ``set_stage`` and ``set_progress`` calls; a
    JobTracker or an EventStream-backed reporter both fit.
    """

    def __init__(self, extractor, verifier, reporter=None, max_workers: int = 1,
                 skip_verification: bool = False):
        self.extractor = extractor
        self.verifier = verifier
        self.reporter = reporter or NullReporter()
        self.max_workers = max(1, max_workers)
        self.skip_verification = skip_verification
        self._lock = threading.Lock()
        self._started = 0

    def run(self, chunks: List[PageChunk]) -> List[ChunkOutcome]:
        total = len(chunks)
        self._started = 0
        if total == 0:
            return []

        if self.max_workers == 1 or total == 1:
            outcomes = [self._process_chunk(chunk, total) for chunk in chunks]
        else:
            workers = min(self.max_workers, total)
            logger.info(f"Processing {total} chunks with {workers} workers")
            with ThreadPoolExecutor(max_workers=workers) as executor:
                outcomes = list(executor.map(lambda c: self._process_chunk(c, total), chunks))

        outcomes.sort(key=lambda o: o.page_number)
        failed = failed_pages(outcomes)
        logger.info(f"Orchestration done: {total - len(failed)}/{total} chunks extracted")
        return outcomes

    def _report(self, stage, current=None, total=None):
        with self._lock:
            self.reporter.set_stage(stage)
            # A single chunk is the whole document; no progress to report
            if current is not None and total > 1:
                self.reporter.set_progress(current, total)

    def _process_chunk(self, chunk: PageChunk, total: int) -> ChunkOutcome:
        page = chunk.page_number
        outcome = ChunkOutcome(page_number=page)

        with self._lock:
            self._started += 1
            current = self._started
        self._report(JobStage.EXTRACTING, current, total)

        try:
            extraction = self.extractor.invoke(chunk.data, CapabilityContext(page, total))
        except ExtractionError as e:
            logger.error(f"Page {page}: extraction failed: {e}")
            outcome.extraction_failed = True
            outcome.error = str(e)
            return outcome

        outcome.extraction_ms = extraction.duration_ms
        outcome.confidence = extraction.confidence_score
        outcome.raw_response_preview = extraction.raw_response_preview
        document = extraction.document

        if self.skip_verification:
            outcome.corrections = [SKIPPED_CORRECTION]
            outcome.verification_status = 'clean'
        else:
            self._report(JobStage.VERIFYING)
            verification = self.verifier.invoke(
                chunk.data, CapabilityContext(page, total, document=document)
            )
            document = verification.document
            outcome.verification_ms = verification.duration_ms
            outcome.verification_passed = verification.verification_passed
            outcome.corrections = list(verification.corrections)
            if not verification.verification_passed:
                outcome.verification_status = 'failed'
            elif outcome.corrections:
                outcome.verification_status = 'corrected'
            else:
                outcome.verification_status = 'clean'

        outcome.biomarkers = list(document.biomarkers)
        outcome.patient_fields = document.patient_fields()
        logger.info(
            f"Page {page}: {len(outcome.biomarkers)} biomarkers, "
            f"verification {outcome.verification_status}"
        )
        return outcome
