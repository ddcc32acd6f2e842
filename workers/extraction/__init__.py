"""
Lab Report Extraction Workers Package.

Pipeline modules:
- page_splitter: PDF page counting and chunking
- gemini: extraction adapter (pass 1)
- verification: verification adapter (pass 2)
- orchestrator: per-chunk extract/verify driver
- merger: cross-page deduplication and conflict detection
- standardizer: standards matching, unit conversion and flagging
- job_state: job status machine and progress events
- main: RQ entry point and pipeline runner
"""

from workers.extraction.errors import (
    LabPipelineError,
    ConfigurationError,
    AuthorizationError,
    DocumentValidationError,
    ExtractionError,
    ExtractionTimeoutError,
    JobConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    StandardsError,
)
from workers.extraction.models import (
    Biomarker,
    ExtractedDocument,
    PageChunk,
    ChunkOutcome,
    MergeResult,
    ProcessedBiomarker,
    BiomarkerStandard,
)
from workers.extraction.merger import (
    merge_biomarkers,
    merge_corrections,
    calculate_overall_verification_status,
)

__all__ = [
    # Errors
    'LabPipelineError',
    'ConfigurationError',
    'AuthorizationError',
    'DocumentValidationError',
    'ExtractionError',
    'ExtractionTimeoutError',
    'JobConflictError',
    'InvalidTransitionError',
    'JobNotFoundError',
    'StandardsError',

    # Data types
    'Biomarker',
    'ExtractedDocument',
    'PageChunk',
    'ChunkOutcome',
    'MergeResult',
    'ProcessedBiomarker',
    'BiomarkerStandard',

    # Merging
    'merge_biomarkers',
    'merge_corrections',
    'calculate_overall_verification_status',
]
