"""
Merge Engine - folds per-chunk results into one biomarker set.

Chunks are always read in page order, so the value kept for a biomarker
that appears on several pages is the one from the lowest page. Later
occurrences can only fill gaps (reference range, flag); a different value
produces a warning and a conflict record instead of an overwrite.
"""

import re
import logging
from typing import Dict, List, Optional

from workers.extraction.models import (
    Biomarker,
    BiomarkerConflict,
    ChunkOutcome,
    MergeResult,
    PATIENT_FIELDS,
)

logger = logging.getLogger(__name__)

CONFLICT_TOLERANCE = 0.01

# Applied in order after stripping non-alphanumerics
NAME_SYNONYMS = [
    ('cholesterol', 'chol'),
    ('hemoglobin', 'hgb'),
    ('haemoglobin', 'hgb'),
    ('triglyceride', 'trig'),
    ('glucose', 'gluc'),
    ('creatinine', 'creat'),
    ('bilirubin', 'bili'),
]

VERIFICATION_PRECEDENCE = {'clean': 0, 'corrected': 1, 'failed': 2}


def normalize_name(name: str) -> str:
    normalized = re.sub(r'[^a-z0-9]', '', (name or '').lower())
    for long_form, short_form in NAME_SYNONYMS:
        normalized = normalized.replace(long_form, short_form)
    return normalized


def normalize_unit(unit: Optional[str]) -> str:
    return re.sub(r'[^a-z0-9/]', '', (unit or '').lower())


def normalize_biomarker_key(name: str, unit: Optional[str]) -> str:
    """Dedup key: ``"{name}:{unit}"`` after normalization."""
    return f"{normalize_name(name)}:{normalize_unit(unit)}"


def _format_value(value) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _values_differ(kept, other, tolerance: float) -> bool:
    if isinstance(kept, float) and isinstance(other, float):
        return abs(kept - other) > tolerance
    if kept is None or other is None:
        return False
    return str(kept).strip().lower() != str(other).strip().lower()


def _in_page_order(outcomes: List[ChunkOutcome]) -> List[ChunkOutcome]:
    # sorted() is stable, so chunks sharing a page keep their input order
    return sorted(outcomes, key=lambda o: o.page_number)


def merge_biomarkers(outcomes: List[ChunkOutcome],
                     tolerance: float = CONFLICT_TOLERANCE) -> MergeResult:
    """
    Deduplicate biomarkers across chunks.

    Args:
        outcomes: Per-chunk results, in any order
        tolerance: Numeric difference above which two values conflict

    Returns:
        MergeResult with one biomarker per normalized key
    """
    entries: Dict[str, dict] = {}
    warnings = []
    total_seen = 0

    for outcome in _in_page_order(outcomes):
        for biomarker in outcome.biomarkers:
            total_seen += 1
            key = normalize_biomarker_key(biomarker.name, biomarker.unit)
            entry = entries.get(key)

            if entry is None:
                entries[key] = {
                    'biomarker': biomarker.copy(),
                    'pages': [outcome.page_number],
                    'values': [biomarker.value],
                    'conflicted': False,
                }
                continue

            kept: Biomarker = entry['biomarker']
            entry['pages'].append(outcome.page_number)
            entry['values'].append(biomarker.value)

            if _values_differ(kept.value, biomarker.value, tolerance):
                entry['conflicted'] = True
                pages = ', '.join(str(p) for p in entry['pages'])
                warnings.append(
                    f'Biomarker "{biomarker.name}" has different values on pages {pages}: '
                    f'{_format_value(kept.value)} vs {_format_value(biomarker.value)}'
                )

            if kept.reference_min is None and biomarker.reference_min is not None:
                kept.reference_min = biomarker.reference_min
            if kept.reference_max is None and biomarker.reference_max is not None:
                kept.reference_max = biomarker.reference_max
            if kept.flag is None and biomarker.flag is not None:
                kept.flag = biomarker.flag

    conflicts = [
        BiomarkerConflict(
            biomarker_name=entry['biomarker'].name,
            source_pages=list(entry['pages']),
            values=list(entry['values']),
            kept_value=entry['biomarker'].value,
        )
        for entry in entries.values()
        if entry['conflicted']
    ]

    merged = [entry['biomarker'] for entry in entries.values()]
    duplicates_removed = total_seen - len(merged)
    if duplicates_removed or conflicts:
        logger.info(
            f"Merged {total_seen} biomarkers into {len(merged)} "
            f"({duplicates_removed} duplicates, {len(conflicts)} conflicts)"
        )

    return MergeResult(
        biomarkers=merged,
        duplicates_removed=duplicates_removed,
        source_pages={key: entry['pages'] for key, entry in entries.items()},
        warnings=warnings,
        conflicts=conflicts,
    )


def merge_corrections(outcomes: List[ChunkOutcome]) -> List[str]:
    corrections = []
    for outcome in outcomes:
        corrections.extend(f"[Page {outcome.page_number}] {c}" for c in outcome.corrections)
    return corrections


def calculate_overall_verification_status(outcomes: List[ChunkOutcome]) -> str:
    """Worst status wins: failed > corrected > clean."""
    status = 'clean'
    for outcome in outcomes:
        if VERIFICATION_PRECEDENCE[outcome.verification_status] > VERIFICATION_PRECEDENCE[status]:
            status = outcome.verification_status
    return status


def merge_patient_fields(outcomes: List[ChunkOutcome]) -> Dict[str, Optional[str]]:
    """First non-empty value per metadata field, in page order."""
    merged = {name: None for name in PATIENT_FIELDS}
    for outcome in _in_page_order(outcomes):
        for name in PATIENT_FIELDS:
            value = outcome.patient_fields.get(name)
            if merged[name] is None and value:
                merged[name] = value
    return merged
