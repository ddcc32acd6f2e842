"""
Biomarker Standards Matching.

Maps each merged biomarker onto the canonical standards table:
1. Explicit standard code supplied by the extraction
2. Exact match on the normalized name or any alias
3. Fuzzy matching using RapidFuzz

Matched numeric values are converted to the standard unit, rounded to the
standard's precision and flagged against the gender-specific reference
range. Anything that cannot be matched is kept as extracted, with a
validation issue explaining why.
"""

import re
import yaml
import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Any
from dataclasses import dataclass, field
from rapidfuzz import fuzz, process
from sqlmodel import Session, select

from backend.core.config import get_settings, project_root
from backend.models.db import BiomarkerStandardRecord
from workers.extraction.errors import StandardsError
from workers.extraction.merger import normalize_name
from workers.extraction.models import (
    Biomarker,
    BiomarkerStandard,
    MatchReport,
    ProcessedBiomarker,
)

logger = logging.getLogger(__name__)
settings = get_settings()


def load_standards(path: Path) -> List[BiomarkerStandard]:
    """Load the standards table from YAML."""
    path = Path(path)
    if not path.exists():
        raise StandardsError(f"Standards file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise StandardsError(f"Invalid standards file {path}: {e}") from e

    standards = []
    for code, entry in (data.get('standards') or {}).items():
        standards.append(BiomarkerStandard(
            code=code,
            name=entry.get('name', code),
            standard_unit=entry.get('standard_unit', ''),
            aliases=list(entry.get('aliases') or []),
            category=entry.get('category'),
            unit_conversions=dict(entry.get('unit_conversions') or {}),
            reference_ranges=dict(entry.get('reference_ranges') or {}),
            decimal_places=int(entry.get('decimal_places', 1)),
        ))

    logger.info(f"Loaded {len(standards)} biomarker standards from {path}")
    return standards


def standards_from_records(records) -> List[BiomarkerStandard]:
    """Convert BiomarkerStandardRecord rows into standards."""
    return [
        BiomarkerStandard(
            code=r.code,
            name=r.name,
            standard_unit=r.standard_unit,
            aliases=list(r.aliases or []),
            category=r.category,
            unit_conversions=dict(r.unit_conversions or {}),
            reference_ranges=dict(r.reference_ranges or {}),
            decimal_places=r.decimal_places,
        )
        for r in records
    ]


def resolve_gender(profile_gender: Optional[str], extracted_gender: Optional[str],
                   default: str = 'male') -> str:
    """Pick the reference-range gender: profile female, then extracted female, then default."""
    if (profile_gender or '').strip().lower() == 'female':
        return 'female'
    if (extracted_gender or '').strip().lower() == 'female':
        return 'female'
    return default


def _unit_key(unit: Optional[str]) -> str:
    return re.sub(r'\s+', '', unit or '').lower()


@dataclass
class StandardMatch:
    """Outcome of looking a biomarker name up in the standards table."""
    standard: Optional[BiomarkerStandard]
    match_type: str  # code, exact, fuzzy, unknown, ambiguous
    score: float = 0.0
    candidates: List[str] = field(default_factory=list)


class StandardsMatcher:
    """
    Matches biomarkers against a standards table.

    Args:
        standards: The canonical standards
        fuzzy_threshold: Minimum score (0-1) for fuzzy matching
        use_fuzzy: Disable to only accept code and exact alias matches
    """

    def __init__(
        self,
        standards: List[BiomarkerStandard],
        fuzzy_threshold: float = 0.85,
        use_fuzzy: bool = True
    ):
        self.fuzzy_threshold = fuzzy_threshold
        self.use_fuzzy = use_fuzzy
        self.standards: Dict[str, BiomarkerStandard] = {}
        self.alias_to_codes: Dict[str, Set[str]] = {}

        for standard in standards:
            self.standards[standard.code.lower()] = standard
            for alias in [standard.code, standard.name, *standard.aliases]:
                key = normalize_name(alias)
                if key:
                    self.alias_to_codes.setdefault(key, set()).add(standard.code.lower())

        shared = [k for k, codes in self.alias_to_codes.items() if len(codes) > 1]
        if shared:
            logger.warning(f"Aliases shared by several standards: {', '.join(sorted(shared))}")

    def match(self, biomarker: Biomarker) -> StandardMatch:
        if biomarker.standard_code:
            standard = self.standards.get(biomarker.standard_code.strip().lower())
            if standard:
                return StandardMatch(standard, 'code', 1.0)

        key = normalize_name(biomarker.name)
        if not key:
            return StandardMatch(None, 'unknown')

        codes = self.alias_to_codes.get(key)
        if codes:
            return self._resolve(codes, 'exact', 1.0)

        if self.use_fuzzy and self.alias_to_codes:
            return self._fuzzy_match(key)

        return StandardMatch(None, 'unknown')

    def _fuzzy_match(self, key: str) -> StandardMatch:
        matches = process.extract(
            key,
            list(self.alias_to_codes.keys()),
            scorer=fuzz.ratio,
            score_cutoff=self.fuzzy_threshold * 100,
            limit=5
        )
        if not matches:
            return StandardMatch(None, 'unknown')

        best_score = matches[0][1]
        codes = set()
        for alias, score, _ in matches:
            if score == best_score:
                codes |= self.alias_to_codes[alias]
        return self._resolve(codes, 'fuzzy', best_score / 100.0)

    def _resolve(self, codes: Set[str], match_type: str, score: float) -> StandardMatch:
        if len(codes) > 1:
            return StandardMatch(None, 'ambiguous', score, sorted(codes))
        return StandardMatch(self.standards[next(iter(codes))], match_type, score)

    def process(self, biomarker: Biomarker, gender: str = 'male') -> ProcessedBiomarker:
        found = self.match(biomarker)
        issues = []

        if isinstance(biomarker.value, float) and biomarker.value < 0:
            issues.append(f"Implausible negative value {biomarker.value:g}")
        if biomarker.value is None:
            issues.append("No value reported")

        if found.standard is None:
            if found.match_type == 'ambiguous':
                issues.append(
                    f"Ambiguous match for '{biomarker.name}': {', '.join(found.candidates)}"
                )
            else:
                issues.append(f"No standard found for '{biomarker.name}'")
            return ProcessedBiomarker(
                original_name=biomarker.name,
                original_value=biomarker.value,
                original_unit=biomarker.unit,
                standard_code=None,
                standard_name=None,
                standard_value=None,
                standard_unit=None,
                reference_min=biomarker.reference_min,
                reference_max=biomarker.reference_max,
                flag=biomarker.flag,
                matched=False,
                is_qualitative=isinstance(biomarker.value, str),
                match_type=found.match_type,
                validation_issues=tuple(issues),
            )

        standard = found.standard
        if not biomarker.is_numeric:
            return ProcessedBiomarker(
                original_name=biomarker.name,
                original_value=biomarker.value,
                original_unit=biomarker.unit,
                standard_code=standard.code,
                standard_name=standard.name,
                standard_value=None,
                standard_unit=standard.standard_unit,
                reference_min=None,
                reference_max=None,
                flag=None,
                matched=True,
                is_qualitative=biomarker.value is not None,
                match_type=found.match_type,
                validation_issues=tuple(issues),
            )

        standard_value, conversion = self._convert(biomarker, standard, issues)
        reference = standard.reference_range(gender)
        low, high = reference.get('low'), reference.get('high')
        if low is None and high is None and conversion == 'not_needed':
            low, high = biomarker.reference_min, biomarker.reference_max

        return ProcessedBiomarker(
            original_name=biomarker.name,
            original_value=biomarker.value,
            original_unit=biomarker.unit,
            standard_code=standard.code,
            standard_name=standard.name,
            standard_value=standard_value,
            standard_unit=standard.standard_unit,
            reference_min=low,
            reference_max=high,
            flag=self._flag(standard_value, low, high),
            matched=True,
            is_qualitative=False,
            conversion=conversion,
            match_type=found.match_type,
            validation_issues=tuple(issues),
        )

    def _convert(self, biomarker: Biomarker, standard: BiomarkerStandard, issues: List[str]):
        unit = _unit_key(biomarker.unit)
        target = _unit_key(standard.standard_unit)

        if not unit:
            issues.append(f"Unit not reported; assumed {standard.standard_unit}")
            return round(biomarker.value, standard.decimal_places), 'not_needed'
        if unit == target:
            return round(biomarker.value, standard.decimal_places), 'not_needed'

        factor = standard.unit_conversions.get(biomarker.unit)
        if factor is None:
            for source_unit, candidate in standard.unit_conversions.items():
                if _unit_key(source_unit) == unit:
                    factor = candidate
                    break

        if factor is None:
            issues.append(
                f"No conversion from '{biomarker.unit}' to '{standard.standard_unit}'"
            )
            return None, 'missing'

        return round(biomarker.value * float(factor), standard.decimal_places), 'applied'

    @staticmethod
    def _flag(value: Optional[float], low: Optional[float], high: Optional[float]) -> Optional[str]:
        if value is None or (low is None and high is None):
            return None
        if high is not None and value > high:
            return 'high'
        if low is not None and value < low:
            return 'low'
        return 'normal'

    def process_all(self, biomarkers: List[Biomarker], gender: str = 'male') -> MatchReport:
        """
        Match every biomarker.

        Returns:
            MatchReport with processed biomarkers, counts and per-biomarker match details
        """
        processed = []
        details: List[Dict[str, Any]] = []
        for biomarker in biomarkers:
            result = self.process(biomarker, gender)
            processed.append(result)
            details.append({
                'original_name': result.original_name,
                'standard_code': result.standard_code,
                'match_type': result.match_type,
                'conversion': result.conversion,
                'validation_issues': list(result.validation_issues),
            })

        matched = sum(1 for p in processed if p.matched)
        logger.info(f"Matched {matched}/{len(processed)} biomarkers to standards (gender={gender})")
        return MatchReport(
            processed=processed,
            matched_count=matched,
            unmatched_count=len(processed) - matched,
            match_details=details,
        )


# Global matcher instance (lazy initialization)
_matcher: Optional[StandardsMatcher] = None


def get_matcher() -> StandardsMatcher:
    """Get or create the matcher over the YAML standards table."""
    global _matcher
    if _matcher is None:
        path = Path(settings.standardization.standards_path)
        if not path.is_absolute():
            path = project_root / path
        _matcher = build_matcher(load_standards(path))
    return _matcher


def build_matcher(standards: List[BiomarkerStandard]) -> StandardsMatcher:
    return StandardsMatcher(
        standards,
        fuzzy_threshold=settings.standardization.fuzzy_threshold,
        use_fuzzy=settings.standardization.use_fuzzy
    )


def load_matcher(engine=None) -> StandardsMatcher:
    """
    Matcher over the standards table in the database.

    This is the table served by the standards API, so matching and listing
    stay in step. Falls back to the YAML seed while the table is empty.
    """
    if engine is None:
        from backend.core.database import engine as default_engine
        engine = default_engine

    with Session(engine) as session:
        records = session.exec(select(BiomarkerStandardRecord)).all()

    if not records:
        logger.warning("Standards table is empty; matching against the YAML seed")
        return get_matcher()
    return build_matcher(standards_from_records(records))
