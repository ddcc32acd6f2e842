"""
Pipeline data types.

Everything that flows between the page splitter, the AI capabilities, the
merge engine and the standards matcher is a plain dataclass so it can be
serialized onto the job record with ``asdict``.
"""

from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, List, Optional, Union

PATIENT_FIELDS = (
    'client_name',
    'client_gender',
    'client_birthday',
    'lab_name',
    'ordering_doctor',
    'test_date',
)

VALID_FLAGS = ('high', 'low', 'normal')


def parse_value(raw: Any) -> Union[float, str, None]:
    """Numeric results become floats, qualitative ones stay strings."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    if not text:
        return None
    try:
        return float(text.replace(',', ''))
    except ValueError:
        return text


def _optional_float(raw: Any) -> Optional[float]:
    value = parse_value(raw)
    return value if isinstance(value, float) else None


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass
class PageChunk:
    """A unit of document sent to the capabilities (one page or the whole file)."""
    page_number: int
    data: bytes
    byte_size: int


@dataclass
class Biomarker:
    name: str
    value: Union[float, str, None]
    unit: str = ''
    secondary_value: Optional[float] = None
    secondary_unit: Optional[str] = None
    reference_min: Optional[float] = None
    reference_max: Optional[float] = None
    flag: Optional[str] = None
    standard_code: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, float)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['Biomarker']:
        name = _optional_str(data.get('name') or data.get('test_name'))
        if not name:
            return None
        flag = _optional_str(data.get('flag'))
        if flag:
            flag = flag.lower()
            if flag not in VALID_FLAGS:
                flag = None
        return cls(
            name=name,
            value=parse_value(data.get('value')),
            unit=_optional_str(data.get('unit')) or '',
            secondary_value=_optional_float(data.get('secondary_value')),
            secondary_unit=_optional_str(data.get('secondary_unit')),
            reference_min=_optional_float(data.get('reference_min')),
            reference_max=_optional_float(data.get('reference_max')),
            flag=flag,
            standard_code=_optional_str(data.get('standard_code')),
        )

    def copy(self) -> 'Biomarker':
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractedDocument:
    """Patient/lab metadata plus the biomarkers read from a document or chunk."""
    client_name: Optional[str] = None
    client_gender: Optional[str] = None
    client_birthday: Optional[str] = None
    lab_name: Optional[str] = None
    ordering_doctor: Optional[str] = None
    test_date: Optional[str] = None
    biomarkers: List[Biomarker] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtractedDocument':
        raw = data.get('biomarkers')
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise ValueError(f"'biomarkers' must be a list, got {type(raw).__name__}")

        biomarkers = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            biomarker = Biomarker.from_dict(item)
            if biomarker is not None:
                biomarkers.append(biomarker)
        fields = {name: _optional_str(data.get(name)) for name in PATIENT_FIELDS}
        return cls(biomarkers=biomarkers, **fields)

    def patient_fields(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PATIENT_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChunkOutcome:
    """Per-chunk result of extraction followed by verification."""
    page_number: int
    biomarkers: List[Biomarker] = field(default_factory=list)
    verification_status: str = 'clean'  # clean, corrected, failed
    corrections: List[str] = field(default_factory=list)
    extraction_failed: bool = False
    error: Optional[str] = None
    extraction_ms: float = 0.0
    verification_ms: float = 0.0
    patient_fields: Dict[str, Optional[str]] = field(default_factory=dict)
    confidence: Optional[float] = None
    verification_passed: Optional[bool] = None
    raw_response_preview: Optional[str] = None


@dataclass
class BiomarkerConflict:
    biomarker_name: str
    source_pages: List[int]
    values: List[Any]
    kept_value: Any


@dataclass
class MergeResult:
    biomarkers: List[Biomarker]
    duplicates_removed: int
    source_pages: Dict[str, List[int]]
    warnings: List[str]
    conflicts: List[BiomarkerConflict]


@dataclass(frozen=True)
class ProcessedBiomarker:
    """A biomarker after standards matching. Never mutated once built."""
    original_name: str
    original_value: Union[float, str, None]
    original_unit: str
    standard_code: Optional[str]
    standard_name: Optional[str]
    standard_value: Optional[float]
    standard_unit: Optional[str]
    reference_min: Optional[float]
    reference_max: Optional[float]
    flag: Optional[str]
    matched: bool
    is_qualitative: bool = False
    conversion: Optional[str] = None  # applied, missing, not_needed
    match_type: str = 'unknown'  # code, exact, fuzzy, unknown, ambiguous
    validation_issues: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['validation_issues'] = list(self.validation_issues)
        return data


@dataclass
class MatchReport:
    processed: List[ProcessedBiomarker]
    matched_count: int
    unmatched_count: int
    match_details: List[Dict[str, Any]]


@dataclass
class BiomarkerStandard:
    code: str
    name: str
    standard_unit: str
    aliases: List[str] = field(default_factory=list)
    category: Optional[str] = None
    unit_conversions: Dict[str, float] = field(default_factory=dict)
    reference_ranges: Dict[str, Dict[str, Optional[float]]] = field(default_factory=dict)
    decimal_places: int = 1

    def reference_range(self, gender: str) -> Dict[str, Optional[float]]:
        return self.reference_ranges.get(gender) or {}
