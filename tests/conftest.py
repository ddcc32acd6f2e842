"""
Shared pytest fixtures for the lab report pipeline tests.

Provides sample PDFs, a throwaway SQLite database, the standards table and
fake AI capabilities so no test talks to a real model or service.
"""

import io
import os
import sys
import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import MagicMock, Mock, patch

# Settings are read on first import of backend.core.config
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'lab_pipeline_test.db'}")
os.environ.setdefault("GEMINI_API_KEY", "test-api-key")
os.environ.setdefault("STORAGE_BASE_PATH", str(Path(tempfile.gettempdir()) / "lab_pipeline_storage"))

import pytest
from pypdf import PdfWriter

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# PDF Fixtures
# =============================================================================

def build_pdf(page_count: int) -> bytes:
    """Build a PDF with the given number of blank letter-size pages."""
    writer = PdfWriter()
    for _ in range(page_count):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def pdf_factory():
    return build_pdf


@pytest.fixture
def single_page_pdf() -> bytes:
    return build_pdf(1)


@pytest.fixture
def three_page_pdf() -> bytes:
    return build_pdf(3)


# =============================================================================
# Extraction Payloads
# =============================================================================

@pytest.fixture
def sample_extraction_payload() -> Dict[str, Any]:
    """What the extraction model returns for a typical one-page report."""
    return {
        "client_name": "Jane Doe",
        "client_gender": "female",
        "client_birthday": "1985-04-12",
        "lab_name": "Central Lab",
        "test_date": "2024-01-15",
        "biomarkers": [
            {"name": "Glucose", "value": 95, "unit": "mg/dL",
             "reference_min": 70, "reference_max": 99, "flag": "normal"},
            {"name": "Hemoglobin", "value": 11.2, "unit": "g/dL",
             "reference_min": 12.0, "reference_max": 15.5, "flag": "low"},
            {"name": "Urine Protein", "value": "Negative", "unit": ""},
        ]
    }


@pytest.fixture
def mock_gemini_model(sample_extraction_payload: Dict[str, Any]):
    """Mock Gemini generative model."""
    mock_model = Mock()
    mock_response = Mock()
    mock_response.text = json.dumps(sample_extraction_payload)
    mock_model.generate_content.return_value = mock_response
    return mock_model


@pytest.fixture
def mock_gemini_configure(mock_gemini_model):
    """Patch genai.configure and GenerativeModel."""
    with patch('google.generativeai.configure') as mock_configure, \
         patch('google.generativeai.GenerativeModel', return_value=mock_gemini_model):
        yield mock_configure


def make_completion(content):
    """Shape of an OpenAI chat completion with a single choice."""
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = content
    return completion


@pytest.fixture
def mock_openai_client():
    """OpenAI client whose chat.completions.create returns a passing verification."""
    client = MagicMock()
    client.chat.completions.create.return_value = make_completion(json.dumps({
        "corrections": [],
        "verification_passed": True,
    }))
    return client


# =============================================================================
# Fake Capabilities
# =============================================================================

class FakeExtractor:
    """Extraction capability returning canned documents per page."""

    def __init__(self, pages: Dict[int, Any]):
        # page_number -> payload dict, or an Exception to raise
        self.pages = pages
        self.calls: List[int] = []

    def invoke(self, chunk_bytes, context):
        from workers.extraction.gemini import ExtractionResult
        from workers.extraction.models import ExtractedDocument

        self.calls.append(context.page_number)
        payload = self.pages[context.page_number]
        if isinstance(payload, Exception):
            raise payload
        return ExtractionResult(
            success=True,
            document=ExtractedDocument.from_dict(payload),
            confidence_score=0.8,
            raw_response_preview=json.dumps(payload),
            duration_ms=5.0,
        )


class FakeVerifier:
    """Verification capability that passes or applies fixed corrections."""

    def __init__(self, corrections=None, passed=True, degradation=None):
        self.corrections = corrections or []
        self.passed = passed
        self.degradation = degradation
        self.calls: List[int] = []

    def invoke(self, chunk_bytes, context):
        from workers.extraction.verification import VerificationOutcome

        self.calls.append(context.page_number)
        return VerificationOutcome(
            document=context.document,
            verification_passed=self.passed,
            corrections=list(self.corrections),
            degradation=self.degradation,
            duration_ms=3.0,
        )


@pytest.fixture
def fake_extractor_cls():
    return FakeExtractor


@pytest.fixture
def fake_verifier_cls():
    return FakeVerifier


# =============================================================================
# Standards
# =============================================================================

@pytest.fixture
def standards_path() -> Path:
    return PROJECT_ROOT / "config" / "biomarker_standards.yaml"


@pytest.fixture
def standards(standards_path):
    from workers.extraction.standardizer import load_standards
    return load_standards(standards_path)


@pytest.fixture
def matcher(standards):
    from workers.extraction.standardizer import StandardsMatcher
    return StandardsMatcher(standards, fuzzy_threshold=0.85)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def test_database_url(tmp_path: Path) -> str:
    """Create temporary SQLite database URL."""
    db_path = tmp_path / "test.db"
    return f"sqlite:///{db_path}"


@pytest.fixture
def test_engine(test_database_url: str):
    from sqlmodel import SQLModel, create_engine

    engine = create_engine(
        test_database_url,
        echo=False,
        connect_args={"check_same_thread": False}
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def test_session(test_engine):
    """Create test database session."""
    from sqlmodel import Session

    with Session(test_engine) as session:
        yield session


@pytest.fixture
def make_upload(test_engine):
    """Insert a pending LabUpload and return its id."""
    from sqlmodel import Session
    from backend.models.db import LabUpload

    def _make(user_id="user-1", storage_path=None, **fields) -> str:
        upload = LabUpload(
            user_id=user_id,
            filename="report.pdf",
            storage_path=storage_path or f"{user_id}/report.pdf",
            **fields
        )
        with Session(test_engine) as session:
            session.add(upload)
            session.commit()
            return upload.id

    return _make


# =============================================================================
# Storage / Redis
# =============================================================================

@pytest.fixture
def local_storage(tmp_path: Path):
    from backend.core.storage import LocalStorage
    return LocalStorage(base_path=str(tmp_path / "storage"), bucket="lab-pdfs")


@pytest.fixture
def put_document(local_storage):
    """Place bytes in local storage the way the upload step would."""
    def _put(storage_path: str, data: bytes) -> Path:
        path = local_storage.root / storage_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path
    return _put


@pytest.fixture
def mock_redis():
    """Create a fake Redis client using fakeredis."""
    import fakeredis
    return fakeredis.FakeRedis()
