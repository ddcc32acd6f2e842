"""
Unit tests for the verification adapter.

The adapter must never raise: every failure mode returns the extraction it
was given, marked unverified, with a correction explaining why.
"""

import json
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from workers.extraction.capabilities import CapabilityContext
from workers.extraction.models import ExtractedDocument
from workers.extraction.verification import (
    UNVERIFIED_SUFFIX,
    DegradationReason,
    VerificationAdapter,
)

pytestmark = pytest.mark.unit

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def make_completion(content):
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = content
    return completion


@pytest.fixture
def extracted(sample_extraction_payload):
    return ExtractedDocument.from_dict(sample_extraction_payload)


@pytest.fixture
def context(extracted):
    return CapabilityContext(page_number=2, total_pages=3, document=extracted)


@pytest.fixture
def adapter(mock_openai_client):
    return VerificationAdapter(model_name="gpt-test", timeout=600, client=mock_openai_client)


class TestVerificationSuccess:

    def test_passing_verification_keeps_extraction(self, adapter, context, extracted):
        outcome = adapter.invoke(b"%PDF", context)

        assert outcome.verification_passed is True
        assert outcome.corrections == []
        assert outcome.degraded is False
        assert [b.name for b in outcome.document.biomarkers] == [b.name for b in extracted.biomarkers]
        assert outcome.document.client_name == "Jane Doe"

    def test_corrections_applied(self, adapter, mock_openai_client, context):
        mock_openai_client.chat.completions.create.return_value = make_completion(json.dumps({
            "biomarkers": [{"name": "Glucose", "value": 59, "unit": "mg/dL", "flag": "low"}],
            "corrections": ["Glucose value was 95, corrected to 59"],
            "verification_passed": True,
        }))

        outcome = adapter.invoke(b"%PDF", context)

        assert outcome.corrections == ["Glucose value was 95, corrected to 59"]
        assert len(outcome.document.biomarkers) == 1
        assert outcome.document.biomarkers[0].value == 59.0
        # Patient fields the verifier left out come from the extraction
        assert outcome.document.lab_name == "Central Lab"

    def test_single_string_correction(self, adapter, mock_openai_client, context):
        mock_openai_client.chat.completions.create.return_value = make_completion(json.dumps({
            "corrections": "Fixed hemoglobin unit",
            "verification_passed": True,
        }))

        assert adapter.invoke(b"%PDF", context).corrections == ["Fixed hemoglobin unit"]

    def test_verifier_can_fail_document(self, adapter, mock_openai_client, context):
        mock_openai_client.chat.completions.create.return_value = make_completion(json.dumps({
            "corrections": ["Page is unreadable"],
            "verification_passed": False,
        }))

        outcome = adapter.invoke(b"%PDF", context)

        assert outcome.verification_passed is False
        assert outcome.degraded is False

    def test_request_carries_pdf_and_extraction(self, adapter, mock_openai_client, context):
        adapter.invoke(b"%PDF-1.4", context)

        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        file_part, text_part = kwargs["messages"][0]["content"]
        assert file_part["type"] == "file"
        assert file_part["file"]["file_data"].startswith("data:application/pdf;base64,")
        assert "Glucose" in text_part["text"]


class TestVerificationDegradation:
    """Every failure returns the unverified extraction."""

    def assert_degraded(self, outcome, extracted, reason, message):
        assert outcome.degradation == reason
        assert outcome.verification_passed is False
        assert outcome.document is extracted
        assert outcome.corrections == [message + UNVERIFIED_SUFFIX]

    def test_missing_credentials(self, monkeypatch, context, extracted):
        from workers.extraction import verification

        monkeypatch.setattr(verification.settings.openai, "api_key", None)
        outcome = VerificationAdapter().invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.MISSING_CREDENTIALS,
                             "OpenAI API key not configured")

    def test_timeout(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)

        outcome = adapter.invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.TIMEOUT,
                             "Verification timed out after 10 minutes")

    def test_http_error(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.side_effect = openai.InternalServerError(
            "upstream unavailable",
            response=httpx.Response(500, request=REQUEST),
            body=None,
        )

        outcome = adapter.invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.HTTP_ERROR,
                             "GPT verification failed with HTTP 500: upstream unavailable")

    def test_connection_error(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)

        outcome = adapter.invoke(b"%PDF", context)

        assert outcome.degradation == DegradationReason.TRANSPORT_ERROR
        assert outcome.document is extracted

    def test_unexpected_error(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.side_effect = RuntimeError("socket closed")

        outcome = adapter.invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.TRANSPORT_ERROR,
                             "GPT verification error: socket closed")

    def test_empty_content(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.return_value = make_completion("")

        outcome = adapter.invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.EMPTY_RESPONSE,
                             "GPT returned empty content")

    def test_no_choices(self, adapter, mock_openai_client, context):
        completion = make_completion("{}")
        completion.choices = []
        mock_openai_client.chat.completions.create.return_value = completion

        assert adapter.invoke(b"%PDF", context).degradation == DegradationReason.EMPTY_RESPONSE

    def test_invalid_json(self, adapter, mock_openai_client, context, extracted):
        mock_openai_client.chat.completions.create.return_value = make_completion("Looks fine to me!")

        outcome = adapter.invoke(b"%PDF", context)

        self.assert_degraded(outcome, extracted, DegradationReason.INVALID_JSON,
                             "GPT output was not valid JSON")

    @pytest.mark.parametrize("payload", [
        {"corrections": 3},
        {"corrections": {"glucose": "fixed"}},
        {"biomarkers": 5},
        {"biomarkers": True},
        {"biomarkers": "Glucose 95"},
    ])
    def test_wrong_shape(self, adapter, mock_openai_client, context, extracted, payload):
        mock_openai_client.chat.completions.create.return_value = make_completion(json.dumps(payload))

        outcome = adapter.invoke(b"%PDF", context)

        assert outcome.degradation == DegradationReason.INVALID_JSON
        assert outcome.document is extracted
        assert outcome.verification_passed is False
        assert outcome.corrections[0].startswith("GPT output did not match the expected schema")
        assert outcome.corrections[0].endswith(UNVERIFIED_SUFFIX)
