"""
Verification Adapter - pass 2 of the pipeline, backed by an OpenAI model.

The verifier re-reads the chunk next to the pass 1 JSON and returns a
corrected document. Verification is best effort: every failure degrades to
the unverified extraction with an explanatory correction, and ``invoke``
never raises.
"""

import base64
import time
import logging
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

import openai
from openai import OpenAI

from backend.core.config import get_settings
from workers.extraction.capabilities import Capability, CapabilityContext, parse_json_object
from workers.extraction.models import ExtractedDocument, PATIENT_FIELDS
from workers.extraction.prompts import get_verification_prompt

logger = logging.getLogger(__name__)
settings = get_settings()

UNVERIFIED_SUFFIX = " - returning unverified extraction"


class DegradationReason(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    TRANSPORT_ERROR = "transport_error"
    EMPTY_RESPONSE = "empty_response"
    INVALID_JSON = "invalid_json"


@dataclass
class VerificationOutcome:
    """Result of one verification call.

    ``degradation`` is set whenever the verifier could not do its job, in
    which case ``document`` is the extraction passed in, untouched.
    """
    document: ExtractedDocument
    verification_passed: bool
    corrections: List[str] = field(default_factory=list)
    degradation: Optional[DegradationReason] = None
    duration_ms: float = 0.0
    raw_response_preview: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degradation is not None


class VerificationAdapter(Capability):

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[int] = None,
        client: Optional[OpenAI] = None,
    ):
        self.model_name = model_name or settings.openai.model
        self.timeout = timeout or settings.openai.timeout
        self.max_output_tokens = settings.openai.max_output_tokens
        self.preview_chars = settings.processing.debug_preview_chars

        api_key = api_key or settings.openai.api_key
        if client is not None:
            self.client = client
        elif api_key:
            self.client = OpenAI(api_key=api_key, timeout=self.timeout)
        else:
            self.client = None

    def invoke(self, chunk_bytes: bytes, context: CapabilityContext) -> VerificationOutcome:
        extracted = context.document or ExtractedDocument()
        start = time.time()

        def degrade(reason: DegradationReason, message: str) -> VerificationOutcome:
            logger.warning(f"Page {context.page_number}: verification degraded ({reason.value}): {message}")
            return VerificationOutcome(
                document=extracted,
                verification_passed=False,
                corrections=[message + UNVERIFIED_SUFFIX],
                degradation=reason,
                duration_ms=(time.time() - start) * 1000,
            )

        if self.client is None:
            return degrade(DegradationReason.MISSING_CREDENTIALS, "OpenAI API key not configured")

        try:
            content = self._request(chunk_bytes, extracted)
        except openai.APITimeoutError:
            minutes = self.timeout / 60
            return degrade(DegradationReason.TIMEOUT, f"Verification timed out after {minutes:g} minutes")
        except openai.APIStatusError as e:
            body = str(e.message or '')[:200]
            return degrade(
                DegradationReason.HTTP_ERROR,
                f"GPT verification failed with HTTP {e.status_code}: {body}",
            )
        except openai.APIConnectionError as e:
            return degrade(DegradationReason.TRANSPORT_ERROR, f"GPT verification request failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected verification error: {e}", exc_info=True)
            return degrade(DegradationReason.TRANSPORT_ERROR, f"GPT verification error: {str(e)[:200]}")

        if not content or not content.strip():
            return degrade(DegradationReason.EMPTY_RESPONSE, "GPT returned empty content")

        try:
            data = parse_json_object(content)
        except ValueError:
            return degrade(DegradationReason.INVALID_JSON, "GPT output was not valid JSON")

        try:
            outcome = self._build_outcome(data, extracted)
        except (TypeError, ValueError, AttributeError) as e:
            return degrade(
                DegradationReason.INVALID_JSON,
                f"GPT output did not match the expected schema: {e}",
            )
        outcome.duration_ms = (time.time() - start) * 1000
        outcome.raw_response_preview = content[:self.preview_chars]
        logger.info(
            f"Page {context.page_number}: verification "
            f"{'passed' if outcome.verification_passed else 'failed'} "
            f"with {len(outcome.corrections)} corrections"
        )
        return outcome

    def _request(self, chunk_bytes: bytes, extracted: ExtractedDocument) -> Optional[str]:
        pdf_b64 = base64.standard_b64encode(chunk_bytes).decode('utf-8')
        completion = self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "user", "content": [
                    {"type": "file", "file": {
                        "filename": "lab-result.pdf",
                        "file_data": f"data:application/pdf;base64,{pdf_b64}",
                    }},
                    {"type": "text", "text": get_verification_prompt(extracted.to_dict())},
                ]}
            ],
            max_completion_tokens=self.max_output_tokens,
            timeout=self.timeout,
        )
        if not completion.choices:
            return None
        return completion.choices[0].message.content

    @staticmethod
    def _build_outcome(data: Dict[str, Any], extracted: ExtractedDocument) -> VerificationOutcome:
        verified = ExtractedDocument.from_dict(data)

        # Verifier omitted the list: keep what pass 1 found
        if data.get('biomarkers') is None:
            verified.biomarkers = [b.copy() for b in extracted.biomarkers]
        for name in PATIENT_FIELDS:
            if getattr(verified, name) is None:
                setattr(verified, name, getattr(extracted, name))

        raw_corrections = data.get('corrections')
        if raw_corrections is None:
            raw_corrections = []
        elif isinstance(raw_corrections, str):
            raw_corrections = [raw_corrections]
        elif not isinstance(raw_corrections, list):
            raise ValueError(
                f"'corrections' must be a list, got {type(raw_corrections).__name__}"
            )
        corrections = [str(c) for c in raw_corrections if c]
        passed = data.get('verification_passed')

        return VerificationOutcome(
            document=verified,
            verification_passed=True if passed is None else bool(passed),
            corrections=corrections,
        )
