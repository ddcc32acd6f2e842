"""
Extraction Adapter - pass 1 of the pipeline, backed by Gemini.

The PDF chunk is sent inline with the extraction prompt and the model is
asked for a single JSON object. Any failure here is fatal to the chunk:
the adapter raises ExtractionError and the orchestrator records it.
"""

import time
import logging
from typing import Optional
from dataclasses import dataclass

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from backend.core.config import get_settings
from workers.extraction.capabilities import Capability, CapabilityContext, parse_json_object
from workers.extraction.errors import ConfigurationError, ExtractionError, ExtractionTimeoutError
from workers.extraction.models import ExtractedDocument
from workers.extraction.prompts import get_extraction_prompt

logger = logging.getLogger(__name__)
settings = get_settings()

DEFAULT_CONFIDENCE = 0.8


@dataclass
class ExtractionResult:
    """Result of one extraction call."""
    success: bool
    document: ExtractedDocument
    confidence_score: float
    raw_response_preview: str
    duration_ms: float


class GeminiExtractionAdapter(Capability):
    """
    Sends one chunk to Gemini and parses the structured result.

    Args:
        api_key: Overrides ``gemini.api_key`` from settings
        model_name: Overrides ``gemini.model``
        timeout: Seconds to wait for the response (``gemini.timeout``)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self._configure_gemini(api_key or settings.gemini.api_key)
        self.model_name = model_name or settings.gemini.model
        self.model = genai.GenerativeModel(self.model_name)
        self.timeout = timeout or settings.gemini.timeout
        self.preview_chars = settings.processing.debug_preview_chars
        self.generation_config = {
            'temperature': settings.gemini.temperature,
            'max_output_tokens': settings.gemini.max_output_tokens,
        }

    def _configure_gemini(self, api_key: Optional[str]) -> None:
        if not api_key:
            raise ConfigurationError(
                "GEMINI_API_KEY not set. Set the GEMINI__API_KEY environment variable "
                "or add it to your .env file."
            )
        genai.configure(api_key=api_key)

    def invoke(self, chunk_bytes: bytes, context: CapabilityContext) -> ExtractionResult:
        page = context.page_number
        prompt = get_extraction_prompt(page, context.total_pages)
        start = time.time()

        try:
            response = self.model.generate_content(
                [prompt, {'mime_type': 'application/pdf', 'data': chunk_bytes}],
                generation_config=self.generation_config,
                request_options={'timeout': self.timeout},
            )
        except (google_exceptions.DeadlineExceeded, TimeoutError) as e:
            minutes = self.timeout / 60
            raise ExtractionTimeoutError(
                f"Gemini extraction timed out after {minutes:g} minutes", page_number=page
            ) from e
        except Exception as e:
            raise ExtractionError(f"Gemini API error: {str(e)[:200]}", page_number=page) from e

        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or has no parts
            raise ExtractionError(f"Gemini returned no content: {e}", page_number=page) from e

        if not text or not text.strip():
            raise ExtractionError("Gemini returned an empty response", page_number=page)

        try:
            data = parse_json_object(text)
        except ValueError as e:
            raise ExtractionError(
                "Failed to parse extraction result from Gemini", page_number=page
            ) from e

        try:
            document = ExtractedDocument.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ExtractionError(
                f"Unexpected extraction result shape from Gemini: {e}", page_number=page
            ) from e

        duration_ms = (time.time() - start) * 1000
        logger.info(
            f"Page {page}: extracted {len(document.biomarkers)} biomarkers in {duration_ms:.0f}ms"
        )

        return ExtractionResult(
            success=True,
            document=document,
            confidence_score=self._confidence(data),
            raw_response_preview=text[:self.preview_chars],
            duration_ms=duration_ms,
        )

    @staticmethod
    def _confidence(data) -> float:
        try:
            score = float(data.get('confidence_score'))
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        if 0.0 <= score <= 1.0:
            return score
        return DEFAULT_CONFIDENCE
