"""
Capability interface shared by the extraction and verification adapters.

A capability takes the bytes of one chunk plus some context and returns a
result object. The orchestrator only depends on this interface, so tests
can swap in fakes without touching the AI clients.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from workers.extraction.models import ExtractedDocument


@dataclass
class CapabilityContext:
    page_number: int = 1
    total_pages: int = 1
    # Pass 1 output, handed to the verifier
    document: Optional[ExtractedDocument] = None


class Capability(ABC):

    @abstractmethod
    def invoke(self, chunk_bytes: bytes, context: CapabilityContext):
        raise NotImplementedError


def clean_json_response(text: str) -> str:
    """Remove markdown code fences around a JSON payload."""
    text = (text or '').strip()
    if text.startswith('```json'):
        text = text[7:]
    elif text.startswith('```'):
        text = text[3:]

    if text.endswith('```'):
        text = text[:-3]

    return text.strip()


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a model response into a dict.

    Raises ValueError when the payload is not JSON or not a JSON object.
    """
    data = json.loads(clean_json_response(text))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
