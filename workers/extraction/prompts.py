"""
Prompt templates for the two AI passes.

Pass 1 (extraction) reads the PDF chunk and returns structured JSON.
Pass 2 (verification) re-reads the same chunk next to the pass 1 output and
returns the corrected JSON plus a list of corrections.
"""

import json
from typing import Any, Dict

EXTRACTION_PROMPT = """
Analyze this lab result PDF and extract all data as JSON.

Return ONLY valid JSON in this exact format (no markdown, no code blocks):
{
  "client_name": "Patient full name exactly as shown",
  "client_gender": "male" or "female" or "other",
  "client_birthday": "YYYY-MM-DD",
  "lab_name": "Lab facility name",
  "ordering_doctor": "Doctor name if shown",
  "test_date": "YYYY-MM-DD of when tests were performed",
  "confidence_score": 0.0 to 1.0,
  "biomarkers": [
    {
      "name": "Standard English biomarker name",
      "value": 123.4,
      "unit": "primary unit as shown in PDF",
      "secondary_value": 6.8,
      "secondary_unit": "alternative unit if shown",
      "reference_min": 0,
      "reference_max": 100,
      "flag": "high" or "low" or "normal"
    }
  ]
}

IMPORTANT:
- Extract ALL biomarkers/tests visible in the document
- TRANSLATE biomarker names to standard English medical terminology
- Use standard abbreviations where appropriate (LDL, HDL, TSH, HbA1c, ALT, AST, WBC)
- Keep the ORIGINAL unit from the PDF as "unit"
- Qualitative results (e.g. "Negative", "Trace") go in "value" as text
- Parse numeric values correctly (remove thousands separators, keep decimals)
- Determine flag from the reference range if not explicitly stated
- Omit any field that is not present in the document
"""

VERIFICATION_PROMPT_TEMPLATE = """
You are verifying a lab result extraction. You are given:

1. The original lab result PDF (attached as a file)
2. The data extracted from it by another model (JSON below)

EXTRACTED DATA:
```json
{extracted_json}
```

Compare the extracted JSON against the PDF and check:
1. Patient name, gender and birthday match the PDF exactly
2. Lab name, ordering doctor and test date are correct
3. For EACH biomarker: name, value, unit, secondary value/unit,
   reference range and flag

Return ONLY valid JSON (no markdown) with the verified or corrected data,
using the same keys as the extracted data plus:
  "corrections": ["one entry per correction made"],
  "verification_passed": true or false
"""


def get_extraction_prompt(page_number: int = None, total_pages: int = None) -> str:
    """Extraction prompt, with a page hint when the document was split."""
    if page_number and total_pages and total_pages > 1:
        return EXTRACTION_PROMPT + (
            f"\nThis is page {page_number} of {total_pages} of a longer report. "
            "Extract only what appears on this page.\n"
        )
    return EXTRACTION_PROMPT


def get_verification_prompt(extracted: Dict[str, Any]) -> str:
    extracted_json = json.dumps(extracted, indent=2, default=str)
    return VERIFICATION_PROMPT_TEMPLATE.format(extracted_json=extracted_json)
