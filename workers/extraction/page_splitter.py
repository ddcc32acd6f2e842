"""
Page Splitter - turns an uploaded PDF into the chunks sent to the AI passes.

Small documents go out whole; anything above the split threshold is sent
one page at a time so a single bad page cannot sink the whole report.
"""

import io
import logging
from typing import List, Optional

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from workers.extraction.errors import DocumentValidationError
from workers.extraction.models import PageChunk

logger = logging.getLogger(__name__)


def _open(pdf_bytes: bytes) -> PdfReader:
    if not pdf_bytes:
        raise DocumentValidationError("Document is empty")
    try:
        return PdfReader(io.BytesIO(pdf_bytes))
    except (PyPdfError, ValueError, KeyError) as e:
        raise DocumentValidationError(f"Unreadable PDF: {e}") from e


def _write(reader: PdfReader, indices: List[int]) -> bytes:
    writer = PdfWriter()
    for index in indices:
        writer.add_page(reader.pages[index])
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def get_page_count(pdf_bytes: bytes) -> int:
    return len(_open(pdf_bytes).pages)


def split_pdf_into_pages(pdf_bytes: bytes) -> List[PageChunk]:
    """One single-page PDF per page, numbered from 1."""
    reader = _open(pdf_bytes)
    chunks = []
    for index in range(len(reader.pages)):
        data = _write(reader, [index])
        chunks.append(PageChunk(page_number=index + 1, data=data, byte_size=len(data)))
    return chunks


def page_range_indices(page_count: int, start: int, end: int) -> List[int]:
    """0-based indices for the inclusive 1-based range, clamped to the document."""
    first = max(1, start)
    last = min(page_count, end)
    return list(range(first - 1, last))


def extract_page_range(pdf_bytes: bytes, start: int, end: int) -> Optional[PageChunk]:
    """Copy pages start..end (1-based, inclusive) into one chunk.

    Returns None when the clamped range is empty.
    """
    reader = _open(pdf_bytes)
    indices = page_range_indices(len(reader.pages), start, end)
    if not indices:
        return None
    data = _write(reader, indices)
    return PageChunk(page_number=indices[0] + 1, data=data, byte_size=len(data))


def plan_chunks(pdf_bytes: bytes, threshold: int = 1) -> List[PageChunk]:
    """Decide how a document is sent to the capabilities."""
    page_count = get_page_count(pdf_bytes)
    if page_count <= threshold:
        logger.info(f"Sending {page_count}-page document as a single chunk")
        return [PageChunk(page_number=1, data=pdf_bytes, byte_size=len(pdf_bytes))]

    logger.info(f"Splitting {page_count}-page document (threshold {threshold})")
    return split_pdf_into_pages(pdf_bytes)
