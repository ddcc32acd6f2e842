"""
Unit tests for the page splitter.

Uses real PDFs built with pypdf so page counts and chunk bytes are checked
end to end.
"""

import io
import pytest
from pypdf import PdfReader

from workers.extraction.errors import DocumentValidationError
from workers.extraction.page_splitter import (
    extract_page_range,
    get_page_count,
    page_range_indices,
    plan_chunks,
    split_pdf_into_pages,
)

pytestmark = pytest.mark.unit


def _pages_in(data: bytes) -> int:
    return len(PdfReader(io.BytesIO(data)).pages)


class TestGetPageCount:
    """Tests for page counting."""

    def test_counts_pages(self, pdf_factory):
        assert get_page_count(pdf_factory(4)) == 4

    def test_zero_page_document(self, pdf_factory):
        assert get_page_count(pdf_factory(0)) == 0

    def test_garbage_bytes_rejected(self):
        with pytest.raises(DocumentValidationError):
            get_page_count(b"this is not a pdf")

    def test_empty_bytes_rejected(self):
        with pytest.raises(DocumentValidationError):
            get_page_count(b"")


class TestSplitPdfIntoPages:
    """Tests for one-chunk-per-page splitting."""

    def test_pages_numbered_from_one(self, three_page_pdf):
        chunks = split_pdf_into_pages(three_page_pdf)

        assert [c.page_number for c in chunks] == [1, 2, 3]

    def test_each_chunk_is_single_page_pdf(self, three_page_pdf):
        for chunk in split_pdf_into_pages(three_page_pdf):
            assert _pages_in(chunk.data) == 1
            assert chunk.byte_size == len(chunk.data)

    def test_zero_pages_gives_empty_list(self, pdf_factory):
        assert split_pdf_into_pages(pdf_factory(0)) == []


class TestPageRange:
    """Tests for clamped page ranges."""

    def test_negative_start_clamped(self):
        assert page_range_indices(5, -5, 3) == [0, 1, 2]

    def test_end_clamped_to_page_count(self):
        assert page_range_indices(5, 4, 99) == [3, 4]

    def test_inverted_range_is_empty(self):
        assert page_range_indices(5, 4, 2) == []

    def test_extract_range_uses_clamped_start(self, pdf_factory):
        chunk = extract_page_range(pdf_factory(5), 0, 2)

        assert chunk.page_number == 1
        assert _pages_in(chunk.data) == 2

    def test_extract_middle_range(self, pdf_factory):
        chunk = extract_page_range(pdf_factory(5), 2, 4)

        assert chunk.page_number == 2
        assert _pages_in(chunk.data) == 3

    def test_empty_range_is_noop(self, pdf_factory):
        assert extract_page_range(pdf_factory(3), 5, 9) is None


class TestPlanChunks:
    """Tests for the whole-document vs per-page decision."""

    def test_single_page_sent_whole(self, single_page_pdf):
        chunks = plan_chunks(single_page_pdf, threshold=1)

        assert len(chunks) == 1
        assert chunks[0].page_number == 1
        assert chunks[0].data == single_page_pdf

    def test_above_threshold_splits(self, three_page_pdf):
        chunks = plan_chunks(three_page_pdf, threshold=1)

        assert [c.page_number for c in chunks] == [1, 2, 3]

    def test_at_threshold_not_split(self, three_page_pdf):
        chunks = plan_chunks(three_page_pdf, threshold=3)

        assert len(chunks) == 1
        assert chunks[0].data == three_page_pdf
