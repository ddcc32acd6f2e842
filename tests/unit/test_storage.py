"""
Unit tests for the read side of document storage.
"""

import pytest

from backend.core.config import StorageSettings
from workers.extraction.errors import DocumentValidationError

pytestmark = pytest.mark.unit


class TestLocalStorage:

    def test_reads_stored_bytes(self, local_storage, put_document):
        put_document("user-1/report.pdf", b"%PDF-1.4 body")

        assert local_storage.exists("user-1/report.pdf")
        assert local_storage.read("user-1/report.pdf") == b"%PDF-1.4 body"

    def test_missing_document(self, local_storage):
        assert not local_storage.exists("user-1/missing.pdf")
        with pytest.raises(DocumentValidationError, match="not found"):
            local_storage.read("user-1/missing.pdf")

    @pytest.mark.parametrize("path", ["../outside.pdf", "user-1/../../outside.pdf"])
    def test_rejects_paths_outside_bucket(self, local_storage, path):
        with pytest.raises(DocumentValidationError, match="Invalid storage path"):
            local_storage.read(path)

    def test_pipeline_cannot_write(self, local_storage):
        assert not hasattr(local_storage, "write")


class TestStorageSettings:

    def test_only_location_fields(self):
        assert set(StorageSettings.model_fields) == {"bucket", "base_path"}
