"""
Tests for ComplianceBackend/services/document_types.py
"""

import pytest

from ComplianceBackend.services.document_types import (
    DocumentTypeCache,
    guess_extension,
    normalize_document_type,
)


class TestNormalizeDocumentType:
    @pytest.mark.parametrize(
        "mime_type, filename, expected",
        [
            ("application/pdf", "x.bin", "pdf"),
            (None, "Report.DOCX", "docx"),
            ("text/plain", None, "text"),
            (None, "notes.md", "markdown"),
            (None, "archive.zip", "zip"),
            (None, "noext", None),
        ],
    )
    def test_without_schema_types(self, mime_type, filename, expected):
        assert normalize_document_type(mime_type=mime_type, filename=filename) == expected

    def test_constrained_to_allowed_types(self):
        allowed = ("pdf", "docx", "other")
        assert normalize_document_type(mime_type="application/pdf", filename=None, allowed_types=allowed) == "pdf"
        assert normalize_document_type(mime_type=None, filename="a.csv", allowed_types=allowed) == "other"

    def test_no_fallback_available(self):
        assert normalize_document_type(mime_type=None, filename="a.csv", allowed_types=("pdf",)) is None

    def test_guess_extension(self):
        assert guess_extension("A.PDF") == "pdf"
        assert guess_extension("README") == ""
        assert guess_extension(None) == ""
        assert guess_extension("a." + "x" * 33) == ""
        assert guess_extension("a." + "x" * 32) == "x" * 32


class TestDocumentTypeCache:
    def test_empty_off_postgres(self, db):
        cache = DocumentTypeCache()
        assert cache.get_allowed_types(db) == ()
        cache.reset()
        assert cache.get_allowed_types(db) == ()
