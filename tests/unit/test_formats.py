"""Tests for format lookup, inference and conversion pairing."""
import pytest

from office_convert.conversion.params import ConversionParams
from office_convert.errors import ValidationError
from office_convert.formats import (
    FORMATS,
    can_convert,
    conversion_matrix,
    lookup,
    resolve_source,
    resolve_target,
)


def test_lookup_normalizes_names_and_aliases():
    assert lookup(".DOCX").name == "docx"
    assert lookup("jpeg").name == "jpg"
    assert lookup("htm").name == "html"
    assert lookup("nope") is None
    assert lookup("") is None


def test_pdf_uses_engine_code_513():
    assert FORMATS["pdf"].code == 513
    assert FORMATS["pdf"].content_type == "application/pdf"


def test_resolve_target_rejects_unknown_and_read_only():
    with pytest.raises(ValidationError):
        resolve_target("exe")
    with pytest.raises(ValidationError) as exc:
        resolve_target("doc")
    assert exc.value.reason == "UNSUPPORTED_TARGET_FORMAT"


def test_resolve_source_prefers_declared_then_extension_then_magic():
    assert resolve_source("odt", "report.docx", b"%PDF-1.7").name == "odt"
    assert resolve_source(None, "report.docx", b"%PDF-1.7").name == "docx"
    assert resolve_source(None, None, b"%PDF-1.7\n").name == "pdf"
    assert resolve_source(None, "notes", b"{\\rtf1\\ansi").name == "rtf"


def test_resolve_source_fails_when_nothing_identifies_the_file():
    with pytest.raises(ValidationError) as exc:
        resolve_source(None, "blob", b"\x00\x01garbage")
    assert exc.value.kind == "validation"


def test_images_cannot_be_sources():
    with pytest.raises(ValidationError):
        resolve_source("png", None, b"")


@pytest.mark.parametrize(
    "source,target,ok",
    [
        ("docx", "pdf", True),
        ("docx", "odt", True),
        ("docx", "xlsx", False),
        ("xlsx", "csv", True),
        ("pptx", "png", True),
        ("pdf", "docx", True),
        ("pdf", "pptx", False),
        ("csv", "pdfa", True),
    ],
)
def test_can_convert(source, target, ok):
    assert can_convert(FORMATS[source], FORMATS[target]) is ok


def test_matrix_only_lists_readable_sources_and_writable_targets():
    matrix = conversion_matrix()
    assert "png" not in matrix
    assert "doc" in matrix and "pdf" in matrix["doc"]
    for targets in matrix.values():
        assert all(FORMATS[t].writable for t in targets)


def test_params_parse_known_values():
    params = ConversionParams.parse({"password": "s3cret", "csv_delimiter": "Semicolon", "txt_encoding": "utf-8"})
    assert params.password == "s3cret"
    assert params.csv_delimiter == 2
    assert params.txt_encoding == 46


def test_params_reject_unknown_and_invalid():
    with pytest.raises(ValidationError):
        ConversionParams.parse({"dpi": "300"})
    with pytest.raises(ValidationError):
        ConversionParams.parse({"thumbnail_width": "-5"})
    with pytest.raises(ValidationError):
        ConversionParams.parse({"csv_delimiter": "pipe"})
