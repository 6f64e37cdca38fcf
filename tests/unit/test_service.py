"""Tests for the request-scoped conversion service."""
import dataclasses
import io
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FAKE_PDF_PREFIX, FakeEngine, leftovers
from office_convert.conversion import CancellationToken, ConversionRequest, ConversionService
from office_convert.formats import CFB_MAGIC, FORMATS, conversion_matrix

MINIMAL = {
    "docx": b"PK\x03\x04minimal-docx",
    "doc": CFB_MAGIC + b"minimal-doc",
    "pdf": b"%PDF-1.4\nminimal",
}

ALL_PAIRS = [(src, dst) for src, targets in sorted(conversion_matrix().items()) for dst in targets]


@pytest.mark.parametrize("source,target", ALL_PAIRS)
def test_every_supported_pair_succeeds(settings, engine, source, target):
    service = ConversionService(settings, engine)
    data = MINIMAL.get(source, b"minimal document body")

    result = service.convert(ConversionRequest(source=data, target_format=target, filename=f"doc.{source}"))

    assert result.ok, result.error
    artifact = result.artifact
    assert artifact.size > 0
    assert artifact.read_bytes()
    assert artifact.content_type == FORMATS[target].content_type
    assert artifact.filename == f"doc.{target}"
    assert engine.tasks[0].source.name == source


def test_plain_text_to_pdf_example(settings, engine, sample_text):
    assert len(sample_text) == 10 * 1024
    service = ConversionService(settings, engine)

    result = service.convert(ConversionRequest(source=sample_text, target_format="pdf", filename="notes.txt"))

    assert result.ok
    assert result.artifact.content_type == "application/pdf"
    assert result.artifact.read_bytes() == FAKE_PDF_PREFIX + sample_text
    assert leftovers(settings) == []


@pytest.mark.parametrize("kind", ["bytes", "path", "stream"])
def test_oversized_input_is_rejected_before_engine_runs(settings, engine, tmp_path, kind):
    settings = dataclasses.replace(settings, max_input_size_bytes=1024)
    payload = b"x" * 1025
    if kind == "path":
        source = tmp_path / "big.txt"
        source.write_bytes(payload)
    elif kind == "stream":
        source = io.BytesIO(payload)
    else:
        source = payload
    service = ConversionService(settings, engine)

    result = service.convert(ConversionRequest(source=source, target_format="pdf", filename="big.txt"))

    assert not result.ok
    assert result.error.kind == "resource_limit"
    assert engine.calls == 0
    assert leftovers(settings) == []


def test_input_at_limit_is_accepted(settings, engine):
    settings = dataclasses.replace(settings, max_input_size_bytes=16)
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"y" * 16, target_format="pdf", filename="a.txt")
    )
    assert result.ok


def test_timeout_returns_timeout_error_and_cleans_up(settings):
    settings = dataclasses.replace(settings, engine_timeout_sec=0.2)
    engine = FakeEngine(delay=5)

    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"slow", target_format="pdf", filename="slow.txt")
    )

    assert result.error.kind == "timeout"
    assert result.artifact is None
    assert leftovers(settings) == []


def test_engine_failure_keeps_diagnostic_verbatim(settings):
    stderr = "x2t: fatal error while reading stream\n  at offset 42\n"
    engine = FakeEngine(exit_code=0x56, stderr=stderr)

    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"text", target_format="pdf", filename="a.txt")
    )

    error = result.error
    assert error.kind == "engine"
    assert error.engine_code == 0x56
    assert error.diagnostic == stderr
    assert error.message == "AVS_FILEUTILS_ERROR_CONVERT_CORRUPTED"
    assert leftovers(settings) == []


def test_unknown_engine_code_has_generic_message(settings):
    engine = FakeEngine(exit_code=1234, stderr="odd")
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"text", target_format="pdf", filename="a.txt")
    )
    assert result.error.message == "unknown error occurred"
    assert result.error.diagnostic == "odd"


def test_out_of_range_crash_is_reported_as_encrypted(settings):
    engine = FakeEngine(exit_code=1, stderr="terminate called after throwing an instance of 'std::out_of_range'")
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=MINIMAL["docx"], target_format="pdf", filename="a.docx")
    )
    assert result.error.reason == "FILE_LIKELY_ENCRYPTED"
    assert result.error.message == "file is encrypted"


def test_encrypted_package_is_detected_from_header(settings):
    encrypted = CFB_MAGIC + b"\x00" * 100 + "EncryptionInfo".encode("utf-16-le")
    engine = FakeEngine(exit_code=0x5B)
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=encrypted, target_format="pdf", filename="secret.docx")
    )
    assert result.error.reason == "FILE_LIKELY_ENCRYPTED"
    assert result.error.engine_code == 0x5B


def test_corrupted_package_is_detected_from_header(settings):
    engine = FakeEngine(exit_code=0x56)
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"definitely not a zip", target_format="pdf", filename="broken.xlsx")
    )
    assert result.error.reason == "FILE_LIKELY_CORRUPTED"


def test_success_without_output_is_an_engine_error(settings):
    engine = FakeEngine(write_output=False)
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"text", target_format="pdf", filename="a.txt")
    )
    assert result.error.kind == "engine"
    assert result.error.reason == "NO_OUTPUT"


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"target_format": "exe", "filename": "a.txt"},
        {"target_format": "docx", "filename": "sheet.xlsx"},
        {"target_format": "pdf", "filename": "mystery"},
        {"target_format": "pdf", "filename": "a.txt", "params": {"dpi": "300"}},
    ],
)
def test_validation_errors_never_reach_the_engine(settings, engine, request_kwargs):
    result = ConversionService(settings, engine).convert(ConversionRequest(source=b"data", **request_kwargs))
    assert result.error.kind == "validation"
    assert engine.calls == 0
    assert leftovers(settings) == []


def test_source_is_sniffed_when_no_name_is_given(settings, engine):
    result = ConversionService(settings, engine).convert(ConversionRequest(source=b"%PDF-1.7\n...", target_format="docx"))
    assert result.ok
    assert engine.tasks[0].source.name == "pdf"
    assert engine.tasks[0].input_path.name == "input.pdf"


def test_output_is_published_to_destination(settings, engine, tmp_path):
    dest = tmp_path / "out" / "report.pdf"
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"hello", target_format="pdf", filename="report.txt", output_path=dest)
    )
    assert result.ok
    assert result.artifact.path == dest
    assert result.artifact.data is None
    assert dest.read_bytes() == FAKE_PDF_PREFIX + b"hello"
    assert [p.name for p in dest.parent.iterdir()] == ["report.pdf"]


def test_path_source_uses_its_name(settings, engine, tmp_path):
    src = tmp_path / "slides.pptx"
    src.write_bytes(MINIMAL["docx"])
    result = ConversionService(settings, engine).convert(ConversionRequest(source=src, target_format="pdf"))
    assert result.ok
    assert result.artifact.filename == "slides.pdf"
    assert src.exists()


def test_cancelled_request_is_reported_and_cleaned(settings):
    engine = FakeEngine(delay=5)
    token = CancellationToken()
    token.cancel()
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"text", target_format="pdf", filename="a.txt"), cancel=token
    )
    assert result.error.kind == "cancelled"
    assert leftovers(settings) == []


def test_unexpected_crash_becomes_internal_error(settings):
    engine = FakeEngine(error=RuntimeError("engine exploded"))
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"text", target_format="pdf", filename="a.txt")
    )
    assert result.error.kind == "internal"
    assert "engine exploded" in result.error.message
    assert leftovers(settings) == []


def test_parallel_requests_are_isolated(settings):
    engine = FakeEngine(delay=0.01)
    service = ConversionService(settings, engine)
    inputs = [f"document number {i}".encode() for i in range(50)]

    def run(data: bytes):
        return service.convert(ConversionRequest(source=data, target_format="pdf", filename="doc.txt"))

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(run, inputs))

    for data, result in zip(inputs, results):
        assert result.ok
        assert result.artifact.read_bytes() == FAKE_PDF_PREFIX + data
    assert len({t.work_dir for t in engine.tasks}) == 50
    assert leftovers(settings) == []


@pytest.mark.parametrize("kind", ["bytes", "path"])
def test_unsupported_pair_is_rejected_before_size_check(settings, engine, tmp_path, kind):
    settings = dataclasses.replace(settings, max_input_size_bytes=10)
    payload = MINIMAL["docx"] * 10
    source = payload
    if kind == "path":
        source = tmp_path / "sheet.xlsx"
        source.write_bytes(payload)

    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=source, target_format="docx", filename="sheet.xlsx")
    )

    assert result.error.kind == "validation"
    assert result.error.reason == "UNSUPPORTED_CONVERSION"
    assert engine.calls == 0
    assert leftovers(settings) == []


def test_output_path_must_not_replace_the_input(settings, engine, tmp_path):
    src = tmp_path / "report.pdf"
    src.write_bytes(b"%PDF-1.4 original")

    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=src, target_format="pdf", output_path=tmp_path / "." / "report.pdf")
    )

    assert result.error.reason == "OUTPUT_IS_INPUT"
    assert src.read_bytes() == b"%PDF-1.4 original"
    assert engine.calls == 0


def test_missing_input_file_is_a_staging_failure(settings, engine, tmp_path):
    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=tmp_path / "gone.docx", target_format="pdf")
    )

    assert result.error.kind == "internal"
    assert result.error.reason == "STAGE_INPUT"
    assert engine.calls == 0
    assert leftovers(settings) == []


def test_unwritable_destination_is_a_publish_failure(settings, engine, tmp_path):
    blocker = tmp_path / "out"
    blocker.write_bytes(b"not a directory")

    result = ConversionService(settings, engine).convert(
        ConversionRequest(source=b"hello", target_format="pdf", filename="a.txt", output_path=blocker / "a.pdf")
    )

    assert result.error.kind == "internal"
    assert result.error.reason == "PUBLISH_OUTPUT"
    assert engine.calls == 1
    assert leftovers(settings) == []
