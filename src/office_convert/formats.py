"""Document formats understood by the engine and the rules for pairing them.

Format codes follow the engine's ``AVS_OFFICESTUDIO_FILE_*`` numbering
(family base plus offset), e.g. DOCX = 0x0041 and PDF = 0x0201.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ValidationError


class FormatFamily(str, Enum):
    DOCUMENT = "document"
    PRESENTATION = "presentation"
    SPREADSHEET = "spreadsheet"
    CROSSPLATFORM = "crossplatform"
    IMAGE = "image"


class Container(str, Enum):
    ZIP = "zip"
    CFB = "cfb"
    PDF = "pdf"
    OTHER = "other"


@dataclass(frozen=True)
class DocumentFormat:
    name: str
    code: int
    content_type: str
    family: FormatFamily
    container: Container = Container.OTHER
    readable: bool = True
    writable: bool = True

    @property
    def extension(self) -> str:
        return "." + self.name


_D, _P, _S, _X, _I = (
    FormatFamily.DOCUMENT,
    FormatFamily.PRESENTATION,
    FormatFamily.SPREADSHEET,
    FormatFamily.CROSSPLATFORM,
    FormatFamily.IMAGE,
)

_ALL = [
    DocumentFormat("docx", 0x0041, "application/vnd.openxmlformats-officedocument.wordprocessingml.document", _D, Container.ZIP),
    DocumentFormat("doc", 0x0042, "application/msword", _D, Container.CFB, writable=False),
    DocumentFormat("odt", 0x0043, "application/vnd.oasis.opendocument.text", _D, Container.ZIP),
    DocumentFormat("rtf", 0x0044, "application/rtf", _D),
    DocumentFormat("txt", 0x0045, "text/plain", _D),
    DocumentFormat("html", 0x0046, "text/html", _D),
    DocumentFormat("epub", 0x0048, "application/epub+zip", _D, Container.ZIP),
    DocumentFormat("docm", 0x004B, "application/vnd.ms-word.document.macroEnabled.12", _D, Container.ZIP, writable=False),
    DocumentFormat("pptx", 0x0081, "application/vnd.openxmlformats-officedocument.presentationml.presentation", _P, Container.ZIP),
    DocumentFormat("ppt", 0x0082, "application/vnd.ms-powerpoint", _P, Container.CFB, writable=False),
    DocumentFormat("odp", 0x0083, "application/vnd.oasis.opendocument.presentation", _P, Container.ZIP),
    DocumentFormat("ppsx", 0x0084, "application/vnd.openxmlformats-officedocument.presentationml.slideshow", _P, Container.ZIP),
    DocumentFormat("xlsx", 0x0101, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", _S, Container.ZIP),
    DocumentFormat("xls", 0x0102, "application/vnd.ms-excel", _S, Container.CFB, writable=False),
    DocumentFormat("ods", 0x0103, "application/vnd.oasis.opendocument.spreadsheet", _S, Container.ZIP),
    DocumentFormat("csv", 0x0104, "text/csv", _S),
    DocumentFormat("pdf", 0x0201, "application/pdf", _X, Container.PDF),
    DocumentFormat("pdfa", 0x0209, "application/pdf", _X, Container.PDF, readable=False),
    DocumentFormat("jpg", 0x0401, "image/jpeg", _I, readable=False),
    DocumentFormat("png", 0x0405, "image/png", _I, readable=False),
]

FORMATS: dict[str, DocumentFormat] = {f.name: f for f in _ALL}

_ALIASES = {"jpeg": "jpg", "htm": "html", "text": "txt", "pdf/a": "pdfa"}

# Raw file signatures used when neither a declared format nor an extension is available
_MAGIC: list[tuple[bytes, str]] = [
    (b"%PDF-", "pdf"),
    (b"{\\rtf", "rtf"),
]

ZIP_MAGIC = b"PK\x03\x04"
CFB_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def lookup(name: str | None) -> DocumentFormat | None:
    if not name:
        return None
    key = name.strip().lower().lstrip(".")
    key = _ALIASES.get(key, key)
    return FORMATS.get(key)


def from_filename(filename: str | None) -> DocumentFormat | None:
    if not filename:
        return None
    suffix = Path(filename).suffix
    return lookup(suffix) if suffix else None


def sniff(head: bytes) -> DocumentFormat | None:
    for magic, name in _MAGIC:
        if head.startswith(magic):
            return FORMATS[name]
    return None


def resolve_target(name: str) -> DocumentFormat:
    fmt = lookup(name)
    if fmt is None:
        raise ValidationError(f"unknown target format: {name!r}", reason="UNKNOWN_TARGET_FORMAT")
    if not fmt.writable:
        raise ValidationError(f"engine cannot produce {fmt.name}", reason="UNSUPPORTED_TARGET_FORMAT")
    return fmt


def resolve_source(declared: str | None, filename: str | None, head: bytes) -> DocumentFormat:
    """Pick the source format: declared, then file extension, then signature."""
    if declared:
        fmt = lookup(declared)
        if fmt is None:
            raise ValidationError(f"unknown source format: {declared!r}", reason="UNKNOWN_SOURCE_FORMAT")
    else:
        fmt = from_filename(filename) or sniff(head)
        if fmt is None:
            raise ValidationError("cannot infer the source format; declare it explicitly", reason="UNKNOWN_SOURCE_FORMAT")
    if not fmt.readable:
        raise ValidationError(f"engine cannot read {fmt.name}", reason="UNSUPPORTED_SOURCE_FORMAT")
    return fmt


def can_convert(source: DocumentFormat, target: DocumentFormat) -> bool:
    if not (source.readable and target.writable):
        return False
    if target.family in (FormatFamily.CROSSPLATFORM, FormatFamily.IMAGE):
        return True
    if source.family is FormatFamily.CROSSPLATFORM:
        return target.name == "docx"
    return source.family is target.family


def check_pair(source: DocumentFormat, target: DocumentFormat) -> None:
    if not can_convert(source, target):
        raise ValidationError(
            f"conversion from {source.name} to {target.name} is not supported",
            reason="UNSUPPORTED_CONVERSION",
        )


def supported_targets(source: DocumentFormat) -> list[str]:
    return sorted(f.name for f in _ALL if can_convert(source, f))


def conversion_matrix() -> dict[str, list[str]]:
    return {f.name: supported_targets(f) for f in _ALL if f.readable}
