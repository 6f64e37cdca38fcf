"""Guess why the engine rejected a file by looking at its first bytes."""

from enum import Enum
from pathlib import Path

from ..formats import CFB_MAGIC, ZIP_MAGIC, Container, DocumentFormat

INSPECT_BYTES = 32 * 1024

# Encrypted OOXML packages are stored in a compound file with this stream
_ENCRYPTION_INFO = "EncryptionInfo".encode("utf-16-le")


class FileCondition(str, Enum):
    OK = "ok"
    LIKELY_ENCRYPTED = "likely_encrypted"
    LIKELY_CORRUPTED = "likely_corrupted"
    UNKNOWN = "unknown"


def read_head(path: Path, size: int = INSPECT_BYTES) -> bytes:
    with path.open("rb") as f:
        return f.read(size)


def file_condition(head: bytes, fmt: DocumentFormat) -> FileCondition:
    if not head:
        return FileCondition.LIKELY_CORRUPTED

    if fmt.container is Container.ZIP:
        if head.startswith(ZIP_MAGIC):
            return FileCondition.OK
        if head.startswith(CFB_MAGIC):
            return FileCondition.LIKELY_ENCRYPTED if _ENCRYPTION_INFO in head else FileCondition.LIKELY_CORRUPTED
        return FileCondition.LIKELY_CORRUPTED

    if fmt.container is Container.CFB:
        return FileCondition.OK if head.startswith(CFB_MAGIC) else FileCondition.LIKELY_CORRUPTED

    if fmt.container is Container.PDF:
        if not head.startswith(b"%PDF-"):
            return FileCondition.LIKELY_CORRUPTED
        return FileCondition.LIKELY_ENCRYPTED if b"/Encrypt" in head else FileCondition.OK

    return FileCondition.UNKNOWN
