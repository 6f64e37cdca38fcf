from dataclasses import dataclass
from typing import Mapping

from ..errors import ValidationError

CSV_DELIMITERS = {"tab": 1, "semicolon": 2, "colon": 3, "comma": 4, "space": 5}

# Engine code pages; only the common ones are accepted by name
TEXT_ENCODINGS = {"utf-8": 46, "utf8": 46, "utf-16le": 48, "utf-16be": 49, "windows-1252": 26}

KNOWN_PARAMS = frozenset({"password", "csv_delimiter", "txt_encoding", "thumbnail_width", "thumbnail_height"})


def _positive_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", reason="INVALID_PARAMS") from None
    if number <= 0:
        raise ValidationError(f"{name} must be positive", reason="INVALID_PARAMS")
    return number


@dataclass(frozen=True)
class ConversionParams:
    """Optional knobs forwarded to the engine's task configuration."""

    password: str | None = None
    csv_delimiter: int | None = None
    txt_encoding: int | None = None
    thumbnail_width: int | None = None
    thumbnail_height: int | None = None

    @classmethod
    def parse(cls, raw: Mapping[str, str] | None) -> "ConversionParams":
        if not raw:
            return cls()
        unknown = sorted(set(raw) - KNOWN_PARAMS)
        if unknown:
            raise ValidationError(f"unknown conversion parameters: {', '.join(unknown)}", reason="INVALID_PARAMS")

        delimiter = None
        if raw.get("csv_delimiter"):
            key = raw["csv_delimiter"].strip().lower()
            if key not in CSV_DELIMITERS:
                raise ValidationError(f"unsupported csv delimiter: {key!r}", reason="INVALID_PARAMS")
            delimiter = CSV_DELIMITERS[key]

        encoding = None
        if raw.get("txt_encoding"):
            key = raw["txt_encoding"].strip().lower()
            encoding = TEXT_ENCODINGS.get(key) or _positive_int("txt_encoding", key)

        return cls(
            password=raw.get("password") or None,
            csv_delimiter=delimiter,
            txt_encoding=encoding,
            thumbnail_width=_positive_int("thumbnail_width", raw["thumbnail_width"]) if raw.get("thumbnail_width") else None,
            thumbnail_height=_positive_int("thumbnail_height", raw["thumbnail_height"]) if raw.get("thumbnail_height") else None,
        )
