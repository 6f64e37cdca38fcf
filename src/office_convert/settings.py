import math
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import StartupFatalError

DEFAULT_INSTALL_DIR = "/var/www/onlyoffice/documentserver"
DEFAULT_MAX_INPUT_SIZE_BYTES = 100 * 1024 * 1024
DEFAULT_ENGINE_TIMEOUT_SEC = 120.0

X2T_BIN = "x2t.exe" if sys.platform == "win32" else "x2t"

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, resolved once at startup.

    Instances are immutable and shared by reference between the preparation
    stage and every request handler.
    """

    install_dir: Path
    x2t_dir: Path
    fonts_dir: Path
    font_source_dir: Path
    theme_source_dir: Path
    temp_dir: Path
    data_dir: Path
    max_input_size_bytes: int = DEFAULT_MAX_INPUT_SIZE_BYTES
    engine_timeout_sec: float = DEFAULT_ENGINE_TIMEOUT_SEC
    use_system_fonts: bool = True
    use_system_user_fonts: bool = False
    themes_fatal: bool = True
    prepare_on_startup: bool = False
    workers: int = 4

    def __post_init__(self) -> None:
        if self.max_input_size_bytes <= 0:
            raise StartupFatalError("max input size must be a positive number of bytes")
        if not math.isfinite(self.engine_timeout_sec) or self.engine_timeout_sec <= 0:
            raise StartupFatalError("engine timeout must be a positive finite number of seconds")
        if self.workers <= 0:
            raise StartupFatalError("worker count must be positive")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        install_dir = Path(env.get("DOCUMENTSERVER_DIR") or DEFAULT_INSTALL_DIR)
        x2t_dir = Path(env.get("X2T_PATH") or install_dir / "server" / "FileConverter" / "bin")
        fonts_dir = Path(env.get("X2T_FONTS_PATH") or install_dir / "fonts")
        font_source_dir = Path(env.get("FONT_SOURCE_DIR") or install_dir / "core-fonts")
        theme_source_dir = Path(env.get("THEME_SOURCE_DIR") or install_dir / "sdkjs" / "slide" / "themes")
        temp_dir = Path(env.get("CONVERT_TEMP_DIR") or Path(tempfile.gettempdir()) / "onlyoffice-convert-server")
        data_dir = Path(env.get("DATA_DIR") or "./data")

        try:
            max_input = int(env.get("MAX_INPUT_SIZE_BYTES") or DEFAULT_MAX_INPUT_SIZE_BYTES)
            timeout = float(env.get("ENGINE_TIMEOUT_SEC") or DEFAULT_ENGINE_TIMEOUT_SEC)
            workers = int(env.get("WORKERS") or 4)
        except ValueError as e:
            raise StartupFatalError(f"invalid numeric configuration: {e}") from e

        return cls(
            install_dir=install_dir.absolute(),
            x2t_dir=x2t_dir.absolute(),
            fonts_dir=fonts_dir.absolute(),
            font_source_dir=font_source_dir.absolute(),
            theme_source_dir=theme_source_dir.absolute(),
            temp_dir=temp_dir.absolute(),
            data_dir=data_dir.resolve(),
            max_input_size_bytes=max_input,
            engine_timeout_sec=timeout,
            use_system_fonts=_flag(env.get("USE_SYSTEM_FONTS"), True),
            use_system_user_fonts=_flag(env.get("USE_SYSTEM_USER_FONTS"), False),
            themes_fatal=_flag(env.get("THEMES_FATAL"), True),
            prepare_on_startup=_flag(env.get("PREPARE_ON_STARTUP"), False),
            workers=workers,
        )

    # Paths derived from the install layout

    @property
    def x2t_bin(self) -> Path:
        return self.x2t_dir / X2T_BIN

    @property
    def tools_dir(self) -> Path:
        return self.install_dir / "server" / "tools"

    @property
    def allfonts_web_path(self) -> Path:
        return self.install_dir / "sdkjs" / "common" / "AllFonts.js"

    @property
    def allfonts_path(self) -> Path:
        return self.x2t_dir / "AllFonts.js"

    @property
    def font_selection_path(self) -> Path:
        return self.x2t_dir / "font_selection.bin"

    @property
    def images_dir(self) -> Path:
        return self.install_dir / "sdkjs" / "common" / "Images"

    def manifest_paths(self) -> tuple[Path, ...]:
        return (self.allfonts_web_path, self.allfonts_path, self.font_selection_path)
