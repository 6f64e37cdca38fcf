"""Cold-start environment preparation.

Generates the derived artifacts the engine looks up on every conversion:
the font manifests and thumbnails, the presentation theme previews and the
engine's script cache. The stage is sequential, runs before the first
request is served and can be repeated safely; identical inputs give
identical artifacts.
"""

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .conversion.adapters import X2tEngine, run_process, tool_env
from .conversion.interfaces import ConversionEngine, ProcessRunner
from .errors import StartupFatalError
from .logging import get_logger
from .settings import Settings

logger = get_logger(__name__)

FONT_EXTENSIONS = frozenset({".ttf", ".ttc", ".otf", ".pfb", ".pfa", ".woff", ".woff2"})
THEME_EXTENSIONS = frozenset({".pptx", ".thmx"})

TOOL_TIMEOUT_SEC = 600.0

# Longest names first so "semibold" wins over "bold"
_WEIGHTS = [
    ("extralight", 200), ("ultralight", 200), ("semibold", 600), ("demibold", 600),
    ("extrabold", 800), ("ultrabold", 800), ("thin", 100), ("light", 300),
    ("regular", 400), ("medium", 500), ("bold", 700), ("black", 900), ("heavy", 900),
]


@dataclass(frozen=True)
class FontFile:
    path: Path
    family: str
    style: str
    weight: int

    @classmethod
    def from_path(cls, path: Path) -> "FontFile":
        """Derive family, style and weight from names like ``Family-BoldItalic.ttf``."""
        family, _, modifiers = path.stem.partition("-")
        mods = modifiers.lower()
        italic = "italic" in mods or "oblique" in mods
        weight = 400
        for name, value in _WEIGHTS:
            if name in mods:
                weight = value
                break
        bold = weight >= 600
        style = "-".join(s for s, on in (("bold", bold), ("italic", italic)) if on) or "normal"
        family = re.sub(r"(?<=[a-z])(?=[A-Z])", " ", family).strip() or path.stem
        return cls(path=path, family=family, style=style, weight=weight)


@dataclass(frozen=True)
class FontSet:
    directory: Path
    fonts: tuple[FontFile, ...] = ()

    @classmethod
    def scan(cls, directory: Path) -> "FontSet":
        if not directory.is_dir():
            return cls(directory=directory)
        paths = sorted(p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in FONT_EXTENSIONS)
        return cls(directory=directory, fonts=tuple(FontFile.from_path(p) for p in paths))

    @property
    def is_empty(self) -> bool:
        return not self.fonts

    def families(self) -> list[str]:
        return sorted({f.family for f in self.fonts})


@dataclass(frozen=True)
class ThemeVariant:
    postfix: str | None = None
    size: tuple[int, int] | None = None

    @property
    def key(self) -> str:
        return self.postfix or "default"

    def tool_args(self) -> list[str]:
        args = []
        if self.postfix:
            args.append(f"--postfix={self.postfix}")
        if self.size:
            args.append(f"--params={self.size[0]},{self.size[1]}")
        return args


THEME_VARIANTS: tuple[ThemeVariant, ...] = (
    ThemeVariant(),
    ThemeVariant("ios", (280, 224)),
    ThemeVariant("android", (280, 224)),
)


@dataclass(frozen=True)
class ThemeSet:
    directory: Path
    themes: tuple[str, ...] = ()

    @classmethod
    def scan(cls, directory: Path) -> "ThemeSet":
        if not directory.is_dir():
            return cls(directory=directory)
        names = sorted(
            p.stem for p in directory.iterdir()
            if p.is_dir() or p.suffix.lower() in THEME_EXTENSIONS
        )
        return cls(directory=directory, themes=tuple(names))


@dataclass(frozen=True)
class VariantFailure:
    variant: str
    exit_code: int | None
    diagnostic: str


@dataclass
class PreparationReport:
    fonts: FontSet
    themes: ThemeSet
    theme_failures: list[VariantFailure] = field(default_factory=list)
    cache_warmed: bool = False
    artifact_digests: dict[str, str] = field(default_factory=dict)


def _digest(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


class EnvironmentPreparer:
    """Runs the vendor generator tools in dependency order.

    Font artifacts come first because the theme renderer and the engine
    cache both read the font manifest.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runner: ProcessRunner = run_process,
        engine: ConversionEngine | None = None,
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._engine = engine if engine is not None else X2tEngine.from_settings(settings, runner=runner)

    def _tool(self, name: str) -> Path:
        path = self._settings.tools_dir / name
        if not path.is_file():
            raise StartupFatalError(f"generator tool not found: {path}", reason="TOOL_MISSING")
        return path

    def _run_tool(self, argv: Sequence[str]):
        try:
            return self._runner(argv, env=tool_env(self._settings.x2t_dir), timeout=TOOL_TIMEOUT_SEC)
        except OSError as e:
            raise StartupFatalError(f"failed to launch {argv[0]}: {e}", reason="TOOL_LAUNCH") from e

    def _require_font_manifest(self) -> None:
        missing = [str(p) for p in self._settings.manifest_paths() if not p.is_file()]
        if missing:
            raise StartupFatalError(
                f"font manifest missing, generate font artifacts first: {', '.join(missing)}",
                reason="FONT_MANIFEST_MISSING",
            )

    def generate_font_artifacts(self, font_source_dir: Path | None = None) -> FontSet:
        s = self._settings
        source_dir = font_source_dir or s.font_source_dir
        fonts = FontSet.scan(source_dir)
        use_system = s.use_system_fonts or fonts.is_empty
        if fonts.is_empty:
            logger.info("no_custom_fonts", directory=str(source_dir))

        tool = self._tool("allfontsgen")
        for d in (s.images_dir, s.fonts_dir, s.allfonts_web_path.parent, s.allfonts_path.parent):
            d.mkdir(parents=True, exist_ok=True)

        argv = [
            str(tool),
            f"--input={source_dir}",
            f"--allfonts-web={s.allfonts_web_path}",
            f"--allfonts={s.allfonts_path}",
            f"--images={s.images_dir}",
            f"--selection={s.font_selection_path}",
            f"--output-web={s.fonts_dir}",
            f"--use-system={'true' if use_system else 'false'}",
            f"--use-system-user-fonts={'true' if s.use_system_user_fonts else 'false'}",
        ]
        outcome = self._run_tool(argv)
        if not outcome.ok:
            raise StartupFatalError(
                "font generation failed",
                reason="FONT_GENERATION",
                engine_code=outcome.exit_code,
                diagnostic=outcome.stderr,
            )
        self._require_font_manifest()
        logger.info("fonts_generated", custom_fonts=len(fonts.fonts), families=len(fonts.families()), use_system=use_system)
        return fonts

    def generate_theme_artifacts(self, variants: Sequence[ThemeVariant] = THEME_VARIANTS) -> list[VariantFailure]:
        """Render theme previews for every variant, attempting all of them."""
        s = self._settings
        self._require_font_manifest()
        tool = self._tool("allthemesgen")
        s.images_dir.mkdir(parents=True, exist_ok=True)

        failures: list[VariantFailure] = []
        for variant in variants:
            argv = [
                str(tool),
                f"--converter-dir={s.x2t_dir}",
                f"--src={s.theme_source_dir}",
                f"--output={s.images_dir}",
                *variant.tool_args(),
            ]
            try:
                outcome = self._run_tool(argv)
            except StartupFatalError as e:
                failures.append(VariantFailure(variant.key, None, e.message))
                continue
            if outcome.ok:
                logger.info("themes_generated", variant=variant.key)
            else:
                logger.error("theme_generation_failed", variant=variant.key, exit_code=outcome.exit_code, stderr=outcome.stderr)
                failures.append(VariantFailure(variant.key, outcome.exit_code, outcome.stderr))

        if failures:
            names = ", ".join(f.variant for f in failures)
            if s.themes_fatal:
                raise StartupFatalError(
                    f"theme generation failed for: {names}",
                    reason="THEME_GENERATION",
                    engine_code=failures[0].exit_code,
                    diagnostic=failures[0].diagnostic,
                )
            logger.warning("themes_incomplete", failed=names)
        return failures

    def warm_conversion_cache(self) -> bool:
        """Build the engine cache. Failure only costs speed, so it is never fatal."""
        self._require_font_manifest()
        try:
            outcome = self._engine.build_cache(timeout=TOOL_TIMEOUT_SEC)
        except OSError as e:
            logger.warning("cache_warm_failed", error=str(e))
            return False
        if not outcome.ok:
            logger.warning("cache_warm_failed", exit_code=outcome.exit_code, timed_out=outcome.timed_out, stderr=outcome.stderr)
            return False
        logger.info("cache_warmed")
        return True

    def run(self) -> PreparationReport:
        logger.info("preparation_started", install_dir=str(self._settings.install_dir))
        fonts = self.generate_font_artifacts()
        themes = ThemeSet.scan(self._settings.theme_source_dir)
        failures = self.generate_theme_artifacts()
        warmed = self.warm_conversion_cache()
        digests = {str(p): _digest(p) for p in self._settings.manifest_paths()}
        logger.info("preparation_finished", themes=len(themes.themes), theme_failures=len(failures), cache_warmed=warmed)
        return PreparationReport(
            fonts=fonts,
            themes=themes,
            theme_failures=failures,
            cache_warmed=warmed,
            artifact_digests=digests,
        )
