"""
office-convert command line.

Usage:
    office-convert prepare                      # generate fonts, themes and engine cache
    office-convert convert report.docx --to pdf -o report.pdf
    office-convert serve --port 8080

Configuration comes from the same environment variables as the service
(DOCUMENTSERVER_DIR, X2T_PATH, FONT_SOURCE_DIR, ENGINE_TIMEOUT_SEC, ...);
flags override them for a single run.
"""

import argparse
import dataclasses
import json
import os
import sys
from pathlib import Path

from .conversion import ConversionRequest, ConversionService
from .conversion.adapters import X2tEngine
from .errors import ConversionError, StartupFatalError, ValidationError
from .formats import conversion_matrix
from .logging import get_logger, setup_logging
from .preparation import EnvironmentPreparer
from .settings import Settings

logger = get_logger(__name__)

EXIT_FAILURE = 1
EXIT_CONVERSION_FAILED = 2


def _print_error(error: ConversionError) -> None:
    print(json.dumps(error.to_dict(), indent=2), file=sys.stderr)


def cmd_prepare(args: argparse.Namespace, settings: Settings) -> int:
    overrides: dict[str, object] = {}
    if args.font_dir:
        overrides["font_source_dir"] = Path(args.font_dir).absolute()
    if args.theme_dir:
        overrides["theme_source_dir"] = Path(args.theme_dir).absolute()
    if args.no_system_fonts:
        overrides["use_system_fonts"] = False
    if args.themes_optional:
        overrides["themes_fatal"] = False
    settings = dataclasses.replace(settings, **overrides)

    preparer = EnvironmentPreparer(settings)
    try:
        if args.skip_cache:
            preparer.generate_font_artifacts()
            preparer.generate_theme_artifacts()
        else:
            report = preparer.run()
            for path, digest in sorted(report.artifact_digests.items()):
                print(f"{digest}  {path}")
    except StartupFatalError as e:
        _print_error(e)
        return EXIT_FAILURE
    return 0


def cmd_convert(args: argparse.Namespace, settings: Settings) -> int:
    if args.timeout is not None:
        try:
            settings = dataclasses.replace(settings, engine_timeout_sec=args.timeout)
        except StartupFatalError as e:
            _print_error(e)
            return EXIT_FAILURE
    source = Path(args.input)
    output = Path(args.output) if args.output else source.with_suffix("." + args.to.lower().lstrip("."))
    if output.resolve() == source.resolve():
        if args.output:
            _print_error(ValidationError("output path must differ from the input", reason="OUTPUT_IS_INPUT"))
            return EXIT_CONVERSION_FAILED
        # Same-format conversions would otherwise replace the input
        output = source.with_name(f"{source.stem}.converted{source.suffix}")
    params = dict(p.split("=", 1) for p in args.param)

    service = ConversionService(settings, X2tEngine.from_settings(settings))
    result = service.convert(
        ConversionRequest(
            source=source,
            target_format=args.to,
            source_format=args.source_format,
            output_path=output,
            params=params,
        )
    )
    if not result.ok:
        _print_error(result.error)
        return EXIT_CONVERSION_FAILED
    print(result.artifact.path)
    return 0


def cmd_formats(args: argparse.Namespace, settings: Settings) -> int:
    for source, targets in sorted(conversion_matrix().items()):
        print(f"{source:>6} -> {', '.join(targets)}")
    return 0


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    uvicorn.run(
        "office_convert.webapi:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return 0


def _param(value: str) -> str:
    if "=" not in value:
        raise argparse.ArgumentTypeError("expected KEY=VALUE")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="office-convert",
        description="Prepare the conversion engine environment and convert office documents.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("prepare", help="Generate font, theme and engine cache artifacts")
    p.add_argument("--font-dir", help="Custom font source directory")
    p.add_argument("--theme-dir", help="Presentation theme source directory")
    p.add_argument("--no-system-fonts", action="store_true", help="Do not index system fonts (ignored when no custom fonts exist)")
    p.add_argument("--themes-optional", action="store_true", help="Treat theme generation failures as warnings")
    p.add_argument("--skip-cache", action="store_true", help="Do not build the engine cache")
    p.set_defaults(func=cmd_prepare)

    c = sub.add_parser("convert", help="Convert a single document")
    c.add_argument("input", help="Source document")
    c.add_argument("--to", required=True, help="Target format, e.g. pdf, docx, png")
    c.add_argument("--from", dest="source_format", default=None, help="Source format when it cannot be inferred")
    c.add_argument("-o", "--output", default=None, help="Output path (default: input path with the target extension)")
    c.add_argument("--timeout", type=float, default=None, help="Engine timeout in seconds")
    c.add_argument("--param", action="append", default=[], type=_param, metavar="KEY=VALUE", help="Conversion parameter (repeatable)")
    c.set_defaults(func=cmd_convert)

    f = sub.add_parser("formats", help="List supported conversions")
    f.set_defaults(func=cmd_formats)

    s = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    s.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    s.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    s.add_argument("--reload", action="store_true")
    s.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, json_logs=args.json_logs or None)
    try:
        settings = Settings.from_env()
    except StartupFatalError as e:
        _print_error(e)
        return EXIT_FAILURE
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
