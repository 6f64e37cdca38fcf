import contextlib
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Mapping, Union

from ..errors import (
    ConversionCancelledError,
    ConversionError,
    EngineError,
    EngineTimeoutError,
    InternalError,
    ResourceLimitError,
    ValidationError,
)
from ..formats import DocumentFormat, check_pair, from_filename, resolve_source, resolve_target
from ..logging import get_logger
from ..settings import Settings
from .adapters import engine_error_message
from .inspection import INSPECT_BYTES, FileCondition, file_condition, read_head
from .interfaces import CancellationToken, ConversionEngine, EngineTask, ProcessOutcome
from .params import ConversionParams

logger = get_logger(__name__)

CHUNK = 1024 * 1024
MAX_DIAGNOSTIC_CHARS = 8192

Source = Union[bytes, Path, BinaryIO]


@dataclass(frozen=True)
class ConversionRequest:
    source: Source
    target_format: str
    source_format: str | None = None
    filename: str | None = None
    output_path: Path | None = None
    params: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversionArtifact:
    format: DocumentFormat
    filename: str
    size: int
    data: bytes | None = None
    path: Path | None = None

    @property
    def content_type(self) -> str:
        return self.format.content_type

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        assert self.path is not None
        return self.path.read_bytes()


@dataclass(frozen=True)
class ConversionResult:
    artifact: ConversionArtifact | None = None
    error: ConversionError | None = None

    @property
    def ok(self) -> bool:
        return self.artifact is not None


@dataclass(frozen=True)
class _Staging:
    work_dir: Path
    input_path: Path
    output_path: Path


class ConversionService:
    """Converts one document per call through the configured engine.

    Calls are independent and may run concurrently from several threads;
    each one stages its files under a private directory that is removed
    before the call returns.
    """

    def __init__(self, settings: Settings, engine: ConversionEngine) -> None:
        self._settings = settings
        self._engine = engine

    @property
    def settings(self) -> Settings:
        return self._settings

    def convert(self, request: ConversionRequest, *, cancel: CancellationToken | None = None) -> ConversionResult:
        request_id = uuid.uuid4().hex
        log = logger.bind(request_id=request_id, target=request.target_format)
        work_dir = self._settings.temp_dir / f"job_{request_id}"
        try:
            artifact = self._convert(request, work_dir, cancel, log)
        except ConversionError as e:
            log.warning("conversion_failed", kind=e.kind, reason=e.reason, message=e.message, engine_code=e.engine_code)
            return ConversionResult(error=e)
        except Exception as e:
            log.exception("conversion_crashed")
            return ConversionResult(error=InternalError(f"unexpected failure: {e}", reason="UNEXPECTED"))
        finally:
            self._cleanup(work_dir, log)
        log.info("conversion_succeeded", format=artifact.format.name, size=artifact.size)
        return ConversionResult(artifact=artifact)

    def _convert(self, request, work_dir: Path, cancel, log) -> ConversionArtifact:
        target = resolve_target(request.target_format)
        params = ConversionParams.parse(request.params)
        filename = request.filename
        if filename is None and isinstance(request.source, Path):
            filename = request.source.name

        # Only the signature sniff needs staged bytes; everything else is rejected up front
        source = None
        if request.source_format or from_filename(filename):
            source = resolve_source(request.source_format, filename, b"")
            check_pair(source, target)

        if isinstance(request.source, Path):
            if request.output_path is not None and Path(request.output_path).resolve() == request.source.resolve():
                raise ValidationError("output path must differ from the input", reason="OUTPUT_IS_INPUT")
            self._check_path_size(request.source)

        try:
            work_dir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise InternalError("failed to create staging directory", reason="STAGE_INPUT") from e

        staged_input = work_dir / "input"
        self._stage(request.source, staged_input)
        if source is None:
            source = resolve_source(None, None, read_head(staged_input, INSPECT_BYTES))
            check_pair(source, target)

        staging = _Staging(
            work_dir=work_dir,
            input_path=staged_input.rename(work_dir / f"input{source.extension}"),
            output_path=work_dir / f"output{target.extension}",
        )
        task = EngineTask(
            input_path=staging.input_path,
            output_path=staging.output_path,
            work_dir=work_dir,
            source=source,
            target=target,
            params=params,
        )
        log.info("conversion_started", source=source.name, size=staging.input_path.stat().st_size)
        outcome = self._engine.convert(task, timeout=self._settings.engine_timeout_sec, cancel=cancel)
        self._check_outcome(outcome, task)
        return self._publish(staging.output_path, target, filename, request.output_path)

    # Staging

    def _check_path_size(self, path: Path) -> None:
        try:
            size = path.stat().st_size
        except OSError as e:
            raise InternalError(f"cannot read input file: {e}", reason="STAGE_INPUT") from e
        if size > self._settings.max_input_size_bytes:
            raise self._too_large()

    def _too_large(self) -> ResourceLimitError:
        limit = self._settings.max_input_size_bytes
        return ResourceLimitError(f"input exceeds {limit} bytes", reason="INPUT_TOO_LARGE")

    def _stage(self, source: Source, dest: Path) -> None:
        limit = self._settings.max_input_size_bytes
        if isinstance(source, (bytes, bytearray, memoryview)):
            if len(source) > limit:
                raise self._too_large()
            try:
                dest.write_bytes(bytes(source))
            except OSError as e:
                raise InternalError("failed to stage input", reason="STAGE_INPUT") from e
            return

        try:
            reader = source.open("rb") if isinstance(source, Path) else None
        except OSError as e:
            raise InternalError(f"cannot read input file: {e}", reason="STAGE_INPUT") from e
        stream = reader if reader is not None else source
        try:
            size_bytes = 0
            with dest.open("wb") as f_out:
                while True:
                    chunk = stream.read(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > limit:
                        raise self._too_large()
                    f_out.write(chunk)
        except OSError as e:
            raise InternalError("failed to stage input", reason="STAGE_INPUT") from e
        finally:
            if reader is not None:
                reader.close()

    # Engine outcome

    def _check_outcome(self, outcome: ProcessOutcome, task: EngineTask) -> None:
        if outcome.cancelled:
            raise ConversionCancelledError("conversion cancelled by caller", reason="CANCELLED")
        if outcome.timed_out:
            limit = self._settings.engine_timeout_sec
            raise EngineTimeoutError(f"engine did not finish within {limit:g}s", reason="ENGINE_TIMEOUT")
        if outcome.exit_code != 0:
            raise self._engine_failure(outcome, task)
        if not task.output_path.exists() or task.output_path.stat().st_size == 0:
            raise EngineError(
                "engine reported success but produced no output",
                reason="NO_OUTPUT",
                engine_code=outcome.exit_code,
                diagnostic=self._excerpt(outcome.stderr),
            )

    def _engine_failure(self, outcome: ProcessOutcome, task: EngineTask) -> EngineError:
        code = outcome.exit_code
        diagnostic = self._excerpt(outcome.stderr)

        # The engine crashes this way on password protected files it cannot open
        if "std::out_of_range" in outcome.stderr:
            return EngineError("file is encrypted", reason="FILE_LIKELY_ENCRYPTED", engine_code=code, diagnostic=diagnostic)

        try:
            condition = file_condition(read_head(task.input_path), task.source)
        except OSError:
            condition = FileCondition.UNKNOWN
        if condition is FileCondition.LIKELY_ENCRYPTED:
            return EngineError("file is encrypted", reason="FILE_LIKELY_ENCRYPTED", engine_code=code, diagnostic=diagnostic)
        if condition is FileCondition.LIKELY_CORRUPTED:
            return EngineError("file is corrupted", reason="FILE_LIKELY_CORRUPTED", engine_code=code, diagnostic=diagnostic)
        return EngineError(engine_error_message(code), engine_code=code, diagnostic=diagnostic)

    @staticmethod
    def _excerpt(stderr: str) -> str:
        if len(stderr) <= MAX_DIAGNOSTIC_CHARS:
            return stderr
        return stderr[-MAX_DIAGNOSTIC_CHARS:]

    # Output

    def _publish(
        self,
        staged: Path,
        target: DocumentFormat,
        filename: str | None,
        dest: Path | None,
    ) -> ConversionArtifact:
        stem = Path(filename).stem if filename else "document"
        out_name = f"{stem}{target.extension}"
        size = staged.stat().st_size
        if dest is None:
            return ConversionArtifact(format=target, filename=out_name, size=size, data=staged.read_bytes())

        dest = Path(dest)
        # Copy next to the destination first so the final rename stays on one filesystem
        part = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(staged, part)
            os.replace(part, dest)
        except OSError as e:
            with contextlib.suppress(OSError):
                part.unlink()
            raise InternalError(f"failed to publish output: {e}", reason="PUBLISH_OUTPUT") from e
        return ConversionArtifact(format=target, filename=out_name, size=size, path=dest)

    @staticmethod
    def _cleanup(work_dir: Path, log) -> None:
        if not work_dir.exists():
            return
        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            log.error("cleanup_failed", path=str(work_dir), error=str(e))
