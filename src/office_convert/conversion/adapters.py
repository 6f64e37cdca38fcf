import base64
import json
import os
import secrets
import signal
import subprocess
import time
import uuid
from pathlib import Path
from typing import Mapping, Sequence
from xml.sax.saxutils import escape

from argon2.exceptions import InvalidHashError, VerificationError
from argon2.low_level import Type, hash_secret, verify_secret

from ..errors import InternalError
from ..formats import FormatFamily
from ..logging import get_logger
from ..settings import Settings
from .interfaces import (
    CancellationToken,
    ConversionEngine,
    EngineTask,
    ProcessOutcome,
    SecurityGateway,
    StorageGateway,
)

logger = get_logger(__name__)

POLL_INTERVAL_SEC = 0.1

# Exit codes documented for the x2t converter
ENGINE_ERROR_MESSAGES: dict[int, str] = {
    0x0001: "AVS_FILEUTILS_ERROR_UNKNOWN",
    0x0050: "AVS_FILEUTILS_ERROR_CONVERT",
    0x0051: "AVS_FILEUTILS_ERROR_CONVERT_DOWNLOAD",
    0x0052: "AVS_FILEUTILS_ERROR_CONVERT_UNKNOWN_FORMAT",
    0x0053: "AVS_FILEUTILS_ERROR_CONVERT_TIMEOUT",
    0x0054: "AVS_FILEUTILS_ERROR_CONVERT_READ_FILE",
    0x0055: "AVS_FILEUTILS_ERROR_CONVERT_DRM_UNSUPPORTED",
    0x0056: "AVS_FILEUTILS_ERROR_CONVERT_CORRUPTED",
    0x0057: "AVS_FILEUTILS_ERROR_CONVERT_LIBREOFFICE",
    0x0058: "AVS_FILEUTILS_ERROR_CONVERT_PARAMS",
    0x0059: "AVS_FILEUTILS_ERROR_CONVERT_NEED_PARAMS",
    0x005A: "AVS_FILEUTILS_ERROR_CONVERT_DRM",
    0x005B: "AVS_FILEUTILS_ERROR_CONVERT_PASSWORD",
    0x005C: "AVS_FILEUTILS_ERROR_CONVERT_ICU",
    0x005D: "AVS_FILEUTILS_ERROR_CONVERT_LIMITS",
    0x005E: "AVS_FILEUTILS_ERROR_CONVERT_ROWLIMITS",
    0x005F: "AVS_FILEUTILS_ERROR_CONVERT_DETECT",
    0x0060: "AVS_FILEUTILS_ERROR_CONVERT_CELLLIMITS",
}

# Image encoder ids used by the thumbnail renderer
_THUMBNAIL_FORMATS = {"jpg": 3, "png": 4}


def engine_error_message(code: int | None) -> str:
    if code is None:
        return "unknown error occurred"
    return ENGINE_ERROR_MESSAGES.get(code, "unknown error occurred")


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def run_process(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: CancellationToken | None = None,
) -> ProcessOutcome:
    """Run a command, killing it (and its children) on timeout or cancellation."""
    proc = subprocess.Popen(
        [str(a) for a in argv],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=dict(env) if env is not None else None,
        start_new_session=os.name == "posix",
    )
    deadline = None if timeout is None else time.monotonic() + timeout
    timed_out = cancelled = False
    while True:
        wait = POLL_INTERVAL_SEC
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            wait = min(wait, remaining)
        try:
            out, err = proc.communicate(timeout=wait)
            return ProcessOutcome(exit_code=proc.returncode, stdout=_decode(out), stderr=_decode(err))
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.cancelled:
            cancelled = True
            break

    _kill(proc)
    out, err = proc.communicate()
    logger.warning("process_killed", argv0=str(argv[0]), pid=proc.pid, timed_out=timed_out, cancelled=cancelled)
    return ProcessOutcome(
        exit_code=proc.returncode,
        stdout=_decode(out),
        stderr=_decode(err),
        timed_out=timed_out,
        cancelled=cancelled,
    )


def tool_env(lib_dir: Path) -> dict[str, str]:
    """Environment with ``lib_dir`` prepended to LD_LIBRARY_PATH.

    Some of the engine's shared libraries are only found this way.
    """
    env = dict(os.environ)
    current = env.get("LD_LIBRARY_PATH", "")
    env["LD_LIBRARY_PATH"] = f"{lib_dir}:{current}" if current else str(lib_dir)
    return env


def build_task_config(task: EngineTask, fonts_dir: Path, theme_dir: Path | None = None) -> str:
    """Render the engine's ``TaskQueueDataConvert`` XML for one conversion."""
    lines = [
        f"  <m_sFileFrom>{escape(str(task.input_path))}</m_sFileFrom>",
        f"  <m_sFileTo>{escape(str(task.output_path))}</m_sFileTo>",
        f"  <m_nFormatFrom>{task.source.code}</m_nFormatFrom>",
        f"  <m_nFormatTo>{task.target.code}</m_nFormatTo>",
        f"  <m_sFontDir>{escape(str(fonts_dir))}</m_sFontDir>",
    ]
    if theme_dir is not None:
        lines.append(f"  <m_sThemeDir>{escape(str(theme_dir))}</m_sThemeDir>")
    if task.target.name == "pdfa":
        lines.append("  <m_bIsPDFA>true</m_bIsPDFA>")
    params = task.params
    if params.password is not None:
        lines.append(f"  <m_sPassword>{escape(params.password)}</m_sPassword>")
    if params.txt_encoding is not None:
        lines.append(f"  <m_nCsvTxtEncoding>{params.txt_encoding}</m_nCsvTxtEncoding>")
    if params.csv_delimiter is not None:
        lines.append(f"  <m_nCsvDelimiter>{params.csv_delimiter}</m_nCsvDelimiter>")
    if task.target.family is FormatFamily.IMAGE:
        thumb = [
            f"    <format>{_THUMBNAIL_FORMATS[task.target.name]}</format>",
            "    <aspect>1</aspect>",
            "    <first>true</first>",
        ]
        if params.thumbnail_width is not None:
            thumb.append(f"    <width>{params.thumbnail_width}</width>")
        if params.thumbnail_height is not None:
            thumb.append(f"    <height>{params.thumbnail_height}</height>")
        lines += ["  <m_oThumbnail>", *thumb, "  </m_oThumbnail>"]

    return "\n".join(
        [
            '<?xml version="1.0" encoding="utf-8"?>',
            '<TaskQueueDataConvert xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"'
            ' xmlns:xsd="http://www.w3.org/2001/XMLSchema">',
            *lines,
            "</TaskQueueDataConvert>",
            "",
        ]
    )


class X2tEngine(ConversionEngine):
    """Runs the ONLYOFFICE ``x2t`` converter as a subprocess."""

    def __init__(
        self,
        x2t_bin: Path,
        fonts_dir: Path,
        *,
        theme_dir: Path | None = None,
        runner=run_process,
    ) -> None:
        self._bin = Path(x2t_bin)
        self._fonts_dir = Path(fonts_dir)
        self._theme_dir = theme_dir
        self._runner = runner

    @classmethod
    def from_settings(cls, settings: Settings, *, runner=run_process) -> "X2tEngine":
        return cls(settings.x2t_bin, settings.fonts_dir, theme_dir=settings.theme_source_dir, runner=runner)

    def _env(self) -> dict[str, str]:
        return tool_env(self._bin.parent)

    def convert(
        self,
        task: EngineTask,
        *,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ProcessOutcome:
        config_path = task.work_dir / "config.xml"
        try:
            config_path.write_text(build_task_config(task, self._fonts_dir, self._theme_dir), encoding="utf-8")
        except OSError as e:
            logger.error("config_write_failed", path=str(config_path), error=str(e))
            raise InternalError("failed to write config file", reason="WRITE_CONFIG_FILE") from e

        logger.debug("running_x2t", config=str(config_path))
        try:
            return self._runner([str(self._bin), str(config_path)], env=self._env(), timeout=timeout, cancel=cancel)
        except OSError as e:
            logger.error("x2t_launch_failed", bin=str(self._bin), error=str(e))
            raise InternalError("failed to run x2t", reason="RUN_X2T") from e

    def build_cache(self, *, timeout: float) -> ProcessOutcome:
        return self._runner([str(self._bin), "-create-js-cache"], env=self._env(), timeout=timeout)


class LocalStorage(StorageGateway):
    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()

    def job_dir(self, job_id: str) -> str:
        return str(self._base / "jobs" / job_id)

    def save_job(self, job: dict[str, object]) -> None:
        job_id = str(job["id"])  # type: ignore[index]
        p = Path(self.job_dir(job_id)) / "job.json"
        p.parent.mkdir(parents=True, exist_ok=True)
        # Readers must never observe a half-written record
        tmp = p.with_name(f".job.{uuid.uuid4().hex}.json")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(job, f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)

    def load_job(self, job_id: str) -> dict[str, object]:
        p = Path(self.job_dir(job_id)) / "job.json"
        if not p.exists():
            raise FileNotFoundError("job not found")
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)


class Argon2Security(SecurityGateway):
    """Capability tokens: 32 random bytes, stored only as an Argon2id PHC hash."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 1) -> None:
        self._time_cost = time_cost
        self._memory_cost = memory_cost
        self._parallelism = parallelism

    def new_token(self) -> str:
        raw = secrets.token_bytes(32)
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    def hash_token(self, token: str) -> str:
        phc_bytes = hash_secret(
            secret=self._b64url_to_bytes(token),
            salt=secrets.token_bytes(16),
            time_cost=self._time_cost,
            memory_cost=self._memory_cost,
            parallelism=self._parallelism,
            hash_len=32,
            type=Type.ID,
        )
        return phc_bytes.decode("utf-8")

    def verify(self, phc_hash: str, token: str) -> bool:
        if not phc_hash.startswith("$argon2"):
            return False
        try:
            return verify_secret(phc_hash.encode("utf-8"), self._b64url_to_bytes(token), Type.ID)
        except (VerificationError, InvalidHashError, ValueError):
            return False

    @staticmethod
    def _b64url_to_bytes(token: str) -> bytes:
        pad = "=" * (-len(token) % 4)
        return base64.urlsafe_b64decode(token + pad)
