import stat
import sys
import threading
import time
from pathlib import Path

import pytest

from office_convert.conversion.adapters import Argon2Security
from office_convert.conversion.interfaces import CancellationToken, EngineTask, ProcessOutcome
from office_convert.settings import Settings

FAKE_PDF_PREFIX = b"%PDF-fake\n"

# Stand-in for the x2t binary: reads the task XML and copies input to output
FAKE_X2T = """
import sys
import time
import xml.etree.ElementTree as ET

MODE = {mode!r}

if sys.argv[1] == "-create-js-cache":
    sys.exit(0 if MODE != "fail" else 1)

root = ET.parse(sys.argv[1]).getroot()
src = root.findtext("m_sFileFrom")
dst = root.findtext("m_sFileTo")
if MODE == "sleep":
    time.sleep(60)
if MODE == "fail":
    sys.stderr.write("x2t: cannot open document\\n")
    sys.exit(86)
with open(src, "rb") as f_in, open(dst, "wb") as f_out:
    f_out.write(b"%PDF-fake\\n" + f_in.read())
"""


def make_executable(path: Path, source: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n{source}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def fake_x2t(bin_dir: Path, mode: str = "ok") -> Path:
    return make_executable(bin_dir / "x2t", FAKE_X2T.format(mode=mode))


def leftovers(settings: Settings) -> list[Path]:
    if not settings.temp_dir.exists():
        return []
    return list(settings.temp_dir.iterdir())


class FakeEngine:
    """In-process engine with scripted outcomes and an invocation counter."""

    def __init__(
        self,
        *,
        exit_code: int = 0,
        stderr: str = "",
        delay: float = 0.0,
        write_output: bool = True,
        cache_exit_code: int = 0,
        error: Exception | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.delay = delay
        self.write_output = write_output
        self.cache_exit_code = cache_exit_code
        self.error = error
        self.calls = 0
        self.cache_builds = 0
        self.cancellations = 0
        self.tasks: list[EngineTask] = []
        self._lock = threading.Lock()

    def convert(self, task: EngineTask, *, timeout: float, cancel: CancellationToken | None = None) -> ProcessOutcome:
        with self._lock:
            self.calls += 1
            self.tasks.append(task)
        if self.error is not None:
            raise self.error
        if self.delay:
            limit = min(self.delay, timeout)
            if cancel is not None:
                if cancel.wait(limit):
                    with self._lock:
                        self.cancellations += 1
                    return ProcessOutcome(exit_code=None, cancelled=True)
            else:
                time.sleep(limit)
            if self.delay > timeout:
                return ProcessOutcome(exit_code=None, timed_out=True)
        if self.exit_code == 0 and self.write_output:
            task.output_path.write_bytes(FAKE_PDF_PREFIX + task.input_path.read_bytes())
        return ProcessOutcome(exit_code=self.exit_code, stderr=self.stderr)

    def build_cache(self, *, timeout: float) -> ProcessOutcome:
        self.cache_builds += 1
        return ProcessOutcome(exit_code=self.cache_exit_code)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    install = tmp_path / "documentserver"
    return Settings(
        install_dir=install,
        x2t_dir=install / "server" / "FileConverter" / "bin",
        fonts_dir=install / "fonts",
        font_source_dir=tmp_path / "core-fonts",
        theme_source_dir=tmp_path / "themes",
        temp_dir=tmp_path / "staging",
        data_dir=tmp_path / "data",
        max_input_size_bytes=1024 * 1024,
        engine_timeout_sec=30.0,
        workers=2,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def security() -> Argon2Security:
    # Cheap parameters keep the suite fast
    return Argon2Security(time_cost=1, memory_cost=8)


@pytest.fixture
def sample_text() -> bytes:
    line = b"The quick brown fox jumps over the lazy dog.\n"
    return (line * (10 * 1024 // len(line) + 1))[: 10 * 1024]
