import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from ..formats import DocumentFormat
from .params import ConversionParams


class CancellationToken:
    """Caller-owned flag that asks an in-flight engine run to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not (self.timed_out or self.cancelled)


@dataclass(frozen=True)
class EngineTask:
    input_path: Path
    output_path: Path
    work_dir: Path
    source: DocumentFormat
    target: DocumentFormat
    params: ConversionParams = field(default_factory=ConversionParams)


class ProcessRunner(Protocol):
    def __call__(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProcessOutcome:
        """Run a command to completion, timeout or cancellation.

        Raises OSError when the command cannot be started at all.
        """


class ConversionEngine(Protocol):
    def convert(
        self,
        task: EngineTask,
        *,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ProcessOutcome:
        """Convert ``task.input_path`` into ``task.output_path`` synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """

    def build_cache(self, *, timeout: float) -> ProcessOutcome:
        ...


class StorageGateway(Protocol):
    def job_dir(self, job_id: str) -> str:
        ...

    def save_job(self, job: dict[str, object]) -> None:
        ...

    def load_job(self, job_id: str) -> dict[str, object]:
        ...


class SecurityGateway(Protocol):
    def new_token(self) -> str:
        ...

    def hash_token(self, token: str) -> str:
        ...

    def verify(self, phc_hash: str, token: str) -> bool:
        ...
