import asyncio
import hashlib
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from ..errors import ConversionError, InternalError, ResourceLimitError
from ..formats import check_pair, from_filename, resolve_source, resolve_target
from ..logging import get_logger
from .interfaces import CancellationToken, SecurityGateway, StorageGateway
from .params import ConversionParams
from .service import CHUNK, ConversionRequest, ConversionService

logger = get_logger(__name__)

# Never written to the job record
SECRET_PARAMS = frozenset({"password"})


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobRecord:
    data: dict[str, object]

    @property
    def id(self) -> str:
        return str(self.data["id"])  # type: ignore[index]

    @property
    def status(self) -> str:
        return str(self.data.get("status", JobStatus.QUEUED))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobService:
    """Asynchronous conversion jobs on top of :class:`ConversionService`.

    Uploads are persisted under the storage gateway, queued, and converted by
    a pool of worker tasks. Each job is readable only with the one-time
    capability token returned at creation.
    """

    def __init__(
        self,
        storage: StorageGateway,
        security: SecurityGateway,
        converter: ConversionService,
        *,
        workers: int = 4,
    ) -> None:
        self._storage = storage
        self._security = security
        self._converter = converter
        self._workers = workers
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._running: dict[str, CancellationToken] = {}
        # Secret parameters stay in memory until a worker picks the job up
        self._secrets: dict[str, dict[str, str]] = {}

    @property
    def queue(self) -> asyncio.Queue[str]:
        return self._queue

    async def start(self) -> None:
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)

    async def stop(self) -> None:
        for token in list(self._running.values()):
            token.cancel()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def create_job_from_upload(
        self,
        filename: str,
        content_type: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        target_format: str,
        source_format: str | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[JobRecord, str]:
        """Persist upload to storage, create metadata, enqueue job and return job + one-time token."""
        target = resolve_target(target_format)
        ConversionParams.parse(params)
        declared = resolve_source(source_format, filename, b"") if source_format else None
        guessed = declared or from_filename(filename)
        if guessed is not None:
            check_pair(guessed, target)

        job_id = str(uuid.uuid4())
        token = self._security.new_token()
        token_hash = await asyncio.to_thread(self._security.hash_token, token)

        job_dir = Path(self._storage.job_dir(job_id))
        input_dir = job_dir / "input"
        output_dir = job_dir / "output"
        for d in (input_dir, output_dir):
            d.mkdir(parents=True, exist_ok=True)

        original_name = filename or "upload"
        ext = ""
        if "." in original_name:
            ext = "." + original_name.rsplit(".", 1)[-1]
        input_path = input_dir / f"original{ext}"

        public_params = {k: v for k, v in (params or {}).items() if k not in SECRET_PARAMS}
        secret_params = {k: v for k, v in (params or {}).items() if k in SECRET_PARAMS}

        try:
            size_bytes, checksum = await self._receive_upload(reader, input_path)
            now = _now()
            job_meta: dict[str, object] = {
                "id": job_id,
                "filename": original_name,
                "content_type": content_type or "application/octet-stream",
                "source_format": declared.name if declared else source_format,
                "target_format": target.name,
                "params": public_params,
                "password_protected": "password" in secret_params,
                "size_bytes": size_bytes,
                "created_at": now,
                "updated_at": now,
                "started_at": None,
                "completed_at": None,
                "failed_at": None,
                "status": JobStatus.QUEUED,
                "progress": 0,
                "error": None,
                "input_uri": str(input_path),
                "output_uri": None,
                "output_content_type": None,
                "checksum": checksum,
                "access_token_hash": token_hash,
            }
            self._storage.save_job(job_meta)
        except BaseException:
            shutil.rmtree(job_dir, ignore_errors=True)
            raise

        if secret_params:
            self._secrets[job_id] = secret_params
        await self._queue.put(job_id)
        logger.info("job_queued", job_id=job_id, target=target.name, size=size_bytes)

        return JobRecord(job_meta), token

    async def _receive_upload(self, reader: Callable[[int], Awaitable[bytes]], input_path: Path) -> tuple[int, str]:
        sha256 = hashlib.sha256()
        size_bytes = 0
        max_bytes = self._converter.settings.max_input_size_bytes
        with input_path.open("wb") as f_out:
            while True:
                chunk = await reader(CHUNK)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > max_bytes:
                    raise ResourceLimitError(f"input exceeds {max_bytes} bytes", reason="INPUT_TOO_LARGE")
                f_out.write(chunk)
                sha256.update(chunk)
        return size_bytes, sha256.hexdigest()

    def load_job(self, job_id: str) -> JobRecord:
        data = self._storage.load_job(job_id)
        return JobRecord(data)

    def verify_token(self, job: JobRecord, token: str) -> bool:
        phc = str(job.data.get("access_token_hash") or "")
        return self._security.verify(phc, token)

    async def _worker_loop(self, name: str) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._run_job(job_id, name)
            except Exception as e:
                logger.exception("job_crashed", job_id=job_id, worker=name)
                self._mark_failed(job_id, InternalError(f"unexpected failure: {e}", reason="UNEXPECTED"))
            finally:
                self._secrets.pop(job_id, None)
                self._queue.task_done()

    def _mark_failed(self, job_id: str, error: ConversionError) -> None:
        try:
            j = self._storage.load_job(job_id)
        except (OSError, ValueError):
            logger.error("job_unreadable", job_id=job_id)
            return
        j["status"] = JobStatus.FAILED
        j["error"] = error.to_dict()
        j["failed_at"] = _now()
        j["updated_at"] = j["failed_at"]
        self._storage.save_job(j)

    async def _run_job(self, job_id: str, worker: str) -> None:
        job = self._storage.load_job(job_id)
        now = _now()
        job["status"] = JobStatus.RUNNING
        job["started_at"] = now
        job["updated_at"] = now
        self._storage.save_job(job)

        target = resolve_target(str(job["target_format"]))
        output_path = Path(self._storage.job_dir(job_id)) / "output" / f"result{target.extension}"
        request = ConversionRequest(
            source=Path(str(job["input_uri"])),
            target_format=target.name,
            source_format=job.get("source_format") or None,  # type: ignore[arg-type]
            filename=str(job["filename"]),
            output_path=output_path,
            params={**dict(job.get("params") or {}), **self._secrets.pop(job_id, {})},  # type: ignore[call-overload]
        )
        token = CancellationToken()
        self._running[job_id] = token
        try:
            result = await asyncio.to_thread(self._converter.convert, request, cancel=token)
        finally:
            self._running.pop(job_id, None)

        now = _now()
        job["updated_at"] = now
        if result.ok:
            assert result.artifact is not None
            job["status"] = JobStatus.SUCCEEDED
            job["progress"] = 100
            job["completed_at"] = now
            job["output_uri"] = str(output_path)
            job["output_content_type"] = result.artifact.content_type
            job["output_filename"] = result.artifact.filename
        else:
            assert result.error is not None
            job["status"] = JobStatus.FAILED
            job["failed_at"] = now
            job["error"] = result.error.to_dict()
        self._storage.save_job(job)
        logger.info("job_finished", job_id=job_id, worker=worker, status=job["status"])
