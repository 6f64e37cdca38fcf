import asyncio
import os
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from . import __version__
from .conversion import (
    CancellationToken,
    ConversionEngine,
    ConversionRequest,
    ConversionService,
    JobRecord,
    JobService,
    JobStatus,
)
from .conversion.adapters import Argon2Security, LocalStorage, X2tEngine
from .conversion.interfaces import SecurityGateway
from .errors import ConversionError
from .formats import conversion_matrix
from .logging import get_logger, setup_logging
from .preparation import EnvironmentPreparer
from .settings import Settings

logger = get_logger(__name__)

DISCONNECT_POLL_SEC = 0.25


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request with timing and response status."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        log_fn = logger.info if response.status_code < 400 else logger.warning
        log_fn(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )
        return response


def _error_response(error: ConversionError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"detail": error.to_dict()})


def _content_disposition(filename: str) -> str:
    return f"attachment; filename*=UTF-8''{quote(filename)}"


def _validate_bearer_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "missing bearer token"})
    scheme, _, rest = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not rest:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "missing bearer token"})
    raw_token = rest.strip()
    if not re.fullmatch(r"[A-Za-z0-9_-]+={0,2}", raw_token):
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "malformed token"})
    token = raw_token.rstrip("=")
    # 32 random bytes encode to 43 unpadded base64url characters
    if len(token) != 43:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "malformed token"})
    return token


def _authorized_job(jobs: JobService, job_id: str, authorization: str | None) -> JobRecord:
    token = _validate_bearer_token(authorization)
    try:
        job = jobs.load_job(job_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "job not found"})
    if not jobs.verify_token(job, token):
        raise HTTPException(status_code=403, detail={"code": "forbidden", "message": "invalid token"})
    return job


async def _run_cancellable(request: Request, service: ConversionService, conv: ConversionRequest):
    """Run a blocking conversion in a thread, cancelling it if the client goes away."""
    token = CancellationToken()
    task = asyncio.ensure_future(asyncio.to_thread(service.convert, conv, cancel=token))
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SEC)
        if done:
            return task.result()
        if await request.is_disconnected():
            logger.info("client_disconnected", path=request.url.path)
            token.cancel()
            return await task


def create_app(
    settings: Settings | None = None,
    *,
    engine: ConversionEngine | None = None,
    security: SecurityGateway | None = None,
    preparer: EnvironmentPreparer | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info("starting", version=__version__, temp_dir=str(settings.temp_dir))
        if settings.prepare_on_startup or preparer is not None:
            # Blocks serving until done; StartupFatalError aborts startup
            (preparer or EnvironmentPreparer(settings)).run()
            app.state.prepared = True

        (settings.data_dir / "jobs").mkdir(parents=True, exist_ok=True)
        settings.temp_dir.mkdir(parents=True, exist_ok=True)
        service = ConversionService(settings, engine or X2tEngine.from_settings(settings))
        jobs = JobService(
            storage=LocalStorage(str(settings.data_dir)),
            security=security or Argon2Security(),
            converter=service,
            workers=settings.workers,
        )
        app.state.service = service
        app.state.jobs = jobs
        await jobs.start()
        try:
            yield
        finally:
            await jobs.stop()
            logger.info("stopped")

    app = FastAPI(
        title="Office Conversion Service",
        version=os.getenv("OFFICE_CONVERT_VERSION", __version__),
        description="Converts office documents between formats with the ONLYOFFICE x2t engine.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.prepared = False
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health")
    def health() -> dict[str, object]:
        """Basic health check endpoint."""
        return {"status": "ok", "prepared": app.state.prepared}

    @app.get("/formats")
    def formats() -> dict[str, object]:
        return {"conversions": conversion_matrix()}

    @app.post("/convert")
    async def convert(
        request: Request,
        file: UploadFile = File(...),
        target_format: str = Form(...),
        source_format: str | None = Form(None),
        password: str | None = Form(None),
    ) -> Response:
        """Convert an uploaded document and return the result in the response body."""
        service: ConversionService = request.app.state.service
        params = {"password": password} if password else {}
        conv = ConversionRequest(
            source=file.file,
            target_format=target_format,
            source_format=source_format or None,
            filename=file.filename or None,
            params=params,
        )
        result = await _run_cancellable(request, service, conv)
        if not result.ok:
            return _error_response(result.error)
        artifact = result.artifact
        return Response(
            content=artifact.read_bytes(),
            media_type=artifact.content_type,
            headers={"Content-Disposition": _content_disposition(artifact.filename)},
        )

    @app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
    async def create_job(
        request: Request,
        file: UploadFile = File(...),
        target_format: str = Form(...),
        source_format: str | None = Form(None),
        password: str | None = Form(None),
    ) -> JSONResponse:
        """Create a new conversion job from an uploaded document.

        Accepts multipart/form-data with a file part and the target format.
        Returns 202 Accepted with the job id and a one-time access_token that
        must be sent as a bearer token to read the job and its result.
        """
        jobs: JobService = request.app.state.jobs

        async def read_chunk(n: int) -> bytes:
            return await file.read(n)

        try:
            job, token = await jobs.create_job_from_upload(
                filename=file.filename or "upload",
                content_type=file.content_type or "application/octet-stream",
                reader=read_chunk,
                target_format=target_format,
                source_format=source_format or None,
                params={"password": password} if password else None,
            )
        except ConversionError as e:
            return _error_response(e)

        job_id = job.id
        body = {
            "id": job_id,
            "status": job.status,
            "progress": job.data.get("progress", 0),
            "access_token": token,
            "links": {
                "self": f"/jobs/{job_id}",
                "result": f"/jobs/{job_id}/result",
            },
        }
        headers = {"Location": f"/jobs/{job_id}"}
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=headers)

    @app.get("/jobs/{job_id}")
    async def get_job(request: Request, job_id: str, authorization: str | None = Header(None)) -> JSONResponse:
        job = _authorized_job(request.app.state.jobs, job_id, authorization)
        # Never expose the token hash or server paths
        hidden = {"access_token_hash", "input_uri", "output_uri"}
        return JSONResponse(content={k: v for k, v in job.data.items() if k not in hidden})

    @app.get("/jobs/{job_id}/result")
    async def get_result(request: Request, job_id: str, authorization: str | None = Header(None)) -> FileResponse:
        job = _authorized_job(request.app.state.jobs, job_id, authorization)
        output_uri = job.data.get("output_uri")
        if job.status != JobStatus.SUCCEEDED or not output_uri or not Path(str(output_uri)).exists():
            raise HTTPException(status_code=404, detail={"code": "not_ready", "message": "result not available"})
        return FileResponse(
            path=str(output_uri),
            media_type=str(job.data.get("output_content_type") or "application/octet-stream"),
            filename=str(job.data.get("output_filename") or Path(str(output_uri)).name),
        )

    return app
