import asyncio
import secrets
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from export_server.config import VERSION, Settings, settings
from export_server.errors import AuthError, ExportError, JobNotFoundError, UploadTooLargeError, ValidationError
from export_server.jobs import ConversionOptions
from export_server.orchestrator import ConversionService
from export_server.schemas import ErrorResponse, HealthResponse, ProgressResponse
from export_server.utils.logging import configure_json_logging, get_logger
from export_server.utils.storage import TempFiles, run_reaper, save_upload


logger = get_logger(__name__)

# Boundaries, part headers and the small form fields
MULTIPART_OVERHEAD_BYTES = 1024 * 1024


def _service(request: Request) -> ConversionService:
    return request.app.state.service


def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> None:
    expected = request.app.state.settings.api_key
    if not x_api_key or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        raise AuthError()


def _form_file(form: FormData, name: str) -> Optional[UploadFile]:
    value = form.get(name)
    if isinstance(value, UploadFile) and value.filename:
        return value
    return None


def _form_text(form: FormData, name: str) -> Optional[str]:
    value = form.get(name)
    return value if isinstance(value, str) else None


def check_declared_size(request: Request, limit: int) -> None:
    """Reject a request whose declared body cannot fit two uploads of ``limit``
    bytes, before any of it is read."""
    header_value = request.headers.get("content-length")
    if not header_value:
        return
    try:
        declared_length = int(header_value)
    except ValueError:
        logger.warning("Invalid content-length header: %s", header_value)
        return
    allowed = 2 * limit + MULTIPART_OVERHEAD_BYTES
    if declared_length > allowed:
        logger.warning("Request declared size %d exceeds max bytes %d", declared_length, allowed)
        raise UploadTooLargeError(f"Request exceeds {allowed // (1024 * 1024)}MB")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    service = ConversionService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_json_logging(config.log_level)
        logger.info(
            "Video export server v%s listening on %s:%d origins=%s max_size=%dMB",
            VERSION,
            config.host,
            config.port,
            ",".join(config.origins),
            config.max_file_size_mb,
        )
        reaper: Optional[asyncio.Task] = None
        if config.reaper_interval_seconds > 0:
            reaper = asyncio.create_task(
                run_reaper(service.temp_dir, config.reaper_interval_seconds, config.reaper_max_age_seconds)
            )
        try:
            yield
        finally:
            if reaper is not None:
                reaper.cancel()
                with suppress(asyncio.CancelledError):
                    await reaper

    app = FastAPI(title="Video Export API", version=VERSION, lifespan=lifespan)
    app.state.settings = config
    app.state.service = service

    origins = config.origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
        expose_headers=["Content-Disposition"],
    )

    @app.exception_handler(ExportError)
    async def export_error_handler(request: Request, exc: ExportError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Invalid request", "details": str(exc.errors())}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Server error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            version=VERSION,
            ffmpeg=True,
        )

    @app.post(
        "/convert",
        dependencies=[Depends(require_api_key)],
        responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def convert(request: Request, service: ConversionService = Depends(_service)):
        check_declared_size(request, config.max_file_size_bytes)
        form = await request.form(max_files=2)
        try:
            video = _form_file(form, "video")
            if video is None:
                raise ValidationError()
            audio = _form_file(form, "audio")
            options = ConversionOptions.from_form(
                _form_text(form, "quality"),
                _form_text(form, "fps"),
                _form_text(form, "filename"),
            )
            limit = config.max_file_size_bytes
            with TempFiles() as files:
                video_path = await save_upload(video.file, video.filename, service.temp_dir, files, limit)
                audio_path = None
                if audio is not None:
                    audio_path = await save_upload(audio.file, audio.filename, service.temp_dir, files, limit)
                job = service.new_job(video_path, audio_path, options, files)
                return await service.process(job, files)
        finally:
            await form.close()

    @app.get(
        "/progress/{job_id}",
        response_model=ProgressResponse,
        dependencies=[Depends(require_api_key)],
        responses={404: {"model": ErrorResponse}},
    )
    def get_progress(job_id: str, service: ConversionService = Depends(_service)) -> ProgressResponse:
        snapshot = service.progress(job_id)
        if snapshot is None:
            raise JobNotFoundError()
        return ProgressResponse(**snapshot.to_dict())

    return app


app = create_app()


def serve() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    serve()
