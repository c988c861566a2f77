from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .artifact_store import LocalArtifactStore, S3ArtifactStore
from .cache import KeyValueCache
from .cache_backend import create_cache_backend
from .collaborators import ArtifactStore
from .configuration import AppSettings, configure_logging, load_settings
from .errors import ExportError, ExportValidationError
from .file_retrieval import HttpFileRetrieval
from .markdown_generator import CombiningMarkdownGenerator
from .models import (
    CacheInvalidationResult,
    ExportAccepted,
    ExportArtifact,
    ExportOptions,
    ExportRequest,
    ExportStatusView,
    ServiceStatus,
)
from .orchestrator import ExportOrchestrator
from .pdf_converter import PandocPdfConverter

logger = logging.getLogger(__name__)

MEDIA_TYPES = {".md": "text/markdown; charset=utf-8", ".pdf": "application/pdf"}


def build_artifact_store(settings: AppSettings) -> ArtifactStore:
    storage = settings.storage
    if storage.backend == "s3":
        return S3ArtifactStore(storage.s3_bucket_name, url_expiry_hours=storage.url_expiry_hours)
    return LocalArtifactStore(
        Path(storage.local_root),
        public_base_url=settings.app.public_base_url,
        signing_secret=storage.signing_secret,
        url_expiry_hours=storage.url_expiry_hours,
    )


def build_orchestrator(settings: AppSettings, artifact_store: Optional[ArtifactStore] = None) -> ExportOrchestrator:
    """Wire every collaborator of the export engine from ``settings``."""
    cache_settings = settings.cache
    cache = KeyValueCache(
        create_cache_backend(cache_settings.backend, cache_settings.redis_url, cache_settings.max_connections),
        environment=settings.app.environment,
        key_prefix=cache_settings.key_prefix,
        compression_enabled=cache_settings.compression_enabled,
        compression_threshold=cache_settings.compression_threshold,
        metrics_enabled=cache_settings.metrics_enabled,
        default_ttl=cache_settings.default_ttl_seconds,
        scan_count=cache_settings.scan_count,
    )
    file_service = settings.file_service
    return ExportOrchestrator(
        file_retrieval=HttpFileRetrieval(
            file_service.base_url,
            timeout_seconds=file_service.timeout_seconds,
            max_parallel=file_service.max_parallel,
            service_token=file_service.service_token,
        ),
        markdown_generator=CombiningMarkdownGenerator(platform_version=settings.app.version),
        pdf_converter=PandocPdfConverter(settings.pdf.pandoc_path, pdf_engine=settings.pdf.pdf_engine),
        artifact_store=artifact_store or build_artifact_store(settings),
        cache=cache,
        settings=settings.export,
    )


settings = load_settings()
configure_logging(settings.logging)

artifact_store = build_artifact_store(settings)
export_orchestrator = build_orchestrator(settings, artifact_store)


async def cleanup_artifacts_periodically(store: ArtifactStore, interval_seconds: float) -> None:
    """Sweep expired artifacts out of ``store`` every ``interval_seconds``."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.cleanup_expired()
        except OSError as e:
            logger.error(f"Artifact cleanup failed: {e}")


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        f"Export service starting (env={settings.app.environment}, cache={settings.cache.backend}, "
        f"storage={settings.storage.backend})"
    )
    cleanup_task = None
    if settings.storage.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(
            cleanup_artifacts_periodically(artifact_store, settings.storage.cleanup_interval_seconds)
        )
    yield
    if cleanup_task is not None:
        cleanup_task.cancel()
        await asyncio.gather(cleanup_task, return_exceptions=True)
    await export_orchestrator.shutdown()


app = FastAPI(title=settings.app.title, version=settings.app.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.app.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> ExportOrchestrator:
    return export_orchestrator


def get_artifact_store() -> ArtifactStore:
    return artifact_store


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


@app.exception_handler(ExportError)
async def export_error_handler(_: Request, exc: ExportError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not request.url.path.startswith("/export"):
        return await request_validation_exception_handler(request, exc)
    errors: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    validation_error = ExportValidationError(errors)
    return JSONResponse(status_code=validation_error.status_code, content=validation_error.to_response())


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/export/projects/{project_id}",
    response_model=ExportArtifact,
    responses={202: {"model": ExportAccepted}},
)
async def export_project(
    project_id: str,
    options: ExportOptions,
    user_id: str = Depends(get_current_user),
    orchestrator: ExportOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.export_project(ExportRequest.from_options(project_id, user_id, options))
    if isinstance(outcome, ExportAccepted):
        return JSONResponse(status_code=202, content=outcome.model_dump(mode="json", by_alias=True))
    return outcome


@app.get("/export/status/{export_id}", response_model=ExportStatusView)
async def export_status(
    export_id: str,
    user_id: str = Depends(get_current_user),
    orchestrator: ExportOrchestrator = Depends(get_orchestrator),
) -> ExportStatusView:
    return await orchestrator.get_status(export_id, user_id)


@app.get("/export/health", response_model=ServiceStatus)
async def export_health(orchestrator: ExportOrchestrator = Depends(get_orchestrator)) -> ServiceStatus:
    return await orchestrator.service_status()


@app.get("/export/metrics")
def export_metrics(orchestrator: ExportOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.metrics()


@app.delete("/export/projects/{project_id}/cache", response_model=CacheInvalidationResult)
async def invalidate_export_cache(
    project_id: str,
    user_id: str = Depends(get_current_user),
    orchestrator: ExportOrchestrator = Depends(get_orchestrator),
) -> CacheInvalidationResult:
    deleted = await orchestrator.invalidate_project_exports(project_id, user_id)
    return CacheInvalidationResult(deleted=deleted)


@app.get("/export/files/{object_id}/{file_name}")
def download_artifact(
    object_id: str,
    file_name: str,
    expires: int = Query(...),
    signature: str = Query(...),
    store: ArtifactStore = Depends(get_artifact_store),
):
    if not isinstance(store, LocalArtifactStore):
        raise HTTPException(status_code=404, detail="Export file not found")
    if not store.verify(object_id, file_name, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired download link")
    file_path = store.resolve(object_id, file_name)
    if file_path is None:
        raise HTTPException(status_code=404, detail="Export file not found")
    return FileResponse(file_path, media_type=MEDIA_TYPES.get(file_path.suffix), filename=file_name)
