"""
Export orchestration and lifecycle management.

This module drives a project export from request to download link:
- Request validation, fingerprinting and artifact cache lookup
- Deduplication of identical in-flight exports through a distributed lock
- A process-wide concurrency gate (no queue; a full gate answers 429)
- Synchronous execution for cheap exports, background tasks for expensive ones
- Status tracking, failure classification and cache invalidation

The ExportOrchestrator class provides the core business logic for the API; it
only talks to collaborators through the ports in collaborators.py.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from .cache import CacheUnavailableError, KeyValueCache
from .cache_keys import artifact_key, inflight_key, project_artifacts_pattern, result_key
from .collaborators import ArtifactStore, FileRetrieval, MarkdownGenerator, PdfConverter
from .configuration import ExportSettings
from .errors import (
    ExportError,
    ExportErrorCategory,
    ExportForbiddenError,
    ExportNotFoundError,
    ExportRateLimitedError,
    ExportTooLargeError,
    ExportValidationError,
    classify_failure,
)
from .fingerprint import compute_fingerprint
from .locking import DistributedLock
from .models import (
    CapacityMetrics,
    ExportAccepted,
    ExportArtifact,
    ExportComplexity,
    ExportFormat,
    ExportRequest,
    ExportState,
    ExportStatusView,
    PdfOptions,
    ServiceReadiness,
    ServiceStatus,
)
from .status_tracker import ExportStatusTracker
from .validation import classify_complexity, estimate_duration_ms, validate_export_request

logger = logging.getLogger(__name__)

EXPORT_LOCK_OPERATION = "export"
MARKDOWN_CONTENT_TYPE = "text/markdown; charset=utf-8"
PDF_CONTENT_TYPE = "application/pdf"

CANCELLED_MESSAGE = "Export cancelled"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExportMetrics:
    """Counters owned by one orchestrator instance."""

    requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    deduplicated: int = 0
    rate_limited: int = 0
    pipelines_started: int = 0
    pipelines_succeeded: int = 0
    pipelines_failed: int = 0
    failures_by_category: Dict[str, int] = field(default_factory=dict)
    total_pipeline_ms: float = 0.0
    started_at: float = field(default_factory=time.monotonic)

    def record_failure(self, category: ExportErrorCategory) -> None:
        self.pipelines_failed += 1
        self.failures_by_category[category.value] = self.failures_by_category.get(category.value, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        finished = self.pipelines_succeeded + self.pipelines_failed
        return {
            "requests": self.requests,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "deduplicated": self.deduplicated,
            "rateLimited": self.rate_limited,
            "pipelinesStarted": self.pipelines_started,
            "pipelinesSucceeded": self.pipelines_succeeded,
            "pipelinesFailed": self.pipelines_failed,
            "failuresByCategory": dict(self.failures_by_category),
            "avgPipelineMs": round(self.total_pipeline_ms / finished, 1) if finished else 0.0,
            "uptimeSeconds": round(time.monotonic() - self.started_at, 1),
        }


class ConcurrencyGate:
    """Non-blocking counter bounding the number of pipelines in this process."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.active = 0

    def try_acquire(self) -> bool:
        if self.active >= self.limit:
            return False
        self.active += 1
        return True

    def release(self) -> None:
        self.active = max(0, self.active - 1)


@dataclass
class ExportJob:
    """
    Everything a running pipeline needs to finish and clean up after itself.

    Attributes:
        request: The validated request
        fingerprint: Digest identifying identical requests
        cache_key: Artifact cache key for this fingerprint
        complexity: Scheduling class of the request
        export_id: Server-generated id used for status polling
        lock_token: Owner token of the dedup lock, None when running without one
        estimated_duration_ms: Up-front duration estimate
        started: Whether a background run has begun executing
    """

    request: ExportRequest
    fingerprint: str
    cache_key: str
    complexity: ExportComplexity
    export_id: str
    lock_token: Optional[str]
    estimated_duration_ms: int
    started: bool = False

    def remaining_seconds(self, progress: int) -> int:
        return max(0, round(self.estimated_duration_ms * (100 - progress) / 100 / 1000))


class ExportOrchestrator:
    """
    Central coordinator for project exports.

    Collaborators are injected; one instance is built at startup and shared by
    every request handler. All state lives either in the shared cache (status,
    artifacts, locks) or in this instance (gate, background tasks, metrics).
    """

    def __init__(
        self,
        file_retrieval: FileRetrieval,
        markdown_generator: MarkdownGenerator,
        pdf_converter: PdfConverter,
        artifact_store: ArtifactStore,
        cache: KeyValueCache,
        settings: Optional[ExportSettings] = None,
        lock: Optional[DistributedLock] = None,
        tracker: Optional[ExportStatusTracker] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings or ExportSettings()
        self._file_retrieval = file_retrieval
        self._markdown_generator = markdown_generator
        self._pdf_converter = pdf_converter
        self._artifact_store = artifact_store
        self._cache = cache
        self._lock = lock or DistributedLock(cache, self._settings.lock_ttl_seconds)
        self._tracker = tracker or ExportStatusTracker(cache, self._settings.status_ttl_seconds)
        self._clock = clock
        self._gate = ConcurrencyGate(self._settings.max_concurrent_exports)
        self._background: Dict[asyncio.Task, ExportJob] = {}
        self._queued = 0
        self._accepting = True
        self.export_metrics = ExportMetrics()

    @property
    def is_ready(self) -> bool:
        return self._accepting

    @property
    def active_exports(self) -> int:
        return self._gate.active

    @property
    def queued_exports(self) -> int:
        return self._queued

    # ------------------------------------------------------------------
    # export entry point
    # ------------------------------------------------------------------

    async def export_project(self, request: ExportRequest) -> Union[ExportArtifact, ExportAccepted]:
        """
        Produce (or reuse) an export for ``request``.

        Returns:
            ExportArtifact when the export was served from cache or ran
            synchronously; ExportAccepted when it runs in the background or an
            identical export is already in flight

        Raises:
            ExportError: Classified failure of a synchronous export
        """
        if not self._accepting:
            raise ExportRateLimitedError("Export service is shutting down. Please try again later.")
        self.export_metrics.requests += 1

        validation = validate_export_request(request)
        if not validation.valid:
            raise ExportValidationError(validation.errors)

        fingerprint = compute_fingerprint(request)
        cache_key = artifact_key(request.user_id, request.project_id, fingerprint)
        cached = await self._cached_artifact(cache_key)
        if cached is not None:
            self.export_metrics.cache_hits += 1
            logger.info(f"Export served from cache: {request.log_context()}")
            return cached
        self.export_metrics.cache_misses += 1

        complexity = classify_complexity(request)
        try:
            lock_token = await self._lock.acquire(EXPORT_LOCK_OPERATION, fingerprint, self._settings.lock_ttl_seconds)
        except CacheUnavailableError as exc:
            logger.warning(f"Cache unavailable, exporting without deduplication: {request.log_context()} ({exc})")
            lock_token = None
        else:
            if lock_token is None:
                self.export_metrics.deduplicated += 1
                return await self._in_flight_response(request, fingerprint)

        reserved = False
        try:
            # Another worker may have finished while we waited for the lock.
            cached = await self._cached_artifact(cache_key)
            if cached is not None:
                self.export_metrics.cache_hits += 1
                return cached
            if not self._gate.try_acquire():
                self.export_metrics.rate_limited += 1
                logger.warning(
                    f"Concurrency limit reached ({self._gate.active}/{self._gate.limit}): {request.log_context()}"
                )
                raise ExportRateLimitedError()
            reserved = True
        finally:
            if not reserved:
                await self._release_lock(fingerprint, lock_token)

        job = ExportJob(
            request=request,
            fingerprint=fingerprint,
            cache_key=cache_key,
            complexity=complexity,
            export_id=str(uuid4()),
            lock_token=lock_token,
            estimated_duration_ms=estimate_duration_ms(request),
        )
        return await self._start(job)

    async def _start(self, job: ExportJob) -> Union[ExportArtifact, ExportAccepted]:
        try:
            status = await self._tracker.create(job.export_id, owner_id=job.request.user_id)
            if job.lock_token is not None:
                await self._cache.set(
                    inflight_key(job.fingerprint), job.export_id, self._settings.lock_ttl_seconds, compress=False
                )
        except BaseException:
            await self._finish(job)
            raise

        run_async = job.complexity.value in self._settings.async_complexities
        if run_async and status is None:
            logger.warning(f"Status tracking unavailable, running export {job.export_id} synchronously")
            run_async = False

        logger.info(
            f"Export {job.export_id} accepted ({'async' if run_async else 'sync'}): "
            f"{job.request.log_context()} complexity={job.complexity.value}"
        )
        if not run_async:
            return await self._run_pipeline(job, raise_errors=True)

        self._queued += 1
        task = asyncio.create_task(self._run_in_background(job), name=f"export-{job.export_id}")
        self._background[task] = job
        task.add_done_callback(self._forget_task)
        return ExportAccepted(
            export_id=job.export_id,
            status=ExportState.PENDING,
            estimated_duration_ms=job.estimated_duration_ms,
            message="Export accepted. Poll the status endpoint for progress.",
        )

    async def _in_flight_response(self, request: ExportRequest, fingerprint: str) -> ExportAccepted:
        export_id = await self._cache.get(inflight_key(fingerprint))
        status = await self._tracker.get(export_id) if isinstance(export_id, str) else None
        logger.info(f"Identical export already in flight ({export_id}): {request.log_context()}")
        return ExportAccepted(
            export_id=export_id if status is not None else None,
            status=status.state if status is not None else ExportState.PENDING,
            estimated_duration_ms=estimate_duration_ms(request),
            message="An identical export is already in progress.",
        )

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------

    def _forget_task(self, task: asyncio.Task) -> None:
        self._background.pop(task, None)

    async def _run_in_background(self, job: ExportJob) -> None:
        job.started = True
        self._queued -= 1
        await self._run_pipeline(job, raise_errors=False)

    async def _run_pipeline(self, job: ExportJob, raise_errors: bool) -> Optional[ExportArtifact]:
        started = time.perf_counter()
        self.export_metrics.pipelines_started += 1
        try:
            await self._tracker.update(
                job.export_id,
                state=ExportState.PROCESSING,
                progress=0,
                message="Export started",
                estimated_time_remaining_seconds=job.remaining_seconds(0),
            )
            artifact = await self._execute(job)
            await self._store_artifact(job, artifact)
            await self._tracker.complete(job.export_id)
            self.export_metrics.pipelines_succeeded += 1
            logger.info(
                f"Export {job.export_id} completed in {(time.perf_counter() - started) * 1000:.0f}ms: "
                f"{job.request.log_context()} size={artifact.file_size}"
            )
            return artifact
        except asyncio.CancelledError:
            logger.warning(f"Export {job.export_id} cancelled: {job.request.log_context()}")
            await self._tracker.fail(job.export_id, CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            error = classify_failure(exc)
            self._log_failure(job, error, exc)
            self.export_metrics.record_failure(error.category)
            await self._tracker.fail(job.export_id, error.message)
            if not raise_errors:
                return None
            if error is exc:
                raise
            raise error from exc
        finally:
            self.export_metrics.total_pipeline_ms += (time.perf_counter() - started) * 1000
            await self._finish(job)

    async def _progress(self, job: ExportJob, progress: int, message: str) -> None:
        await self._tracker.update(
            job.export_id,
            progress=progress,
            message=message,
            estimated_time_remaining_seconds=job.remaining_seconds(progress),
        )

    async def _execute(self, job: ExportJob) -> ExportArtifact:
        request = job.request
        settings = self._settings

        await self._progress(job, 10, "Retrieving project files")
        file_ids: List[str] = list(request.file_ids or [])
        if not file_ids:
            file_ids = await asyncio.wait_for(
                self._file_retrieval.list_project_files(request.project_id), settings.retrieval_timeout_seconds
            )
        if not file_ids:
            raise ExportNotFoundError("No files found for this project.")

        batch = await asyncio.wait_for(self._file_retrieval.get_many(file_ids), settings.retrieval_timeout_seconds)
        if not batch.successful:
            raise ExportNotFoundError("None of the requested files could be retrieved.")
        if batch.failed:
            logger.warning(
                f"Export {job.export_id} continues without {len(batch.failed)} file(s): "
                f"{', '.join(failure.file_id for failure in batch.failed[:10])}"
            )
        self._check_size(batch.total_size)

        await self._progress(job, 30, "Generating Markdown")
        markdown = await self._markdown_generator.combine(batch.successful, request)

        if request.format == ExportFormat.PDF.value:
            await self._progress(job, 60, "Converting to PDF")
            pdf = await asyncio.wait_for(
                self._pdf_converter.convert(markdown, request.pdf_options or PdfOptions()),
                settings.conversion_timeout_seconds,
            )
            payload, file_name, content_type = pdf.data, pdf.file_name, PDF_CONTENT_TYPE
        else:
            payload, file_name, content_type = markdown.content.encode("utf-8"), markdown.file_name, MARKDOWN_CONTENT_TYPE
        self._check_size(len(payload))

        await self._progress(job, 90, "Uploading export")
        stored = await asyncio.wait_for(
            self._artifact_store.upload(payload, file_name, content_type), settings.upload_timeout_seconds
        )
        return ExportArtifact(
            download_url=stored.download_url,
            file_name=file_name,
            file_size=len(payload),
            format=request.format,
            expires_at=stored.expires_at,
            content_hash=hashlib.md5(payload, usedforsecurity=False).hexdigest(),
        )

    def _check_size(self, size_bytes: int) -> None:
        limit = self._settings.max_export_size_mb * 1024 * 1024
        if size_bytes > limit:
            raise ExportTooLargeError(
                f"Project too large for export ({size_bytes} bytes, limit {self._settings.max_export_size_mb} MB)."
            )

    async def _store_artifact(self, job: ExportJob, artifact: ExportArtifact) -> None:
        seconds_left = int((artifact.expires_at - self._clock()).total_seconds())
        ttl = min(self._settings.artifact_ttl_seconds, seconds_left)
        data = artifact.model_dump(mode="json")
        if ttl > 0:
            await self._cache.set(job.cache_key, data, ttl)
        await self._cache.set(result_key(job.export_id), data, self._settings.result_ttl_seconds)

    def _log_failure(self, job: ExportJob, error: ExportError, exc: BaseException) -> None:
        context = f"{job.request.log_context()} complexity={job.complexity.value} export={job.export_id}"
        if error.category is ExportErrorCategory.INTERNAL:
            logger.error(f"Export failed with internal error: {context}", exc_info=exc)
        else:
            logger.warning(f"Export failed ({error.category.value}): {context}: {exc}")

    async def _finish(self, job: ExportJob) -> None:
        self._gate.release()
        if job.lock_token is not None:
            await self._cache.delete_if_equals(inflight_key(job.fingerprint), job.export_id)
        await self._release_lock(job.fingerprint, job.lock_token)

    async def _release_lock(self, fingerprint: str, token: Optional[str]) -> None:
        if token is not None:
            await self._lock.release(EXPORT_LOCK_OPERATION, fingerprint, token)

    async def _cached_artifact(self, cache_key: str) -> Optional[ExportArtifact]:
        data = await self._cache.get(cache_key)
        if data is None:
            return None
        try:
            artifact = ExportArtifact.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"Dropping malformed cached artifact {cache_key}: {exc}")
            await self._cache.delete(cache_key)
            return None
        if artifact.expires_at <= self._clock():
            await self._cache.delete(cache_key)
            return None
        return artifact

    # ------------------------------------------------------------------
    # status, health and maintenance
    # ------------------------------------------------------------------

    async def get_status(self, export_id: str, user_id: str) -> ExportStatusView:
        status = await self._tracker.get(export_id)
        if status is None:
            raise ExportNotFoundError("Export not found or expired.")
        if status.owner_id != user_id:
            raise ExportForbiddenError()

        if self._tracker.is_record_stale(status, self._settings.stale_after_minutes):
            logger.warning(f"Export {export_id} made no progress for {self._settings.stale_after_minutes} minutes")
            status = await self._tracker.fail(export_id, "Export stalled") or status

        result = None
        if status.state == ExportState.COMPLETED:
            data = await self._cache.get(result_key(export_id))
            if data is not None:
                try:
                    result = ExportArtifact.model_validate(data)
                except ValidationError as exc:
                    logger.warning(f"Ignoring malformed result for export {export_id}: {exc}")
        return status.to_view(result)

    async def service_status(self) -> ServiceStatus:
        names = ("file_retrieval", "content_generation", "pdf_conversion", "cache")
        checks = await asyncio.gather(
            self._file_retrieval.is_ready(),
            self._markdown_generator.is_ready(),
            self._pdf_converter.is_ready(),
            self._cache.health_check(),
            return_exceptions=True,
        )
        readiness: Dict[str, bool] = {}
        for name, outcome in zip(names, checks):
            if isinstance(outcome, BaseException):
                logger.warning(f"Readiness check for {name} raised: {outcome}")
            readiness[name] = outcome is True

        services = ServiceReadiness(**readiness)
        return ServiceStatus(
            status=self.health_verdict(services),
            timestamp=self._clock(),
            services=services,
            metrics=CapacityMetrics(
                active_exports=self._gate.active,
                queued_exports=self._queued,
                max_concurrency=self._gate.limit,
            ),
        )

    def health_verdict(self, services: ServiceReadiness) -> str:
        states = services.model_dump()
        if not self._accepting or not any(states.values()):
            return UNHEALTHY
        if not services.file_retrieval or not services.content_generation:
            return UNHEALTHY
        if not services.pdf_conversion or not services.cache:
            return DEGRADED
        if self._gate.active >= self._settings.degraded_capacity_ratio * self._gate.limit:
            return DEGRADED
        return HEALTHY

    async def invalidate_project_exports(self, project_id: str, user_id: str) -> int:
        deleted = await self._cache.delete_by_pattern(project_artifacts_pattern(user_id, project_id))
        logger.info(f"Invalidated {deleted} cached export(s) for project={project_id} user={user_id}")
        return deleted

    def metrics(self) -> Dict[str, Any]:
        return {
            "exports": {
                **self.export_metrics.snapshot(),
                "activeExports": self._gate.active,
                "queuedExports": self._queued,
                "maxConcurrency": self._gate.limit,
            },
            "cache": self._cache.stats(),
        }

    async def _abandon(self, job: ExportJob) -> None:
        # Cancelled before its first step, so the pipeline never cleaned up.
        self._queued -= 1
        await self._tracker.fail(job.export_id, CANCELLED_MESSAGE)
        await self._finish(job)

    async def shutdown(self) -> None:
        """Stop accepting exports, let background pipelines finish, then close resources."""
        self._accepting = False
        pending = dict(self._background)
        if pending:
            logger.info(f"Waiting for {len(pending)} background export(s) to finish")
            still_running = set(pending)
            if self._settings.shutdown_grace_seconds > 0:
                _, still_running = await asyncio.wait(still_running, timeout=self._settings.shutdown_grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(f"Cancelled {len(still_running)} export(s) still running at shutdown")
                await asyncio.gather(*still_running, return_exceptions=True)
            for task in still_running:
                job = pending[task]
                if not job.started:
                    await self._abandon(job)
        await self._file_retrieval.close()
        await self._cache.close()
