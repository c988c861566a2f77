"""HTTPX client for the project file service."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence, Union

import httpx

from .collaborators import BatchRetrievalResult, FileRetrieval, FileRetrievalFailure, RetrievedFile

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
HEALTH_TIMEOUT_SECONDS = 5.0


class FileServiceResponseError(Exception):
    """Raised when the file service answers with a payload we cannot use."""


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _extract_file_ids(payload: Any) -> List[str]:
    items = payload.get("files", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise FileServiceResponseError("file listing is not a list")
    file_ids: List[str] = []
    for item in items:
        file_id = item.get("id") if isinstance(item, dict) else item
        if isinstance(file_id, str) and file_id:
            file_ids.append(file_id)
    return file_ids


class HttpFileRetrieval(FileRetrieval):
    """
    Retrieves project files from the storage service.

    Endpoints:
        GET {base_url}/projects/{project_id}/files -> [id, ...] or {"files": [{"id": ...}]}
        GET {base_url}/files/{file_id}             -> {id, name, content, contentType, lastModified}

    Files are fetched concurrently, bounded by ``max_parallel``. A file that
    cannot be fetched becomes a FileRetrievalFailure; it never fails the batch.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        max_parallel: int = 5,
        service_token: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json", "User-Agent": "project-export-backend/file-retrieval"}
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._semaphore = asyncio.Semaphore(max_parallel)

    async def list_project_files(self, project_id: str) -> List[str]:
        response = await self._client.get(f"/projects/{project_id}/files")
        if response.status_code == 404:
            logger.info(f"File service knows no files for project {project_id}")
            return []
        response.raise_for_status()
        return _extract_file_ids(response.json())

    async def get_many(self, file_ids: Sequence[str]) -> BatchRetrievalResult:
        outcomes = await asyncio.gather(*(self._fetch(file_id) for file_id in file_ids))
        result = BatchRetrievalResult()
        for outcome in outcomes:
            if isinstance(outcome, RetrievedFile):
                result.successful.append(outcome)
            else:
                result.failed.append(outcome)
        if result.failed:
            logger.warning(f"Retrieved {len(result.successful)}/{len(file_ids)} file(s); {len(result.failed)} failed")
        return result

    async def _fetch(self, file_id: str) -> Union[RetrievedFile, FileRetrievalFailure]:
        async with self._semaphore:
            try:
                response = await self._client.get(f"/files/{file_id}")
            except httpx.TimeoutException as exc:
                return FileRetrievalFailure(file_id, "TIMEOUT", f"file service timed out: {exc}", retryable=True)
            except httpx.HTTPError as exc:
                return FileRetrievalFailure(file_id, "NETWORK_ERROR", str(exc), retryable=True)

        if response.status_code != 200:
            return FileRetrievalFailure(
                file_id,
                str(response.status_code),
                f"file service returned HTTP {response.status_code}",
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )

        try:
            payload = response.json()
            content = payload["content"]
            if not isinstance(content, str):
                raise FileServiceResponseError("content is not text")
        except (ValueError, KeyError, TypeError, FileServiceResponseError) as exc:
            return FileRetrievalFailure(file_id, "INVALID_RESPONSE", f"unusable file payload: {exc}")

        return RetrievedFile(
            id=file_id,
            name=str(payload.get("name") or file_id),
            content=content,
            content_type=str(payload.get("contentType") or "text/markdown"),
            last_modified=_parse_timestamp(payload.get("lastModified")),
        )

    async def is_ready(self) -> bool:
        try:
            response = await self._client.get("/health", timeout=HEALTH_TIMEOUT_SECONDS)
        except httpx.HTTPError as exc:
            logger.warning(f"File service health check failed: {exc}")
            return False
        return response.status_code < 500

    async def close(self) -> None:
        await self._client.aclose()
