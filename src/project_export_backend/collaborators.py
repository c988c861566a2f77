"""
Ports through which the export engine reaches the outside world.

The orchestrator depends only on these abstract classes; concrete adapters
live in file_retrieval.py, markdown_generator.py, pdf_converter.py and
artifact_store.py and are wired together in main.build_orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .models import ExportRequest, PdfOptions


@dataclass
class RetrievedFile:
    id: str
    name: str
    content: str
    content_type: str = "text/markdown"
    last_modified: Optional[datetime] = None

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass
class FileRetrievalFailure:
    file_id: str
    error_code: str
    message: str
    retryable: bool = False


@dataclass
class BatchRetrievalResult:
    successful: List[RetrievedFile] = field(default_factory=list)
    failed: List[FileRetrievalFailure] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(item.size for item in self.successful)


@dataclass
class MarkdownDocument:
    content: str
    file_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PdfDocument:
    data: bytes
    file_name: str


@dataclass
class StoredArtifact:
    download_url: str
    expires_at: datetime
    object_key: str = ""


class FileRetrieval(ABC):
    @abstractmethod
    async def list_project_files(self, project_id: str) -> List[str]:
        """Return the ids of every file belonging to ``project_id``."""

    @abstractmethod
    async def get_many(self, file_ids: Sequence[str]) -> BatchRetrievalResult:
        """Fetch files; per-file failures are reported, not raised."""

    async def is_ready(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MarkdownGenerator(ABC):
    @abstractmethod
    async def combine(self, files: Sequence[RetrievedFile], request: ExportRequest) -> MarkdownDocument:
        """Merge ``files`` into one Markdown document."""

    async def is_ready(self) -> bool:
        return True


class PdfConverter(ABC):
    @abstractmethod
    async def convert(self, markdown: MarkdownDocument, options: PdfOptions) -> PdfDocument:
        """
        Render ``markdown`` to PDF.

        Raises:
            PdfConversionError: If the rendering engine rejects the document
        """

    async def is_ready(self) -> bool:
        return True


class ArtifactStore(ABC):
    @abstractmethod
    async def upload(self, data: bytes, name: str, content_type: str) -> StoredArtifact:
        """Store ``data`` and return a time-limited download URL."""

    async def is_ready(self) -> bool:
        return True

    async def cleanup_expired(self) -> int:
        """Delete stored artifacts whose download links have expired; return how many were removed."""
        return 0
