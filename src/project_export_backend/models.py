from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for models exposed over HTTP: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportFormat(str, Enum):
    MARKDOWN = "markdown"
    PDF = "pdf"


class PageSize(str, Enum):
    A4 = "A4"
    LETTER = "Letter"


class ExportState(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExportComplexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


TERMINAL_STATES = frozenset({ExportState.COMPLETED, ExportState.FAILED})


class PdfOptions(ApiModel):
    page_size: str = PageSize.A4.value
    margins: float = 20
    include_table_of_contents: bool = False


class ExportOptions(ApiModel):
    format: str
    file_ids: Optional[List[str]] = None
    include_metadata: bool = True
    pdf_options: Optional[PdfOptions] = None

    @field_validator("file_ids")
    @classmethod
    def _ordered_unique_file_ids(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        # An empty selection means the whole project.
        if not value:
            return None
        unique: List[str] = []
        for file_id in value:
            cleaned = file_id.strip()
            if cleaned not in unique:
                unique.append(cleaned)
        return unique


class ExportRequest(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    project_id: str
    user_id: str
    format: str
    file_ids: Optional[List[str]] = None
    include_metadata: bool = True
    pdf_options: Optional[PdfOptions] = None

    @classmethod
    def from_options(cls, project_id: str, user_id: str, options: ExportOptions) -> "ExportRequest":
        return cls(
            project_id=project_id,
            user_id=user_id,
            format=options.format,
            file_ids=options.file_ids,
            include_metadata=options.include_metadata,
            pdf_options=options.pdf_options,
        )

    @property
    def is_full_export(self) -> bool:
        return not self.file_ids

    @property
    def selected_file_count(self) -> int:
        return len(self.file_ids) if self.file_ids else 0

    def log_context(self) -> str:
        scope = "full" if self.is_full_export else f"{self.selected_file_count}_files"
        return f"project={self.project_id} user={self.user_id} format={self.format} files={scope}"


class ExportArtifact(ApiModel):
    download_url: str
    file_name: str
    file_size: int
    format: str
    expires_at: datetime
    content_hash: str


class ExportStatusView(ApiModel):
    export_id: str
    state: ExportState
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    estimated_time_remaining_seconds: Optional[int] = None
    last_updated: datetime
    result: Optional[ExportArtifact] = None


class ExportStatus(ApiModel):
    export_id: str
    state: ExportState
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    estimated_time_remaining_seconds: Optional[int] = None
    last_updated: datetime
    # Server-side only; never part of ExportStatusView.
    owner_id: Optional[str] = None
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_view(self, result: Optional[ExportArtifact] = None) -> ExportStatusView:
        return ExportStatusView(**self.model_dump(exclude={"owner_id", "created_at"}), result=result)


class ExportAccepted(ApiModel):
    export_id: Optional[str] = None
    status: ExportState
    estimated_duration_ms: int
    message: str


class ServiceReadiness(ApiModel):
    file_retrieval: bool
    content_generation: bool
    pdf_conversion: bool
    cache: bool


class CapacityMetrics(ApiModel):
    active_exports: int
    queued_exports: int
    max_concurrency: int


class ServiceStatus(ApiModel):
    status: str
    timestamp: datetime
    services: ServiceReadiness
    metrics: CapacityMetrics


class CacheInvalidationResult(ApiModel):
    deleted: int
