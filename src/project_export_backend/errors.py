"""
Error taxonomy for the export pipeline.

Failures are categorised rather than typed per call site. Every category maps
to one stable HTTP status and a user-safe message; the original exception is
kept for server-side logging only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class ExportErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    RESOURCE_EXCEEDED = "RESOURCE_EXCEEDED"
    CONVERSION_FAILURE = "CONVERSION_FAILURE"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorDefinition:
    category: ExportErrorCategory
    message: str
    status_code: int


ERROR_DEFINITIONS: Dict[ExportErrorCategory, ErrorDefinition] = {
    ExportErrorCategory.VALIDATION: ErrorDefinition(
        ExportErrorCategory.VALIDATION, "Invalid export options.", 400
    ),
    ExportErrorCategory.FORBIDDEN: ErrorDefinition(
        ExportErrorCategory.FORBIDDEN, "You do not have access to this export.", 403
    ),
    ExportErrorCategory.NOT_FOUND: ErrorDefinition(
        ExportErrorCategory.NOT_FOUND, "Export resource not found.", 404
    ),
    ExportErrorCategory.TIMEOUT: ErrorDefinition(
        ExportErrorCategory.TIMEOUT, "Export timeout - project may be too large.", 408
    ),
    ExportErrorCategory.RESOURCE_EXCEEDED: ErrorDefinition(
        ExportErrorCategory.RESOURCE_EXCEEDED,
        "Project too large for export.",
        413,
    ),
    ExportErrorCategory.CONVERSION_FAILURE: ErrorDefinition(
        ExportErrorCategory.CONVERSION_FAILURE,
        "Document conversion failed - please try again or contact support.",
        422,
    ),
    ExportErrorCategory.RATE_LIMITED: ErrorDefinition(
        ExportErrorCategory.RATE_LIMITED,
        "Too many concurrent exports. Please try again later.",
        429,
    ),
    ExportErrorCategory.INTERNAL: ErrorDefinition(
        ExportErrorCategory.INTERNAL, "Export failed due to technical error.", 500
    ),
}

# Fallback heuristics for collaborator errors that carry no type information.
_MESSAGE_SIGNALS = (
    (ExportErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ExportErrorCategory.RESOURCE_EXCEEDED, ("memory", "size")),
    (ExportErrorCategory.CONVERSION_FAILURE, ("pandoc", "conversion")),
)


class ExportError(Exception):
    """Structured export failure carrying its category and HTTP status."""

    category: ExportErrorCategory = ExportErrorCategory.INTERNAL

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        definition = ERROR_DEFINITIONS[self.category]
        self.message = message or definition.message
        self.status_code = definition.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.category.value}
        body.update(self.details)
        return body


class ExportValidationError(ExportError):
    category = ExportErrorCategory.VALIDATION

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid export options: {', '.join(self.errors)}", details={"errors": self.errors})


class ExportForbiddenError(ExportError):
    category = ExportErrorCategory.FORBIDDEN


class ExportNotFoundError(ExportError):
    category = ExportErrorCategory.NOT_FOUND


class ExportTimeoutError(ExportError):
    category = ExportErrorCategory.TIMEOUT


class ExportTooLargeError(ExportError):
    category = ExportErrorCategory.RESOURCE_EXCEEDED


class ExportConversionError(ExportError):
    category = ExportErrorCategory.CONVERSION_FAILURE


class ExportRateLimitedError(ExportError):
    category = ExportErrorCategory.RATE_LIMITED


class ExportInternalError(ExportError):
    category = ExportErrorCategory.INTERNAL


_CATEGORY_TYPES = {
    ExportErrorCategory.TIMEOUT: ExportTimeoutError,
    ExportErrorCategory.RESOURCE_EXCEEDED: ExportTooLargeError,
    ExportErrorCategory.CONVERSION_FAILURE: ExportConversionError,
}


class PdfConversionError(Exception):
    """Raised by PDF converters when the rendering engine rejects a document."""


def classify_failure(exc: BaseException) -> ExportError:
    """
    Map any exception raised inside the pipeline to an ExportError.

    Already-classified errors pass through unchanged. Typed signals
    (TimeoutError, MemoryError, PdfConversionError) win over message
    heuristics; anything unrecognised becomes an internal error whose
    public message never includes the original text.
    """
    if isinstance(exc, ExportError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ExportTimeoutError()
    if isinstance(exc, MemoryError):
        return ExportTooLargeError()
    if isinstance(exc, PdfConversionError):
        return ExportConversionError()

    text = str(exc).lower()
    for category, fragments in _MESSAGE_SIGNALS:
        if any(fragment in text for fragment in fragments):
            return _CATEGORY_TYPES[category]()
    return ExportInternalError()


class ArtifactStorageError(Exception):
    """Raised by artifact stores when an upload cannot be completed."""
