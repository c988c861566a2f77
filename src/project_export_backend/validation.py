"""
Request validation and scheduling heuristics.

Validation is a plain function collecting every problem at once rather than
stopping at the first, so clients can fix a request in a single round trip.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List

from .models import ExportComplexity, ExportFormat, ExportRequest, PageSize

MAX_FILE_IDS = 50
MIN_MARGIN_MM = 10
MAX_MARGIN_MM = 50
# Larger margins leave too little printable area on the page.
MAX_MARGIN_BY_PAGE_SIZE: Dict[str, float] = {PageSize.A4.value: 40, PageSize.LETTER.value: 35}

LOW_COMPLEXITY_MAX_FILES = 5
HIGH_COMPLEXITY_MIN_FILES = 21

BASE_DURATION_MS = 5000
PDF_DURATION_MS = 10000
PER_FILE_DURATION_MS = 1000
# Assumed file count when the whole project is exported.
FULL_EXPORT_FILE_ESTIMATE = 5

FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

SUPPORTED_FORMATS = {fmt.value for fmt in ExportFormat}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_export_request(request: ExportRequest) -> ValidationResult:
    errors: List[str] = []

    if not request.project_id.strip():
        errors.append("Project id is required")

    if request.format not in SUPPORTED_FORMATS:
        errors.append(f"Unsupported export format: {request.format} (expected one of: markdown, pdf)")

    if request.file_ids:
        if len(request.file_ids) > MAX_FILE_IDS:
            errors.append(f"Too many files selected (max: {MAX_FILE_IDS})")
        invalid_ids = [file_id for file_id in request.file_ids if not FILE_ID_PATTERN.match(file_id)]
        if invalid_ids:
            errors.append(f"Invalid file ids: {', '.join(repr(file_id) for file_id in invalid_ids[:10])}")

    if request.format == ExportFormat.PDF.value and request.pdf_options is not None:
        options = request.pdf_options
        if options.page_size not in MAX_MARGIN_BY_PAGE_SIZE:
            errors.append("Page size must be A4 or Letter")
        if not MIN_MARGIN_MM <= options.margins <= MAX_MARGIN_MM:
            errors.append(f"Margins must be between {MIN_MARGIN_MM} and {MAX_MARGIN_MM} mm")
        elif options.margins > MAX_MARGIN_BY_PAGE_SIZE.get(options.page_size, MAX_MARGIN_MM):
            errors.append("PDF options are inconsistent with selected page size")

    return ValidationResult(valid=not errors, errors=errors)


def classify_complexity(request: ExportRequest) -> ExportComplexity:
    file_count = request.selected_file_count
    if request.format == ExportFormat.MARKDOWN.value and file_count <= LOW_COMPLEXITY_MAX_FILES:
        return ExportComplexity.LOW
    if request.format == ExportFormat.PDF.value or file_count >= HIGH_COMPLEXITY_MIN_FILES:
        return ExportComplexity.HIGH
    return ExportComplexity.MEDIUM


def estimate_duration_ms(request: ExportRequest) -> int:
    file_count = request.selected_file_count or FULL_EXPORT_FILE_ESTIMATE
    estimate = BASE_DURATION_MS + file_count * PER_FILE_DURATION_MS
    if request.format == ExportFormat.PDF.value:
        estimate += PDF_DURATION_MS
    return estimate
