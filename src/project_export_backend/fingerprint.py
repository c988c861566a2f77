from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

from .models import ExportFormat, ExportRequest, PdfOptions


def normalized_pdf_options(request: ExportRequest) -> Optional[Dict[str, Any]]:
    """PDF options with defaults filled in; None for formats that ignore them."""
    if request.format != ExportFormat.PDF.value:
        return None
    options = request.pdf_options or PdfOptions()
    return {
        "pageSize": options.page_size,
        "margins": float(options.margins),
        "includeTableOfContents": options.include_table_of_contents,
    }


def compute_fingerprint(request: ExportRequest) -> str:
    """
    Deterministic SHA-256 digest identifying semantically identical requests.

    File order does not matter and PDF options only count for PDF exports.
    The user is part of the digest, so cached artifacts are never shared
    across users.
    """
    payload = {
        "userId": request.user_id,
        "projectId": request.project_id,
        "format": request.format,
        "fileIds": sorted(request.file_ids) if request.file_ids else None,
        "includeMetadata": request.include_metadata,
        "pdfOptions": normalized_pdf_options(request),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
