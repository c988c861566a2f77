"""
In-process Markdown combiner.

Produces a single document from the retrieved project files:

    ---                       (YAML front matter, when metadata is requested)
    title: "..."
    ---
    # Project title
    ---
    ## Table of Contents       (multi-file exports with metadata)
    ---
    ## file one                (section headers only for multi-file exports)
    ...
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Sequence

from .collaborators import MarkdownDocument, MarkdownGenerator, RetrievedFile
from .models import ExportRequest
from .utils import document_name, format_file_size

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
MAX_TITLE_LENGTH = 100
MAX_SECTION_NAME_LENGTH = 255

_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_UNSAFE_HEADING_CHARS = re.compile(r"[#\[\](){}<>'\"&]")


def _clean_heading(text: str, fallback: str, max_length: int) -> str:
    cleaned = _UNSAFE_HEADING_CHARS.sub("", text.strip())[:max_length].strip()
    return cleaned or fallback


def _anchor(text: str) -> str:
    anchor = re.sub(r"[^a-z0-9\s-]", "", text.lower())
    anchor = re.sub(r"\s+", "-", anchor)
    return re.sub(r"-+", "-", anchor).strip("-")


def shift_headings(content: str, levels: int) -> str:
    """Demote every ATX heading by ``levels`` (capped at h6)."""
    if levels <= 0:
        return content
    shifted: List[str] = []
    for line in content.splitlines():
        match = _HEADING.match(line)
        if match:
            depth = min(6, len(match.group(1)) + levels)
            shifted.append(f"{'#' * depth} {match.group(2)}")
        else:
            shifted.append(line)
    return "\n".join(shifted)


def normalize_markdown(content: str) -> str:
    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    normalized = re.sub(r"[ \t]+$", "", normalized, flags=re.MULTILINE)
    normalized = re.sub(r"\n{3,}", "\n\n", normalized).strip()
    return f"{normalized}\n" if normalized else ""


class CombiningMarkdownGenerator(MarkdownGenerator):
    def __init__(
        self,
        platform_version: str = "0.1.0",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._platform_version = platform_version
        self._clock = clock

    async def combine(self, files: Sequence[RetrievedFile], request: ExportRequest) -> MarkdownDocument:
        exported_at = self._clock()
        title = _clean_heading(request.project_id, "Untitled Project", MAX_TITLE_LENGTH)
        total_size = sum(item.size for item in files)
        multi_file = len(files) > 1

        blocks: List[str] = []
        if request.include_metadata:
            blocks.append(self._front_matter(title, exported_at, len(files), total_size))
        if multi_file and request.include_metadata:
            blocks.append(self._table_of_contents(files))
        blocks.extend(self._file_section(item, multi_file, request.include_metadata) for item in files)

        content = normalize_markdown(SECTION_SEPARATOR.join(blocks))
        file_count = f" ({len(files)} files)" if multi_file else ""
        file_name = f"{document_name(title, 'Project')} - Export Markdown{file_count} - {exported_at.date().isoformat()}.md"

        logger.info(f"Combined {len(files)} file(s) into {len(content)} characters for project {request.project_id}")
        return MarkdownDocument(
            content=content,
            file_name=file_name,
            metadata={
                "title": title,
                "exportedAt": exported_at.isoformat(),
                "filesCount": len(files),
                "totalSize": total_size,
                "platformVersion": self._platform_version,
            },
        )

    def _front_matter(self, title: str, exported_at: datetime, file_count: int, total_size: int) -> str:
        return "\n".join(
            [
                "---",
                f'title: "{title}"',
                f'exported_at: "{exported_at.isoformat()}"',
                f'platform_version: "{self._platform_version}"',
                f"files_count: {file_count}",
                f"total_size: {total_size}",
                "---",
                "",
                f"# {title}",
            ]
        )

    @staticmethod
    def _table_of_contents(files: Sequence[RetrievedFile]) -> str:
        lines = ["## Table of Contents", ""]
        for position, item in enumerate(files, start=1):
            name = _clean_heading(item.name, "Untitled File", MAX_SECTION_NAME_LENGTH)
            lines.append(f"{position}. [{name}](#{_anchor(name)})")
        return "\n".join(lines)

    @staticmethod
    def _file_section(item: RetrievedFile, multi_file: bool, include_metadata: bool) -> str:
        if not multi_file:
            return item.content
        name = _clean_heading(item.name, "Untitled File", MAX_SECTION_NAME_LENGTH)
        lines = [f"## {name}", ""]
        if include_metadata:
            details = [f"**Size:** {format_file_size(item.size)}", f"**Type:** {item.content_type}"]
            if item.last_modified is not None:
                details.append(f"**Last modified:** {item.last_modified.date().isoformat()}")
            lines.extend([" • ".join(details), ""])
        lines.append(shift_headings(item.content, 1))
        return "\n".join(lines)
