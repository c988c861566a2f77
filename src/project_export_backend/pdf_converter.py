"""
Pandoc-based Markdown to PDF conversion.

Pandoc runs as an asyncio subprocess in a scratch directory, so a slow LaTeX
run never blocks the event loop. Callers bound the run time with
asyncio.wait_for; a cancelled conversion kills the child process.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import List

from .collaborators import MarkdownDocument, PdfConverter, PdfDocument
from .errors import PdfConversionError
from .models import PageSize, PdfOptions

logger = logging.getLogger(__name__)

PAPER_SIZES = {PageSize.A4.value: "a4", PageSize.LETTER.value: "letter"}
MAX_STDERR_CHARS = 500


class PandocPdfConverter(PdfConverter):
    def __init__(self, pandoc_path: str = "pandoc", pdf_engine: str = "pdflatex", toc_depth: int = 3) -> None:
        self._pandoc_path = pandoc_path
        self._pdf_engine = pdf_engine
        self._toc_depth = toc_depth

    def build_arguments(self, source: Path, target: Path, options: PdfOptions) -> List[str]:
        arguments = [
            self._pandoc_path,
            str(source),
            "--from=markdown",
            f"--output={target}",
            f"--pdf-engine={self._pdf_engine}",
            "--variable",
            f"geometry:margin={options.margins:g}mm",
            "--variable",
            f"papersize:{PAPER_SIZES.get(options.page_size, 'a4')}",
            "--variable",
            "colorlinks:true",
        ]
        if options.include_table_of_contents:
            arguments.extend(["--table-of-contents", f"--toc-depth={self._toc_depth}"])
        return arguments

    async def convert(self, markdown: MarkdownDocument, options: PdfOptions) -> PdfDocument:
        with tempfile.TemporaryDirectory(prefix="export-pdf-") as scratch:
            source = Path(scratch) / "document.md"
            target = Path(scratch) / "document.pdf"
            source.write_text(markdown.content, encoding="utf-8")

            try:
                process = await asyncio.create_subprocess_exec(
                    *self.build_arguments(source, target, options),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise PdfConversionError(f"pandoc executable not found: {self._pandoc_path}") from exc

            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

            if process.returncode != 0:
                detail = stderr.decode("utf-8", errors="replace").strip()[:MAX_STDERR_CHARS]
                logger.error(f"pandoc exited with {process.returncode}: {detail}")
                raise PdfConversionError(f"pandoc conversion failed with exit code {process.returncode}")
            if not target.exists():
                raise PdfConversionError("pandoc conversion produced no output")

            data = target.read_bytes()

        logger.info(f"Converted {markdown.file_name} to PDF ({len(data)} bytes)")
        return PdfDocument(data=data, file_name=_pdf_file_name(markdown.file_name))

    async def is_ready(self) -> bool:
        return shutil.which(self._pandoc_path) is not None


def _pdf_file_name(markdown_name: str, fallback: str = "export") -> str:
    stem = markdown_name[:-3] if markdown_name.endswith(".md") else markdown_name
    stem = stem.replace("Export Markdown", "Export PDF")
    return f"{stem or fallback}.pdf"
