"""
Tests for the concrete collaborators: Markdown combiner, file service client,
artifact stores and the Pandoc converter.
"""

import asyncio
import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError
from conftest import make_file

from project_export_backend.artifact_store import LocalArtifactStore, S3ArtifactStore
from project_export_backend.collaborators import MarkdownDocument
from project_export_backend.errors import ArtifactStorageError, PdfConversionError
from project_export_backend.file_retrieval import HttpFileRetrieval
from project_export_backend.main import cleanup_artifacts_periodically
from project_export_backend.markdown_generator import (
    CombiningMarkdownGenerator,
    normalize_markdown,
    shift_headings,
)
from project_export_backend.models import ExportRequest, PdfOptions
from project_export_backend.pdf_converter import PandocPdfConverter, _pdf_file_name


def export_request(**overrides) -> ExportRequest:
    fields = {"project_id": "p1", "user_id": "user-1", "format": "markdown"}
    fields.update(overrides)
    return ExportRequest(**fields)


class TestMarkdownGenerator:
    @pytest.mark.asyncio
    async def test_single_file_with_metadata(self, clock):
        generator = CombiningMarkdownGenerator(platform_version="1.2.3", clock=clock.now)
        document = await generator.combine([make_file("f1")], export_request())

        assert document.file_name == "p1 - Export Markdown - 2026-01-15.md"
        assert document.content.startswith('---\ntitle: "p1"\n')
        assert 'platform_version: "1.2.3"' in document.content
        assert "# p1" in document.content
        assert "Table of Contents" not in document.content
        assert "# f1\n\nContent of f1." in document.content
        assert document.metadata["filesCount"] == 1

    @pytest.mark.asyncio
    async def test_multiple_files_get_sections_and_toc(self, clock):
        generator = CombiningMarkdownGenerator(clock=clock.now)
        files = [make_file("f1"), make_file("f2", name="Second [draft].md")]
        document = await generator.combine(files, export_request())

        assert document.file_name == "p1 - Export Markdown (2 files) - 2026-01-15.md"
        assert "## Table of Contents" in document.content
        assert "1. [f1.md](#f1md)" in document.content
        assert "2. [Second draft.md](#second-draftmd)" in document.content
        assert "## Second draft.md" in document.content
        assert "**Size:**" in document.content
        # file headings are demoted below the section heading
        assert "\n## f1\n" in document.content
        assert "\n\n---\n\n## f1.md" in document.content

    @pytest.mark.asyncio
    async def test_without_metadata(self, clock):
        generator = CombiningMarkdownGenerator(clock=clock.now)
        files = [make_file("f1"), make_file("f2")]
        document = await generator.combine(files, export_request(include_metadata=False))

        assert not document.content.startswith("---")
        assert "Table of Contents" not in document.content
        assert "**Size:**" not in document.content
        assert document.content.startswith("## f1.md")

    def test_shift_headings_caps_at_six(self):
        assert shift_headings("# a\n###### b\ntext #not", 1) == "## a\n###### b\ntext #not"
        assert shift_headings("# a", 0) == "# a"

    def test_normalize_markdown(self):
        assert normalize_markdown("a  \r\n\r\n\r\n\r\nb\r") == "a\n\nb\n"
        assert normalize_markdown("   ") == ""


def file_service(handler, **kwargs) -> HttpFileRetrieval:
    return HttpFileRetrieval("http://files.test", transport=httpx.MockTransport(handler), **kwargs)


class TestHttpFileRetrieval:
    @pytest.mark.asyncio
    async def test_list_project_files(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/projects/p1/files":
                return httpx.Response(200, json=["f1", "f2"])
            if request.url.path == "/projects/p2/files":
                return httpx.Response(200, json={"files": [{"id": "f3"}, {"name": "no id"}]})
            return httpx.Response(404)

        service = file_service(handler)
        assert await service.list_project_files("p1") == ["f1", "f2"]
        assert await service.list_project_files("p2") == ["f3"]
        assert await service.list_project_files("unknown") == []
        await service.close()

    @pytest.mark.asyncio
    async def test_listing_server_error_propagates(self):
        service = file_service(lambda request: httpx.Response(500))
        with pytest.raises(httpx.HTTPStatusError):
            await service.list_project_files("p1")
        await service.close()

    @pytest.mark.asyncio
    async def test_get_many_reports_each_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            file_id = request.url.path.rsplit("/", 1)[-1]
            if file_id == "ok":
                return httpx.Response(
                    200,
                    json={
                        "id": "ok",
                        "name": "Notes.md",
                        "content": "# Notes",
                        "lastModified": "2026-01-10T08:00:00Z",
                    },
                )
            if file_id == "busy":
                return httpx.Response(503)
            if file_id == "broken":
                return httpx.Response(200, json={"name": "no content"})
            if file_id == "slow":
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(404)

        service = file_service(handler, max_parallel=2)
        result = await service.get_many(["ok", "busy", "broken", "slow", "gone"])

        assert [item.id for item in result.successful] == ["ok"]
        assert result.successful[0].name == "Notes.md"
        assert result.successful[0].last_modified.year == 2026
        assert result.total_size == len("# Notes")

        failures = {failure.file_id: failure for failure in result.failed}
        assert failures["busy"].error_code == "503"
        assert failures["busy"].retryable is True
        assert failures["gone"].error_code == "404"
        assert failures["gone"].retryable is False
        assert failures["broken"].error_code == "INVALID_RESPONSE"
        assert failures["slow"].error_code == "TIMEOUT"
        await service.close()

    @pytest.mark.asyncio
    async def test_service_token_is_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["authorization"] = request.headers.get("authorization")
            return httpx.Response(200, json=[])

        service = file_service(handler, service_token="s3cret")
        await service.list_project_files("p1")
        assert seen["authorization"] == "Bearer s3cret"
        await service.close()

    @pytest.mark.asyncio
    async def test_is_ready(self):
        healthy = file_service(lambda request: httpx.Response(200, json={"status": "ok"}))
        assert await healthy.is_ready() is True

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        down = file_service(unreachable)
        assert await down.is_ready() is False
        await healthy.close()
        await down.close()


class TestLocalArtifactStore:
    @pytest.mark.asyncio
    async def test_upload_writes_file_and_signs_url(self, tmp_path, clock):
        store = LocalArtifactStore(tmp_path, "http://api.test/", "secret", clock=clock.now)
        stored = await store.upload(b"hello", "My Project - Export.md", "text/markdown")

        object_id, name = stored.object_key.split("/")
        assert name == "my-project-export.md"
        assert (tmp_path / object_id / name).read_bytes() == b"hello"
        assert stored.download_url.startswith(f"http://api.test/export/files/{object_id}/{name}?expires=")
        assert (stored.expires_at - clock.now()).total_seconds() == 24 * 3600

        expires = int(stored.expires_at.timestamp())
        signature = stored.download_url.rsplit("signature=", 1)[-1]
        assert store.verify(object_id, name, expires, signature)
        assert not store.verify(object_id, "other.md", expires, signature)
        assert store.resolve(object_id, name) == (tmp_path / object_id / name).resolve()

    def test_expired_signature_is_rejected(self, tmp_path, clock):
        store = LocalArtifactStore(tmp_path, "http://api.test", "secret", clock=clock.now)
        expires = int(clock.now().timestamp()) - 1
        assert not store.verify("a" * 32, "x.md", expires, store.sign("a" * 32, "x.md", expires))

    def test_resolve_rejects_unsafe_paths(self, tmp_path):
        store = LocalArtifactStore(tmp_path, "http://api.test", "secret")
        assert store.resolve("not-hex", "x.md") is None
        assert store.resolve("a" * 32, "../../etc/passwd") is None
        assert store.resolve("a" * 32, "missing.md") is None

    def test_signing_secret_is_required(self, tmp_path):
        with pytest.raises(ValueError):
            LocalArtifactStore(tmp_path, "http://api.test", "")

    @pytest.mark.asyncio
    async def test_is_ready_creates_root(self, tmp_path):
        root = tmp_path / "nested" / "exports"
        store = LocalArtifactStore(root, "http://api.test", "secret")
        assert await store.is_ready() is True
        assert root.is_dir()

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired_objects(self, tmp_path, clock):
        store = LocalArtifactStore(tmp_path, "http://api.test", "secret", clock=clock.now)
        old = await store.upload(b"old", "old.md", "text/markdown")
        fresh = await store.upload(b"fresh", "fresh.md", "text/markdown")
        (tmp_path / "notes").mkdir()

        old_dir = tmp_path / old.object_key.split("/")[0]
        fresh_dir = tmp_path / fresh.object_key.split("/")[0]
        aged = (clock.now() - timedelta(hours=25)).timestamp()
        recent = (clock.now() - timedelta(hours=1)).timestamp()
        os.utime(old_dir, (aged, aged))
        os.utime(fresh_dir, (recent, recent))

        assert await store.cleanup_expired() == 1
        assert not old_dir.exists()
        assert (fresh_dir / "fresh.md").read_bytes() == b"fresh"
        assert (tmp_path / "notes").is_dir()

    @pytest.mark.asyncio
    async def test_cleanup_is_bounded_per_sweep(self, tmp_path, clock):
        store = LocalArtifactStore(tmp_path, "http://api.test", "secret", clock=clock.now, max_removals=2)
        aged = (clock.now() - timedelta(days=3)).timestamp()
        for index in range(3):
            stored = await store.upload(b"x", f"{index}.md", "text/markdown")
            os.utime(tmp_path / stored.object_key.split("/")[0], (aged, aged))

        assert await store.cleanup_expired() == 2
        assert await store.cleanup_expired() == 1
        assert await store.cleanup_expired() == 0

    @pytest.mark.asyncio
    async def test_cleanup_without_root(self, tmp_path):
        store = LocalArtifactStore(tmp_path / "missing", "http://api.test", "secret")
        assert await store.cleanup_expired() == 0

    @pytest.mark.asyncio
    async def test_periodic_cleanup_sweeps_until_cancelled(self, artifact_store):
        calls = []

        async def cleanup_expired():
            calls.append(1)
            return 0

        artifact_store.cleanup_expired = cleanup_expired
        task = asyncio.create_task(cleanup_artifacts_periodically(artifact_store, 0.001))
        while len(calls) < 3:
            await asyncio.sleep(0.001)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 3


class TestS3ArtifactStore:
    @pytest.mark.asyncio
    async def test_upload_puts_object_and_presigns(self, clock):
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://bucket.s3.amazonaws.com/signed"
        store = S3ArtifactStore("exports-bucket", url_expiry_hours=2, client=client, clock=clock.now)

        stored = await store.upload(b"%PDF", "Report.pdf", "application/pdf")

        assert stored.download_url == "https://bucket.s3.amazonaws.com/signed"
        assert (stored.expires_at - clock.now()).total_seconds() == 7200
        put_kwargs = client.put_object.call_args.kwargs
        assert put_kwargs["Bucket"] == "exports-bucket"
        assert put_kwargs["Key"].startswith("exports/")
        assert put_kwargs["Key"].endswith("/report.pdf")
        assert put_kwargs["ContentType"] == "application/pdf"
        presign_kwargs = client.generate_presigned_url.call_args.kwargs
        assert presign_kwargs["ExpiresIn"] == 7200
        assert presign_kwargs["Params"]["ResponseContentDisposition"] == 'attachment; filename="Report.pdf"'

    @pytest.mark.asyncio
    async def test_client_errors_become_storage_errors(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        store = S3ArtifactStore("exports-bucket", client=client)
        with pytest.raises(ArtifactStorageError):
            await store.upload(b"data", "x.md", "text/markdown")

    @pytest.mark.asyncio
    async def test_missing_bucket(self):
        store = S3ArtifactStore("")
        assert await store.is_ready() is False
        with pytest.raises(ArtifactStorageError):
            await store.upload(b"data", "x.md", "text/markdown")


class TestPandocPdfConverter:
    def test_arguments_reflect_options(self):
        converter = PandocPdfConverter(pdf_engine="xelatex")
        arguments = converter.build_arguments(
            Path("in.md"),
            Path("out.pdf"),
            PdfOptions(page_size="Letter", margins=25, include_table_of_contents=True),
        )
        assert arguments[0] == "pandoc"
        assert "--pdf-engine=xelatex" in arguments
        assert "geometry:margin=25mm" in arguments
        assert "papersize:letter" in arguments
        assert "--table-of-contents" in arguments
        assert "--toc-depth=3" in arguments

    def test_table_of_contents_is_optional(self):
        arguments = PandocPdfConverter().build_arguments(Path("in.md"), Path("out.pdf"), PdfOptions())
        assert "papersize:a4" in arguments
        assert "geometry:margin=20mm" in arguments
        assert "--table-of-contents" not in arguments

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        converter = PandocPdfConverter(pandoc_path="/nonexistent/pandoc")
        assert await converter.is_ready() is False
        with pytest.raises(PdfConversionError):
            await converter.convert(MarkdownDocument(content="# x", file_name="x.md"), PdfOptions())

    def test_pdf_file_name(self):
        assert _pdf_file_name("p1 - Export Markdown - 2026-01-15.md") == "p1 - Export PDF - 2026-01-15.pdf"
        assert _pdf_file_name(".md") == "export.pdf"
