"""
Unit tests for job handlers.
"""

from typing import Any

import pytest

from pdfqueue.constants import JOB_CLEANUP, JOB_GENERATE_PDF, JobState
from pdfqueue.documents import DirectoryTemplateSource, TemplateNotFound
from pdfqueue.documents.handlers import build_cleanup_handler, build_generate_pdf_handler
from pdfqueue.errors import HandlerError, InvalidPayload
from pdfqueue.queue import Queue
from pdfqueue.types.job import JobContext

TEMPLATE = "<h1>Quote for {{contact.firstname}} {{contact.lastname}}</h1><p>{{company.name}}</p>"


class FakeRenderer:
    """Records conversions and returns fixed PDF bytes."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    async def html_to_pdf(self, html: str, filename: str = "document.pdf") -> bytes:
        self.calls.append((html, filename))
        return b"%PDF-1.7 fake"


class FakeUploader:
    """Records uploads and attachments."""

    def __init__(self):
        self.uploads: list[tuple[str, bytes]] = []
        self.attachments: list[tuple[str, str, str]] = []

    async def upload_file(self, filename: str, content: bytes) -> dict[str, Any]:
        self.uploads.append((filename, content))
        return {"id": "file-1", "url": "https://files.example/file-1.pdf"}

    async def attach_to_object(self, file_id: str, object_type: str, object_id: str) -> None:
        self.attachments.append((file_id, object_type, object_id))


class TestGeneratePdfHandler:
    """Tests for the generate-pdf handler."""

    @pytest.fixture
    def templates(self, tmp_path) -> DirectoryTemplateSource:
        (tmp_path / "quote.html").write_text(TEMPLATE, encoding="utf-8")
        return DirectoryTemplateSource(tmp_path)

    @pytest.fixture
    def renderer(self) -> FakeRenderer:
        return FakeRenderer()

    @pytest.fixture
    def uploader(self) -> FakeUploader:
        return FakeUploader()

    @pytest.fixture
    def progress(self) -> list[int]:
        return []

    @pytest.fixture
    def make_context(self, progress: list[int]):
        def factory(payload: Any, job_id: str = "42") -> JobContext:
            async def reporter(value: int) -> bool:
                progress.append(value)
                return True

            return JobContext(
                job_id=job_id,
                name=JOB_GENERATE_PDF,
                attempt=1,
                max_attempts=3,
                payload=payload,
                lock_token="token",
                worker_id="test-worker",
                progress_reporter=reporter,
            )

        return factory

    @pytest.mark.asyncio
    async def test_generates_uploads_and_attaches(
        self,
        templates,
        renderer,
        uploader,
        progress,
        make_context,
        sample_job_payload,
    ):
        handler = build_generate_pdf_handler(templates, renderer, uploader)

        result = await handler(make_context(sample_job_payload))

        filename = "quote-contact-1001-42.pdf"
        assert result == {
            "fileId": "file-1",
            "fileUrl": "https://files.example/file-1.pdf",
            "fileName": filename,
            "sizeBytes": len(b"%PDF-1.7 fake"),
            "missingVariables": ["company.name"],
        }

        html, rendered_name = renderer.calls[0]
        assert "Quote for Ada Lovelace" in html
        assert rendered_name == filename
        assert uploader.uploads == [(filename, b"%PDF-1.7 fake")]
        assert uploader.attachments == [("file-1", "contact", "1001")]
        assert progress == [10, 30, 60, 80, 100]

    @pytest.mark.asyncio
    async def test_plural_object_type(self, templates, renderer, uploader, make_context):
        handler = build_generate_pdf_handler(templates, renderer, uploader)
        payload = {
            "templateId": "quote",
            "objectId": "77",
            "objectType": "Companies",
            "objectData": {"name": "Analytical Engines Ltd"},
        }

        result = await handler(make_context(payload))

        assert result["fileName"] == "quote-company-77-42.pdf"
        assert uploader.attachments == [("file-1", "company", "77")]

    @pytest.mark.asyncio
    async def test_same_job_produces_same_file_name(self, templates, renderer, uploader, make_context, sample_job_payload):
        """A retried job overwrites the same file instead of creating another."""
        handler = build_generate_pdf_handler(templates, renderer, uploader)

        first = await handler(make_context(sample_job_payload))
        second = await handler(make_context(sample_job_payload))

        assert first["fileName"] == second["fileName"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"templateId": "quote", "objectId": "1"},
            {"templateId": "", "objectId": "1", "objectType": "contact"},
            "not-a-dict",
        ],
    )
    async def test_invalid_payload(self, templates, renderer, uploader, make_context, payload):
        handler = build_generate_pdf_handler(templates, renderer, uploader)

        with pytest.raises(InvalidPayload, match="Invalid generate-pdf payload"):
            await handler(make_context(payload))

        assert renderer.calls == []

    @pytest.mark.asyncio
    async def test_missing_template(self, templates, renderer, uploader, make_context, sample_job_payload):
        handler = build_generate_pdf_handler(templates, renderer, uploader)

        with pytest.raises(TemplateNotFound):
            await handler(make_context({**sample_job_payload, "templateId": "invoice"}))

    @pytest.mark.asyncio
    async def test_cancelled_context_stops_before_upload(
        self,
        templates,
        renderer,
        uploader,
        make_context,
        sample_job_payload,
    ):
        handler = build_generate_pdf_handler(templates, renderer, uploader)
        context = make_context(sample_job_payload)
        context.cancelled.set()

        with pytest.raises(HandlerError, match="cancelled"):
            await handler(context)

        assert renderer.calls == []
        assert uploader.uploads == []

    @pytest.mark.asyncio
    async def test_renderer_failure_propagates(self, templates, uploader, make_context, sample_job_payload):
        class BrokenRenderer:
            async def html_to_pdf(self, html: str, filename: str = "document.pdf") -> bytes:
                raise ConnectionError("PDF service unavailable")

        handler = build_generate_pdf_handler(templates, BrokenRenderer(), uploader)

        with pytest.raises(ConnectionError):
            await handler(make_context(sample_job_payload))

        assert uploader.uploads == []


class TestCleanupHandler:
    """Tests for the cleanup handler."""

    def _context(self, payload: Any) -> JobContext:
        return JobContext(
            job_id="1",
            name=JOB_CLEANUP,
            attempt=1,
            max_attempts=1,
            payload=payload,
            lock_token="token",
            worker_id="test-worker",
        )

    @pytest.mark.asyncio
    async def test_cleans_finished_jobs(self, queue: Queue):
        for outcome in ("complete", "fail"):
            await queue.enqueue(JOB_GENERATE_PDF, {})
            job = await queue.claim(JOB_GENERATE_PDF, "token", 30_000)
            if outcome == "complete":
                await queue.complete(job, "token", "ok")
            else:
                await queue.fail(job, "token", "boom")
        handler = build_cleanup_handler(queue)

        result = await handler(self._context({"completedGraceMs": 0, "failedGraceMs": 0}))

        assert result == {"completed": 1, "failed": 1}
        counts = await queue.get_job_counts()
        assert counts[JobState.COMPLETED.value] == 0
        assert counts[JobState.FAILED.value] == 0

    @pytest.mark.asyncio
    async def test_grace_period_keeps_recent_jobs(self, queue: Queue):
        await queue.enqueue(JOB_GENERATE_PDF, {})
        job = await queue.claim(JOB_GENERATE_PDF, "token", 30_000)
        await queue.complete(job, "token", "ok")
        handler = build_cleanup_handler(queue)

        result = await handler(self._context({"completedGraceMs": 60_000}))

        assert result["completed"] == 0
        assert await queue.get_state(job.id) is JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_payload(self, queue: Queue):
        handler = build_cleanup_handler(queue)

        with pytest.raises(InvalidPayload, match="Invalid cleanup payload"):
            await handler(self._context({"limit": -1}))
