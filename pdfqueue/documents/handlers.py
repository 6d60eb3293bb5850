"""
Job handlers for document generation and queue maintenance.

Handlers may run more than once for the same job (retries, stalled
recovery), so every step is safe to repeat: the output file name is
derived from the job id and uploads overwrite.
"""

import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from pdfqueue.config import get_settings
from pdfqueue.constants import JobState
from pdfqueue.documents.sources import TemplateSource
from pdfqueue.documents.template import builtin_variables, missing_variables, render_template
from pdfqueue.errors import HandlerError, InvalidPayload
from pdfqueue.queue import Queue
from pdfqueue.types.job import JobContext, JobHandler

logger = logging.getLogger(__name__)


class PdfRenderer(Protocol):
    async def html_to_pdf(self, html: str, filename: str = ...) -> bytes:
        ...


class FileUploader(Protocol):
    async def upload_file(self, filename: str, content: bytes) -> dict[str, Any]:
        ...

    async def attach_to_object(self, file_id: str, object_type: str, object_id: str) -> None:
        ...


class GeneratePdfPayload(BaseModel):
    """Payload of a generate-pdf job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    template_id: str = Field(..., min_length=1)
    object_id: str = Field(..., min_length=1)
    object_type: str = Field(..., min_length=1)
    object_data: dict[str, Any] = Field(default_factory=dict)


class CleanupPayload(BaseModel):
    """Payload of a cleanup job. Unset grace periods fall back to settings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    completed_grace_ms: int | None = Field(default=None, ge=0)
    failed_grace_ms: int | None = Field(default=None, ge=0)
    limit: int = Field(default=0, ge=0)


PLURAL_OBJECT_TYPES = {"contacts": "contact", "companies": "company", "deals": "deal"}


def _check_cancelled(context: JobContext) -> None:
    if context.is_cancelled:
        raise HandlerError(f"Job {context.job_id} was cancelled", job_id=context.job_id)


def build_generate_pdf_handler(
    templates: TemplateSource,
    renderer: PdfRenderer,
    uploader: FileUploader,
) -> JobHandler:
    """
    Build the generate-pdf handler.

    Steps: load template, render with the CRM object's data, convert to
    PDF, upload to HubSpot and attach it to the object. Progress is
    reported after each step. Collaborator failures propagate and are
    retried by the worker pool; an invalid payload raises InvalidPayload,
    which fails the job without retrying.

    Args:
        templates: Where template HTML comes from.
        renderer: HTML to PDF converter.
        uploader: HubSpot file client.

    Returns:
        The handler coroutine function.
    """

    async def handle_generate_pdf(context: JobContext) -> dict[str, Any]:
        try:
            payload = GeneratePdfPayload.model_validate(context.payload)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid generate-pdf payload: {e}") from e

        object_type = payload.object_type.lower()
        object_type = PLURAL_OBJECT_TYPES.get(object_type, object_type)
        logger.info(
            "Generating document",
            extra={
                "job_id": context.job_id,
                "template_id": payload.template_id,
                "object_type": object_type,
                "object_id": payload.object_id,
                "attempt": context.attempt,
            },
        )
        await context.report_progress(10)

        html = await templates.get_template(payload.template_id)
        data: dict[str, Any] = {
            **builtin_variables(),
            object_type: payload.object_data,
            "object": payload.object_data,
        }
        missing = missing_variables(html, data)
        if missing:
            logger.warning(
                "Template variables missing from object data",
                extra={"job_id": context.job_id, "missing": missing},
            )
        rendered = render_template(html, data)
        await context.report_progress(30)
        _check_cancelled(context)

        filename = f"{payload.template_id}-{object_type}-{payload.object_id}-{context.job_id}.pdf"
        pdf = await renderer.html_to_pdf(rendered, filename)
        await context.report_progress(60)
        _check_cancelled(context)

        uploaded = await uploader.upload_file(filename, pdf)
        await context.report_progress(80)
        _check_cancelled(context)

        await uploader.attach_to_object(uploaded["id"], object_type, payload.object_id)
        await context.report_progress(100)

        return {
            "fileId": uploaded["id"],
            "fileUrl": uploaded.get("url"),
            "fileName": filename,
            "sizeBytes": len(pdf),
            "missingVariables": missing,
        }

    return handle_generate_pdf


def build_cleanup_handler(queue: Queue) -> JobHandler:
    """
    Build the cleanup handler, which deletes old finished jobs.

    Args:
        queue: The queue to clean.

    Returns:
        The handler coroutine function.
    """
    settings = get_settings()

    async def handle_cleanup(context: JobContext) -> dict[str, int]:
        try:
            payload = CleanupPayload.model_validate(context.payload or {})
        except ValidationError as e:
            raise InvalidPayload(f"Invalid cleanup payload: {e}") from e

        completed_grace = payload.completed_grace_ms
        if completed_grace is None:
            completed_grace = settings.cleanup_completed_grace_ms
        failed_grace = payload.failed_grace_ms
        if failed_grace is None:
            failed_grace = settings.cleanup_failed_grace_ms

        completed = await queue.clean(completed_grace, JobState.COMPLETED, payload.limit)
        failed = await queue.clean(failed_grace, JobState.FAILED, payload.limit)

        return {"completed": len(completed), "failed": len(failed)}

    return handle_cleanup
