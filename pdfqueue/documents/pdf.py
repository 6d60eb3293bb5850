"""
HTML to PDF conversion through a Gotenberg service.
"""

import logging

import httpx

from pdfqueue.config import get_settings

logger = logging.getLogger(__name__)

CONVERT_HTML_PATH = "/forms/chromium/convert/html"


class PdfRenderError(Exception):
    """The conversion service rejected the document or is unavailable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GotenbergClient:
    """
    Thin async client for Gotenberg's Chromium HTML route.

    Pass `transport` to route requests somewhere other than the network
    (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.gotenberg_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.gotenberg_timeout_seconds,
            transport=transport,
        )

    async def html_to_pdf(
        self,
        html: str,
        filename: str = "document.pdf",
        print_background: bool = True,
        landscape: bool = False,
    ) -> bytes:
        """
        Convert a complete HTML document to PDF.

        Args:
            html: The HTML document; sent as index.html.
            filename: Output file name reported to Gotenberg.
            print_background: Render CSS backgrounds.
            landscape: Landscape orientation.

        Returns:
            The PDF bytes.

        Raises:
            PdfRenderError: On a non-2xx response or transport failure.
        """
        files = {"files": ("index.html", html.encode("utf-8"), "text/html")}
        data = {"printBackground": str(print_background).lower()}
        if landscape:
            data["landscape"] = "true"

        try:
            response = await self._client.post(
                CONVERT_HTML_PATH,
                files=files,
                data=data,
                headers={"Gotenberg-Output-Filename": filename.removesuffix(".pdf")},
            )
        except httpx.HTTPError as e:
            raise PdfRenderError(f"PDF service request failed: {e}") from e

        if not response.is_success:
            raise PdfRenderError(
                f"PDF service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.info(
            "PDF generated",
            extra={"size_bytes": len(response.content), "html_length": len(html)},
        )
        return response.content

    async def health(self) -> bool:
        """True when the service answers its health route."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            logger.warning("PDF service health check failed", extra={"error": str(e)})
            return False
        return response.is_success

    async def aclose(self) -> None:
        await self._client.aclose()
