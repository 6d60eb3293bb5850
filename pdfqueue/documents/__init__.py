"""
Document generation: templates, PDF conversion, HubSpot upload and the
job handlers that tie them together.
"""

from pdfqueue.documents.handlers import build_cleanup_handler, build_generate_pdf_handler
from pdfqueue.documents.hubspot import HubSpotClient, HubSpotError
from pdfqueue.documents.pdf import GotenbergClient, PdfRenderError
from pdfqueue.documents.sources import DirectoryTemplateSource, TemplateNotFound, TemplateSource

__all__ = [
    "build_generate_pdf_handler",
    "build_cleanup_handler",
    "HubSpotClient",
    "HubSpotError",
    "GotenbergClient",
    "PdfRenderError",
    "DirectoryTemplateSource",
    "TemplateNotFound",
    "TemplateSource",
]
