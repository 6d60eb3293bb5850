"""Worker pool."""

from pdfqueue.worker.main import WorkerPool

__all__ = ["WorkerPool"]
