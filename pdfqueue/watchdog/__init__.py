"""Stalled-job watchdog."""

from pdfqueue.watchdog.main import StalledJobWatchdog

__all__ = ["StalledJobWatchdog"]
