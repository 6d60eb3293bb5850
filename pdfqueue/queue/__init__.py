"""
Queue module.
Contains the Redis-backed job queue and its Lua state transitions.
"""

from pdfqueue.queue.queue import Queue, QueueKeys, default_job_options

__all__ = ["Queue", "QueueKeys", "default_job_options"]
