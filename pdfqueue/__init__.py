"""
HubSpot PDF Generator job queue

A Redis-backed, at-least-once job queue for document generation: durable
submission, leased execution with heartbeats, retry/backoff policies and
stalled-job recovery.
"""

__version__ = "1.0.0"
