"""
Broker module.
Contains the durable Redis connection shared by queues and workers.
"""

from pdfqueue.broker.connection import (
    BrokerConnection,
    create_redis_client,
    default_retry_strategy,
)

__all__ = ["BrokerConnection", "create_redis_client", "default_retry_strategy"]
