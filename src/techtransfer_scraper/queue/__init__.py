"""Broker access, wire format and the job consumer."""

from .broker import AmqpBroker, Broker, Delivery, InMemoryBroker
from .consumer import JobQueueConsumer
from .messages import DeadLetterMessage, JobMessage

__all__ = [
    "AmqpBroker",
    "Broker",
    "DeadLetterMessage",
    "Delivery",
    "InMemoryBroker",
    "JobMessage",
    "JobQueueConsumer",
]
