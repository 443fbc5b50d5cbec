"""AMQP plumbing: topology, connection, publishing and consumption."""

from lane_router.broker.connection import backoff_delays_ms, connect_session, connect_with_retry
from lane_router.broker.consumer import MessageHandler, QueueConsumer
from lane_router.broker.messages import AmqpPublisher, InboundMessage, Publisher
from lane_router.broker.session import BrokerSession, KombuDelivery, open_kombu_connection
from lane_router.broker.topology import (
    declare_queues,
    delay_queue_arguments,
    primary_queue_plan,
    queue_arguments,
)

__all__ = [
    "AmqpPublisher",
    "BrokerSession",
    "InboundMessage",
    "KombuDelivery",
    "MessageHandler",
    "Publisher",
    "QueueConsumer",
    "backoff_delays_ms",
    "connect_session",
    "connect_with_retry",
    "declare_queues",
    "delay_queue_arguments",
    "open_kombu_connection",
    "primary_queue_plan",
    "queue_arguments",
]
