from __future__ import annotations

import datetime as dt
import json
import logging
import uuid

import pika
from pika.exceptions import AMQPError

from .config import EVENTS_ENABLED, EVENTS_EXCHANGE, RABBITMQ_URL

logger = logging.getLogger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(RABBITMQ_URL)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict) -> str:
    """Publish one JSON event on the order exchange and return its message id.

    The channel runs in confirm mode, so a broker that refuses the message
    raises instead of dropping it.
    """
    message_id = uuid.uuid4().hex
    body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    properties = pika.BasicProperties(
        app_id="surplus-market",
        content_type="application/json",
        delivery_mode=pika.DeliveryMode.Persistent,
        message_id=message_id,
        timestamp=int(dt.datetime.now(dt.timezone.utc).timestamp()),
        type=routing_key,
    )

    connection = _connect()
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="topic", durable=True)
        channel.confirm_delivery()
        channel.basic_publish(
            exchange=EVENTS_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=properties,
        )
    finally:
        connection.close()
    logger.debug("published %s message_id=%s", routing_key, message_id)
    return message_id


def emit_order_event(event: str, order, **extra) -> bool:
    """Publish ``order.<event>`` after the order change is committed.

    The order change is already durable at this point, so a broker failure is
    logged and reported through the return value instead of raised.
    """
    if not EVENTS_ENABLED:
        return False

    routing_key = f"order.{event}"
    payload = {
        "event": routing_key,
        "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        "order_id": order.id,
        "customer_id": order.customer_id,
        "company_id": order.company_id,
        "status": order.status,
        **extra,
    }
    try:
        publish_event(routing_key, payload)
    except (AMQPError, OSError):
        logger.exception("failed to publish %s for order=%s", routing_key, order.id)
        return False
    return True
