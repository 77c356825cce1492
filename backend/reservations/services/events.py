"""
backend/reservations/services/events.py

Event emitter: pushes booking lifecycle events to a Redis list for the
external notification/payment consumers.

Queue: events:p2p (booking_confirmed, booking_cancelled, hold_expired)
"""

import json
import time
import logging

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"


def emit_event(redis: Redis | None, event_type: str, payload: dict) -> None:
    """
    Emit a p2p event.

    No Redis configured → nothing to deliver to. Delivery failures are logged;
    the booking state change they describe is already committed.
    """
    if redis is None:
        return

    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis.rpush(P2P_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {P2P_QUEUE}")
    except RedisError as e:
        logger.error(f"Failed to emit event {event_type}: {e}")
