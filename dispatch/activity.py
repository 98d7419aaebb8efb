"""
Activity log for lifecycle changes and escalations.

record() appends an audit event to the ticket's Redis list and publishes it on
the activity channel. The API process subscribes in a background thread and
keeps a bounded in-memory feed for GET /activity. Publishing problems are
logged and never fail the transition that produced the event.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from dispatch.config import ACTIVITY_MAX_EVENTS
from dispatch.store import get_redis, ticket_activity_key

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "ticket_activity"
SYSTEM_ACTOR = "System"


@dataclass
class ActivityEvent:
    """A single audit event."""

    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


_events: list[ActivityEvent] = []
_lock = threading.Lock()


def emit(event_type: str, data: dict[str, Any] | None = None, ts: Optional[float] = None) -> None:
    """Append an event to the in-memory feed."""
    event = ActivityEvent(type=event_type, data=data or {})
    if ts is not None:
        event.ts = ts
    with _lock:
        _events.append(event)
        while len(_events) > ACTIVITY_MAX_EVENTS:
            _events.pop(0)


def get_recent(limit: int = 100) -> list[dict]:
    """Return the most recent events (newest last). Each item is dict with ts, type, data."""
    with _lock:
        out = [asdict(e) for e in _events[-limit:]]
    return out


def clear() -> None:
    with _lock:
        _events.clear()


def record(
    ticket_id: str,
    action: str,
    description: str,
    actor: str = SYSTEM_ACTOR,
    data: dict[str, Any] | None = None,
    ts: Optional[float] = None,
) -> dict:
    """Persist an audit event for a ticket and broadcast it."""
    payload = {
        "ticket_id": ticket_id,
        "action": action,
        "description": description,
        "actor": actor,
        **(data or {}),
    }
    event = {"ts": ts if ts is not None else time.time(), "type": action, "data": payload}
    try:
        get_redis().rpush(ticket_activity_key(ticket_id), json.dumps(event))
    except Exception as e:
        logger.warning("Activity persist failed for ticket %s: %s", ticket_id, e)
    publish_event(action, payload, ts=event["ts"])
    return event


def ticket_history(ticket_id: str) -> list[dict]:
    """All audit events of one ticket, oldest first."""
    raw = get_redis().lrange(ticket_activity_key(ticket_id), 0, -1)
    return [json.loads(item) for item in raw]


def publish_event(event_type: str, data: dict[str, Any], ts: Optional[float] = None) -> None:
    """Publish an event to Redis. Subscribers append it to their in-memory feed."""
    try:
        payload = json.dumps({"type": event_type, "data": data, "ts": ts or time.time()})
        get_redis().publish(ACTIVITY_CHANNEL, payload)
    except Exception as e:
        logger.warning("Activity publish failed: %s", e)


def _redis_subscriber_thread() -> None:
    """Run in a daemon thread: subscribe to the activity channel and feed the in-memory log."""
    try:
        pubsub = get_redis().pubsub()
        pubsub.subscribe(ACTIVITY_CHANNEL)
        logger.info("Activity subscriber listening on channel %s", ACTIVITY_CHANNEL)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                payload = json.loads(message["data"])
                emit(payload.get("type", "unknown"), payload.get("data", {}), ts=payload.get("ts"))
            except (ValueError, AttributeError) as e:
                logger.warning("Activity message parse error: %s", e)
    except Exception as e:
        logger.warning("Activity Redis subscriber failed: %s", e)


def start_redis_subscriber() -> None:
    """Start the background thread that listens for activity events."""
    t = threading.Thread(target=_redis_subscriber_thread, daemon=True)
    t.start()
