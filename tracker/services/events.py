"""
In-process event bus for structural and signature events.

Events (closed set):
    item_created, item_moved, item_reordered   — hierarchy store
    signed, completed                          — signature engine

Services publish only after their transaction has committed, so a
subscriber never sees an event for a change that was rolled back.

``completed`` carries an idempotency key (``<kind>:<entity_id>:<sequence>``);
the bus delivers each key at most once per process. Subscriber failures are
logged and isolated: one failing subscriber never blocks the others or the
publishing operation.

Usage:
    from tracker.services import events

    events.subscribe("completed", on_completed)
    events.publish("completed", {...}, idempotency_key="deliverable:12:1")
"""

import logging
import threading
from collections import OrderedDict, defaultdict

logger = logging.getLogger(__name__)

EVENT_NAMES = frozenset({
    "item_created",
    "item_moved",
    "item_reordered",
    "signed",
    "completed",
})

_MAX_DELIVERED_KEYS = 10_000

_subscribers: dict[str, list] = defaultdict(list)
_delivered_keys: "OrderedDict[str, None]" = OrderedDict()
_lock = threading.Lock()


def subscribe(event: str, handler) -> None:
    """Register ``handler(event, payload)`` for ``event``."""
    if event not in EVENT_NAMES:
        raise ValueError(f"Unknown event '{event}'. Must be one of: {', '.join(sorted(EVENT_NAMES))}")
    with _lock:
        if handler not in _subscribers[event]:
            _subscribers[event].append(handler)


def unsubscribe(event: str, handler) -> None:
    with _lock:
        if handler in _subscribers.get(event, []):
            _subscribers[event].remove(handler)


def publish(event: str, payload: dict, *, idempotency_key: str | None = None) -> bool:
    """Deliver ``payload`` to every subscriber of ``event``.

    Returns False (and delivers nothing) when ``idempotency_key`` was
    already delivered.
    """
    if event not in EVENT_NAMES:
        raise ValueError(f"Unknown event '{event}'")

    with _lock:
        if idempotency_key is not None:
            if idempotency_key in _delivered_keys:
                logger.info(
                    "Duplicate event suppressed",
                    extra={"event_type": event, "idempotency_key": idempotency_key},
                )
                return False
            _delivered_keys[idempotency_key] = None
            if len(_delivered_keys) > _MAX_DELIVERED_KEYS:
                _delivered_keys.popitem(last=False)
        handlers = list(_subscribers.get(event, []))

    if idempotency_key is not None:
        payload = {**payload, "idempotency_key": idempotency_key}

    for handler in handlers:
        try:
            handler(event, payload)
        except Exception:
            logger.exception(
                "Event subscriber failed",
                extra={"event_type": event, "handler": getattr(handler, "__name__", repr(handler))},
            )
    return True


def reset() -> None:
    """Drop all subscribers and delivered keys (tests, app re-creation)."""
    with _lock:
        _subscribers.clear()
        _delivered_keys.clear()
