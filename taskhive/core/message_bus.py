from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
import structlog

from ..models.event import Event
from .event_bus import EventBus

logger = structlog.get_logger()

AUDIT_HANDLER_PRIORITY = 90
BROADCAST_HANDLER_PRIORITY = 80
EVENTS_CHANNEL = "taskhive.events"

Publisher = Callable[[str, Dict[str, Any]], Awaitable[bool]]

def event_envelope(event: Event) -> Dict[str, Any]:
    """Serializable view of an event for subscribers outside the process"""
    return {
        "id": event.id,
        "event_type": event.event_type,
        "data": event.data,
        "metadata": event.metadata.model_dump(mode="json"),
        "created_at": event.created_at.isoformat(),
    }

async def audit_event(event: Event) -> None:
    """Log every event before business handlers run"""
    logger.info(
        f"Event {event.event_type}",
        event_id=event.id,
        task_id=event.metadata.task_id or event.data.get("task_id"),
        correlation_id=event.metadata.correlation_id,
        causation_id=event.metadata.causation_id,
    )

def register_audit_handlers(bus: EventBus, event_types: Optional[Iterable[str]] = None) -> int:
    """
    Attach the audit logger to every registered event type.
    Returns number of newly registered handlers.
    """
    event_types = list(event_types) if event_types is not None else bus.registry.registered_schemas()
    return sum(1 for event_type in event_types if bus.register_handler(event_type, audit_event, AUDIT_HANDLER_PRIORITY))

def register_broadcaster(
    bus: EventBus,
    publish: Publisher,
    channel: str = EVENTS_CHANNEL,
    event_types: Optional[Iterable[str]] = None,
) -> int:
    """
    Forward events to a pub/sub channel (e.g. redis_client.publish) so
    dashboards can subscribe without touching task logic.
    """
    async def broadcast(event: Event) -> None:
        await publish(channel, event_envelope(event))

    event_types = list(event_types) if event_types is not None else bus.registry.registered_schemas()
    return sum(1 for event_type in event_types if bus.register_handler(event_type, broadcast, BROADCAST_HANDLER_PRIORITY))
