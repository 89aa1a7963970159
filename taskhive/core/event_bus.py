"""Validated publish/subscribe with priority-ordered handlers."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from pydantic import BaseModel, Field
from enum import Enum
import inspect
import itertools
import structlog

from ..exceptions import ValidationError
from ..models.event import Event, EventMetadata
from ..models.task import utcnow
from .schema_registry import SchemaRegistry
from .store import TaskStore
from .work_queue import EVENT_QUEUE, WorkDispatcher, WorkItem, WorkKind

logger = structlog.get_logger()

EventHandler = Callable[[Event], Union[None, Awaitable[None]]]

DEFAULT_HANDLER_PRIORITY = 50

class DispatchMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"

class HandlerFailure(BaseModel):
    handler: str
    error: str

class DispatchReport(BaseModel):
    event_id: str
    event_type: str
    invoked: List[str] = Field(default_factory=list)
    failures: List[HandlerFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)

class EventBus:
    """
    Explicit handler registry. Publishing validates the payload against the
    schema registry, stores the event and dispatches it to every handler for
    its type in descending priority order.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: SchemaRegistry,
        dispatcher: Optional[WorkDispatcher] = None,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self._handlers: Dict[str, List[Tuple[int, int, EventHandler]]] = {}
        self._sequence = itertools.count()
        self.logger = logger.bind(component="EventBus")

    def register_handler(self, event_type: str, handler: EventHandler, priority: int = DEFAULT_HANDLER_PRIORITY) -> bool:
        """
        Add a handler. Returns False when the handler is already registered
        for this event type.
        """
        entries = self._handlers.setdefault(event_type, [])
        if any(existing == handler for _, _, existing in entries):
            self.logger.debug(f"Handler {_handler_name(handler)} already registered for {event_type}")
            return False

        entries.append((priority, next(self._sequence), handler))
        entries.sort(key=lambda entry: (-entry[0], entry[1]))
        return True

    def unregister_handler(self, event_type: str, handler: EventHandler) -> bool:
        entries = self._handlers.get(event_type, [])
        remaining = [entry for entry in entries if entry[2] != handler]
        self._handlers[event_type] = remaining
        return len(remaining) != len(entries)

    def handlers_for(self, event_type: str) -> List[EventHandler]:
        return [handler for _, _, handler in self._handlers.get(event_type, [])]

    def clear_handlers(self, event_type: Optional[str] = None) -> None:
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event_type, None)

    async def publish(
        self,
        event_type: str,
        data: Dict[str, Any],
        metadata: Optional[Union[EventMetadata, Dict[str, Any]]] = None,
        mode: DispatchMode = DispatchMode.SYNC,
    ) -> Optional[Event]:
        """
        Validate, store and dispatch an event.
        Invalid payloads are logged and dropped; returns None in that case.
        """
        try:
            return await self.publish_or_raise(event_type, data, metadata=metadata, mode=mode)
        except ValidationError as e:
            self.logger.error(
                f"Dropped invalid event {event_type}",
                errors=e.errors,
                task_id=(data or {}).get("task_id"),
            )
            return None

    async def publish_or_raise(
        self,
        event_type: str,
        data: Dict[str, Any],
        metadata: Optional[Union[EventMetadata, Dict[str, Any]]] = None,
        mode: DispatchMode = DispatchMode.SYNC,
    ) -> Event:
        if isinstance(metadata, dict):
            metadata = EventMetadata(**metadata)
        event = Event(event_type=event_type, data=dict(data or {}), metadata=metadata or EventMetadata())

        errors = self.registry.validate(event)
        if errors:
            raise ValidationError(event_type, errors)

        await self.store.insert_event(event)

        if mode == DispatchMode.ASYNC and self.dispatcher is not None:
            await self.dispatcher.enqueue(
                WorkItem(kind=WorkKind.DISPATCH_EVENT, event_id=event.id, task_id=event.metadata.task_id),
                EVENT_QUEUE,
            )
            return event

        if mode == DispatchMode.ASYNC:
            self.logger.warning(f"No work dispatcher configured, dispatching {event_type} inline")

        await self.dispatch(event)
        return event

    async def dispatch(self, event: Event) -> DispatchReport:
        """
        Run handlers in priority order. A failing handler is logged and
        recorded; the remaining handlers still run.
        """
        report = DispatchReport(event_id=event.id, event_type=event.event_type)

        for handler in self.handlers_for(event.event_type):
            name = _handler_name(handler)
            report.invoked.append(name)
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
            except Exception as e:
                self.logger.exception(
                    f"Event handler {name} failed",
                    event_id=event.id,
                    event_type=event.event_type,
                )
                report.failures.append(HandlerFailure(handler=name, error=str(e)))

        event.processed_at = utcnow()
        await self.store.mark_event_processed(event.id, event.processed_at)
        return report

    async def dispatch_by_id(self, event_id: str) -> Optional[DispatchReport]:
        event = await self.store.get_event(event_id)
        if event is None:
            self.logger.warning(f"Event not found for dispatch: {event_id}")
            return None
        if event.processed_at is not None:
            self.logger.debug(f"Event {event_id} already processed")
            return None
        return await self.dispatch(event)
