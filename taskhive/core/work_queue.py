"""Work dispatcher: "enqueue a unit of work" as an abstract service."""

from abc import ABC, abstractmethod
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Sequence
from enum import Enum
import asyncio
import heapq
import itertools
import uuid
import structlog

logger = structlog.get_logger()

AGENT_QUEUE = "agents"
COORDINATOR_QUEUE = "coordinator"
EVENT_QUEUE = "events"
ALL_QUEUES = (EVENT_QUEUE, COORDINATOR_QUEUE, AGENT_QUEUE)

class WorkKind(str, Enum):
    RUN_AGENT = "run_agent"
    DECOMPOSE = "decompose"
    COORDINATE = "coordinate"
    DISPATCH_EVENT = "dispatch_event"

class WorkItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: WorkKind
    task_id: Optional[str] = None
    activity_id: Optional[str] = None
    event_id: Optional[str] = None
    priority: int = 5
    payload: Dict[str, Any] = Field(default_factory=dict)

class WorkDispatcher(ABC):

    @abstractmethod
    async def enqueue(self, item: WorkItem, queue_name: str) -> None:
        ...

    @abstractmethod
    async def dequeue(self, queue_names: Sequence[str] = ALL_QUEUES) -> Optional[WorkItem]:
        """
        Pop the highest priority item from the first non-empty queue, or None.
        """

    @abstractmethod
    async def size(self, queue_name: Optional[str] = None) -> int:
        ...

class InMemoryWorkQueue(WorkDispatcher):
    """
    Priority queues keyed by name. Higher priority pops first, FIFO on ties.
    """

    def __init__(self):
        self._queues: Dict[str, List] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="InMemoryWorkQueue")

    async def enqueue(self, item: WorkItem, queue_name: str) -> None:
        async with self._lock:
            heap = self._queues.setdefault(queue_name, [])
            heapq.heappush(heap, (-item.priority, next(self._counter), item))
        self.logger.debug(f"Enqueued {item.kind.value} on {queue_name}", task_id=item.task_id)

    async def dequeue(self, queue_names: Sequence[str] = ALL_QUEUES) -> Optional[WorkItem]:
        async with self._lock:
            for name in queue_names:
                heap = self._queues.get(name)
                if heap:
                    _, _, item = heapq.heappop(heap)
                    return item
        return None

    async def size(self, queue_name: Optional[str] = None) -> int:
        if queue_name is not None:
            return len(self._queues.get(queue_name, []))
        return sum(len(heap) for heap in self._queues.values())

    def pending_items(self, queue_name: str) -> List[WorkItem]:
        return [entry[2] for entry in sorted(self._queues.get(queue_name, []))]
