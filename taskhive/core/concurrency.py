"""Per agent kind concurrency quotas (counting semaphores)."""

from abc import ABC, abstractmethod
from typing import Callable, Dict
import asyncio
import structlog

from ..models.agent import AgentKind

logger = structlog.get_logger()

class ConcurrencyLimiter(ABC):

    @abstractmethod
    async def try_acquire(self, kind: AgentKind) -> bool:
        """
        Check and take one slot as a single atomic step.
        """

    @abstractmethod
    async def release(self, kind: AgentKind) -> None:
        ...

    @abstractmethod
    async def in_use(self, kind: AgentKind) -> int:
        ...

    @abstractmethod
    def limit(self, kind: AgentKind) -> int:
        ...

class InMemoryConcurrencyLimiter(ConcurrencyLimiter):

    def __init__(self, limit_for: Callable[[str], int]):
        self._limit_for = limit_for
        self._in_use: Dict[AgentKind, int] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="ConcurrencyLimiter")

    async def try_acquire(self, kind: AgentKind) -> bool:
        async with self._lock:
            used = self._in_use.get(kind, 0)
            if used >= self.limit(kind):
                self.logger.info(f"Quota exhausted for {kind.value}", in_use=used, limit=self.limit(kind))
                return False
            self._in_use[kind] = used + 1
        return True

    async def release(self, kind: AgentKind) -> None:
        async with self._lock:
            used = self._in_use.get(kind, 0)
            if used <= 0:
                self.logger.warning(f"Release without acquire for {kind.value}")
                return
            self._in_use[kind] = used - 1

    async def in_use(self, kind: AgentKind) -> int:
        return self._in_use.get(kind, 0)

    def limit(self, kind: AgentKind) -> int:
        return self._limit_for(kind.value)
