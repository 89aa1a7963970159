from typing import Optional
import asyncio
import structlog

from .config import Settings, get_settings
from .logging_config import configure_logging
from .core.concurrency import ConcurrencyLimiter, InMemoryConcurrencyLimiter
from .core.event_bus import EventBus
from .core.human_interactions import HumanInteractionService
from .core.message_bus import register_audit_handlers, register_broadcaster
from .core.scheduler import Scheduler
from .core.schema_registry import SchemaRegistry
from .core.store import InMemoryStore, TaskStore
from .core.task_manager import TaskManager
from .core.work_queue import COORDINATOR_QUEUE, InMemoryWorkQueue, WorkDispatcher, WorkItem, WorkKind
from .agents.agent_factory import AgentSpawner, WORK_PRIORITY
from .agents.coordinator_agent import CoordinatorAgent
from .agents.worker_agent import WorkerAgent
from .llm.openrouter_client import OpenRouterOracle, ReasoningOracle
from .llm.prompt_manager import PromptManager, get_prompt_manager
from .models.task import Task, TaskPriority, TaskSubmission

logger = structlog.get_logger()

class Hive:
    """
    Wires every collaborator exactly once and runs work items from the
    dispatcher on a pool of asyncio workers.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[TaskStore] = None,
        dispatcher: Optional[WorkDispatcher] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        oracle: Optional[ReasoningOracle] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryStore()
        self.dispatcher = dispatcher or InMemoryWorkQueue()
        self.limiter = limiter or InMemoryConcurrencyLimiter(self.settings.concurrency_limit_for)
        self.oracle = oracle or OpenRouterOracle(self.settings)
        self.prompts = prompts or get_prompt_manager()

        self.registry = SchemaRegistry()
        self.registry.register_standard_schemas()
        self.bus = EventBus(self.store, self.registry, self.dispatcher)
        register_audit_handlers(self.bus)

        self.task_manager = TaskManager(self.store, self.bus)
        self.humans = HumanInteractionService(self.store, self.task_manager, self.bus, self.settings)
        self.spawner = AgentSpawner(
            store=self.store,
            task_manager=self.task_manager,
            bus=self.bus,
            limiter=self.limiter,
            dispatcher=self.dispatcher,
            humans=self.humans,
            settings=self.settings,
        )
        self.scheduler = Scheduler(self.store, self.task_manager, self.spawner)

        agent_deps = dict(
            store=self.store,
            bus=self.bus,
            task_manager=self.task_manager,
            oracle=self.oracle,
            prompts=self.prompts,
        )
        self.coordinator = CoordinatorAgent(
            **agent_deps,
            spawner=self.spawner,
            scheduler=self.scheduler,
            humans=self.humans,
            dispatcher=self.dispatcher,
            settings=self.settings,
        )
        self.coordinator.register_handlers()
        self.worker = WorkerAgent(**agent_deps, spawner=self.spawner)

        self._running = False
        self._workers: list = []
        self.logger = logger.bind(component="Hive")

    @classmethod
    async def connect(cls, settings: Optional[Settings] = None, oracle: Optional[ReasoningOracle] = None) -> "Hive":
        """
        Hive backed by Supabase and Redis, with events broadcast on Redis pub/sub.
        """
        from .database import SupabaseStore, init_supabase
        from .redis_client import RedisConcurrencyLimiter, RedisWorkQueue, init_redis, publish

        settings = settings or get_settings()
        client = await init_supabase(settings)
        redis_conn = await init_redis(settings)

        hive = cls(
            settings=settings,
            store=SupabaseStore(client),
            dispatcher=RedisWorkQueue(redis_conn),
            limiter=RedisConcurrencyLimiter(settings, redis_conn),
            oracle=oracle,
        )
        register_broadcaster(hive.bus, publish)
        return hive

    async def submit_task(
        self,
        title: str,
        description: str,
        priority: TaskPriority = TaskPriority.NORMAL,
        project_id: Optional[str] = None,
    ) -> Task:
        submission = TaskSubmission(title=title, description=description, priority=priority, project_id=project_id)
        task = await self.task_manager.create_task(
            title=submission.title,
            description=submission.description,
            priority=submission.priority,
            project_id=submission.project_id,
        )
        await self.dispatcher.enqueue(
            WorkItem(kind=WorkKind.DECOMPOSE, task_id=task.id, priority=WORK_PRIORITY.get(task.priority, 5)),
            COORDINATOR_QUEUE,
        )
        self.logger.info(f"Task {task.id} submitted")
        return task

    async def process(self, item: WorkItem) -> None:
        log = self.logger.bind(work_item=item.id, kind=item.kind.value, task_id=item.task_id)
        try:
            if item.kind == WorkKind.DISPATCH_EVENT:
                await self.bus.dispatch_by_id(item.event_id)
            elif item.kind == WorkKind.RUN_AGENT:
                await self.worker.run(item)
            else:
                await self.coordinator.run(item)
        except Exception:
            # one broken work item must not stop the pool
            log.exception("Work item failed")

    async def run_once(self) -> bool:
        item = await self.dispatcher.dequeue()
        if item is None:
            return False
        await self.process(item)
        return True

    async def drain(self, max_items: int = 1000) -> int:
        """
        Process queued work until the queues are empty. Returns items processed.
        """
        processed = 0
        while processed < max_items and await self.run_once():
            processed += 1
        return processed

    async def expire_overdue(self) -> int:
        return len(await self.humans.expire_overdue())

    async def run(self, workers: Optional[int] = None) -> None:
        count = workers or self.settings.worker_count
        self._running = True
        self.logger.info(f"Starting {count} workers")
        self._workers = [asyncio.create_task(self._worker_loop(i)) for i in range(count)]
        try:
            await asyncio.gather(*self._workers)
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self.logger.info("Shutdown complete")

    async def _worker_loop(self, index: int) -> None:
        while self._running:
            try:
                if not await self.run_once():
                    if index == 0:
                        await self.expire_overdue()
                    await asyncio.sleep(self.settings.worker_idle_sleep)
            except Exception:
                self.logger.exception("Error in worker loop", worker=index)
                await asyncio.sleep(5)

async def serve(settings: Optional[Settings] = None) -> None:
    hive = await Hive.connect(settings)
    try:
        await hive.run()
    finally:
        await hive.stop()

def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting {settings.app_name}")
    asyncio.run(serve(settings))

if __name__ == "__main__":
    main()
