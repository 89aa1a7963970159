from typing import Dict, List
import structlog

from ..core.work_queue import WorkItem
from ..exceptions import InvalidStateTransition, OracleInvocationFailure
from ..llm.openrouter_client import OraclePrompt
from ..models.agent import ActivityStatus, AgentKind, DEFAULT_WORKER_KIND
from ..models.task import Task, TaskState, utcnow
from .agent_factory import AgentSpawner
from .base_agent import BaseAgent

logger = structlog.get_logger()

ROLE_DESCRIPTIONS: Dict[AgentKind, str] = {
    AgentKind.RESEARCHER: "research specialist who gathers and verifies information",
    AgentKind.WEB_RESEARCHER: "web researcher who finds current information online",
    AgentKind.CODE_RESEARCHER: "software engineer who analyzes code and programming problems",
    AgentKind.WRITER: "writer who produces clear, well structured content",
    AgentKind.ANALYZER: "analyst who turns data into insights",
}

class WorkerAgent(BaseAgent):
    """
    Runs a single assigned subtask through the oracle and reports the
    outcome through the task manager.
    """

    def __init__(self, *args, spawner: AgentSpawner, **kwargs):
        super().__init__(*args, agent_type="worker", **kwargs)
        self.spawner = spawner

    async def run(self, item: WorkItem) -> None:
        kind = AgentKind.resolve(item.payload.get("agent_kind")) or DEFAULT_WORKER_KIND
        try:
            await self._process(item, kind)
        finally:
            await self.spawner.release(kind)

    async def _process(self, item: WorkItem, kind: AgentKind) -> None:
        subtask = await self.store.get_task(item.task_id)
        if subtask is None:
            self.logger.error(f"Subtask not found for work item {item.id}", task_id=item.task_id)
            return
        if subtask.state != TaskState.ACTIVE:
            self.logger.info(f"Subtask {subtask.id} is {subtask.state.value}, skipping run")
            if item.activity_id:
                await self._finish_activity(item.activity_id, subtask, ActivityStatus.FAILED, error=f"subtask {subtask.state.value}")
            return

        log = self.logger.bind(task_id=subtask.id, agent_kind=kind.value)
        if item.activity_id:
            await self.store.update_activity(item.activity_id, status=ActivityStatus.RUNNING)

        log.info(f"Worker executing: {subtask.title}")

        try:
            response = await self.ask_oracle(
                OraclePrompt(
                    system_prompt=self.prompts.render("worker", role=ROLE_DESCRIPTIONS.get(kind, "specialist")),
                    human_message=await self._task_message(subtask),
                    purpose="worker",
                ),
                task=subtask,
            )
        except OracleInvocationFailure as e:
            log.error(f"Task execution failed: {e}")
            await self._finish_activity(item.activity_id, subtask, ActivityStatus.FAILED, error=str(e))
            await self._fail(subtask, str(e))
            return

        await self._finish_activity(item.activity_id, subtask, ActivityStatus.COMPLETED, result=response.text)
        try:
            await self.task_manager.complete(subtask.id, response.text)
        except InvalidStateTransition as e:
            log.warning(f"Could not complete subtask: {e}")

    async def _task_message(self, subtask: Task) -> str:
        sections: List[str] = [f"Task: {subtask.title}", subtask.description]

        if subtask.depends_on_task_ids:
            deps = await self.store.get_tasks(subtask.depends_on_task_ids)
            context = [f"- {dep.title}: {dep.result}" for dep in deps if dep.result]
            if context:
                sections.append("Results from prerequisite subtasks:\n" + "\n".join(context))

        return "\n\n".join(section for section in sections if section)

    async def _fail(self, subtask: Task, error: str) -> None:
        try:
            await self.task_manager.fail(subtask.id, error)
        except InvalidStateTransition as e:
            self.logger.warning(f"Could not fail subtask: {e}", task_id=subtask.id)

    async def _finish_activity(self, activity_id, subtask: Task, status: ActivityStatus, result=None, error=None) -> None:
        if not activity_id:
            return
        await self.store.update_activity(
            activity_id, status=status, result=result, error_message=error, finished_at=utcnow(),
        )
        if status == ActivityStatus.COMPLETED:
            await self.bus.publish(
                "agent_activity.completed",
                {"activity_id": activity_id, "task_id": subtask.id, "agent_kind": subtask.metadata.get("assigned_agent")},
            )
        else:
            await self.bus.publish(
                "agent_activity.failed",
                {"activity_id": activity_id, "task_id": subtask.id, "error": error or "unknown error",
                 "agent_kind": subtask.metadata.get("assigned_agent")},
            )
