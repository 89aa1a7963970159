from typing import Dict, List, Optional
from pydantic import BaseModel, Field
import re
import structlog

from ..config import Settings
from ..core.human_interactions import HumanInteractionService
from ..core.scheduler import Scheduler, SchedulingResult
from ..core.task_manager import event_metadata
from ..core.work_queue import COORDINATOR_QUEUE, WorkDispatcher, WorkItem, WorkKind
from ..exceptions import DecompositionParseFailure, InvalidStateTransition, OracleInvocationFailure
from ..llm.openrouter_client import OraclePrompt
from ..models.agent import AgentKind, DEFAULT_WORKER_KIND
from ..models.event import Event
from ..models.human_interaction import InteractionPurpose, InteractionStatus
from ..models.subtask import SubtaskRecord
from ..models.task import Complexity, Task, TaskState
from .agent_factory import AgentSpawner
from .base_agent import BaseAgent
from .decomposition import parse_subtasks
from .recovery import FailureRecovery

logger = structlog.get_logger()

COORDINATOR_HANDLER_PRIORITY = 20
RECOMMENDED_AGENT = re.compile(r"RECOMMENDED AGENT:\s*([A-Za-z]+Agent)")

class SubtaskReport(BaseModel):
    task_id: str
    total: int = 0
    by_state: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    completion_percentage: float = 0.0
    scheduling: Optional[SchedulingResult] = None

    def summary(self) -> str:
        states = ", ".join(f"{count} {state}" for state, count in sorted(self.by_state.items()))
        return f"{self.total} subtasks ({states}); {self.completion_percentage:.0f}% complete"

class CoordinatorAgent(BaseAgent):
    """
    Decomposes a task into subtasks, schedules them and re-evaluates the task
    whenever one of its subtasks or human interactions changes.

    A root task and a complex subtask are coordinated the same way; the
    subtask simply carries nesting_level = parent level + 1.
    """

    def __init__(
        self,
        *args,
        spawner: AgentSpawner,
        scheduler: Scheduler,
        humans: HumanInteractionService,
        dispatcher: WorkDispatcher,
        settings: Settings,
        **kwargs,
    ):
        super().__init__(*args, agent_type="coordinator", **kwargs)
        self.spawner = spawner
        self.scheduler = scheduler
        self.humans = humans
        self.dispatcher = dispatcher
        self.settings = settings
        self.recovery = FailureRecovery(
            store=self.store,
            task_manager=self.task_manager,
            bus=self.bus,
            humans=humans,
            prompts=self.prompts,
            ask_oracle=self.ask_oracle,
            settings=settings,
        )
        if spawner.agent_selector is None:
            spawner.agent_selector = self.determine_agent_kind

    def register_handlers(self) -> None:
        for event_type in (
            "subtask.completed",
            "subtask.failed",
            "human_input.provided",
            "human_interaction.resolved",
            "subtask.recovery_selected",
        ):
            self.bus.register_handler(event_type, self.on_event, COORDINATOR_HANDLER_PRIORITY)

    async def on_event(self, event: Event) -> None:
        """
        Re-enqueue a coordination cycle for the task the event is about.
        """
        task_id = event.data.get("task_id")
        if not task_id:
            return
        payload = {"causation_id": event.id}
        if "interaction_id" in event.data:
            payload["interaction_id"] = event.data["interaction_id"]
        await self.dispatcher.enqueue(
            WorkItem(kind=WorkKind.COORDINATE, task_id=task_id, payload=payload),
            COORDINATOR_QUEUE,
        )

    async def run(self, item: WorkItem) -> None:
        causation_id = item.payload.get("causation_id")
        try:
            if item.kind == WorkKind.DECOMPOSE:
                await self.decompose(item.task_id, guidance=item.payload.get("guidance"), causation_id=causation_id)
            elif item.kind == WorkKind.COORDINATE:
                if item.payload.get("interaction_id"):
                    await self.apply_human_response(item.payload["interaction_id"], causation_id)
                await self.evaluate_progress(item.task_id, causation_id)
            else:
                self.logger.warning(f"Coordinator cannot run {item.kind.value} items")
        finally:
            if item.payload.get("release_quota"):
                await self.spawner.release(AgentKind.COORDINATOR)

    # ---- decomposition ----

    async def decompose(self, task_id: str, guidance: Optional[str] = None, causation_id: Optional[str] = None) -> List[Task]:
        """
        Ask the oracle for subtasks, materialize them and run one scheduling
        cycle. Oracle and parse failures become a required human request.
        """
        task = await self.store.require_task(task_id)
        log = self.logger.bind(task_id=task_id)

        if task.state == TaskState.PENDING:
            task = await self.task_manager.activate(task.id, causation_id)
        if task.state != TaskState.ACTIVE:
            log.info(f"Task is {task.state.value}, not decomposing")
            return []

        if await self.store.children_of(task.id):
            log.info("Task already decomposed, evaluating progress instead")
            await self.evaluate_progress(task.id, causation_id)
            return []

        budget = await self._subtask_budget(task)
        if budget <= 0:
            await self._escalate_decomposition(
                task, "The subtask budget for this task tree is exhausted. How should this task be completed?",
                causation_id,
            )
            return []

        try:
            response = await self.ask_oracle(
                OraclePrompt(
                    human_message=self.prompts.render(
                        "decomposition",
                        title=task.title,
                        description=task.description,
                        guidance=f"Guidance from a human reviewer: {guidance}" if guidance else "",
                    ),
                    purpose="decomposition",
                ),
                task=task,
                causation_id=causation_id,
            )
            records = parse_subtasks(response.text)
        except (OracleInvocationFailure, DecompositionParseFailure) as e:
            log.error(f"Decomposition failed: {e}")
            await self._escalate_decomposition(
                task,
                f"Automatic decomposition of '{task.title}' failed ({e}). "
                "Please describe the subtasks or give guidance for breaking this task down.",
                causation_id,
            )
            return []

        truncated = len(records) > budget
        if truncated:
            log.warning(f"Truncating decomposition from {len(records)} to {budget} subtasks")
            records = records[:budget]

        subtasks = await self.materialize_subtasks(task, records, causation_id)

        await self.bus.publish(
            "task.decomposed",
            {"task_id": task.id, "subtask_count": len(subtasks), "truncated": truncated},
            metadata=await event_metadata(self.store, task, causation_id),
        )

        await self.scheduler.run_cycle(task)
        return subtasks

    async def materialize_subtasks(self, task: Task, records: List[SubtaskRecord], causation_id: Optional[str] = None) -> List[Task]:
        """
        Create every subtask first, then rewrite 1-based dependency indices
        into real ids. Forward and self references are dropped.
        """
        index_to_id: Dict[int, str] = {}
        created: List[Task] = []

        for index, record in enumerate(records, start=1):
            subtask = await self.task_manager.create_task(
                title=record.title,
                description=record.description,
                priority=record.priority,
                parent_id=task.id,
                project_id=task.project_id,
                metadata={
                    "suggested_agent": record.agent_type,
                    "complexity": record.complexity.value,
                    "original_index": index,
                },
            )
            index_to_id[index] = subtask.id
            created.append(subtask)

        for index, (record, subtask) in enumerate(zip(records, created), start=1):
            deps: List[str] = []
            for dep_index in record.dependency_indices:
                if 1 <= dep_index < index and index_to_id[dep_index] not in deps:
                    deps.append(index_to_id[dep_index])
                elif dep_index >= index:
                    self.logger.warning(f"Dropped forward dependency {index} -> {dep_index}", task_id=task.id)
            if deps:
                created[index - 1] = await self.store.update_task(subtask.id, depends_on_task_ids=deps)

        for subtask in created:
            await self.bus.publish(
                "subtask.created",
                {
                    "subtask_id": subtask.id,
                    "parent_id": task.id,
                    "title": subtask.title,
                    "description": subtask.description,
                    "priority": subtask.priority.value,
                    "agent_type": subtask.suggested_agent,
                    "complexity": subtask.complexity.value,
                    "depends_on": subtask.depends_on_task_ids,
                },
                metadata=await event_metadata(self.store, subtask, causation_id),
            )

        self.logger.info(f"Materialized {len(created)} subtasks", task_id=task.id)
        return created

    # ---- progress ----

    async def evaluate_progress(self, task_id: str, causation_id: Optional[str] = None) -> SubtaskReport:
        """
        Re-entered on every relevant event. Finalizes, recovers failures or
        assigns more work, in that order and one per pass, based on a fresh
        read. A task that is paused or waiting on a human only reports.
        """
        task = await self.store.require_task(task_id)
        if task.is_terminal or task.state in (TaskState.PAUSED, TaskState.WAITING_ON_HUMAN):
            return await self.check_subtasks(task_id)

        children = await self.store.children_of(task_id)
        if not children:
            return await self.check_subtasks(task_id)

        if not await self.task_manager.unresolved_children(task_id):
            await self.finalize(task_id, causation_id)
            return await self.check_subtasks(task_id)

        recovered = []
        for child in children:
            if child.state == TaskState.FAILED and not child.superseded and not child.metadata.get("recovery_action"):
                action = await self.recovery.handle_failed_subtask(child.id, task, causation_id)
                if action is not None:
                    recovered.append(action)
        if recovered:
            # subtask.recovery_selected brings the next cycle
            self.logger.info(f"Recovered {len(recovered)} failed subtasks", task_id=task_id)
            return await self.check_subtasks(task_id)

        scheduling = await self.scheduler.run_cycle(task)
        report = await self.check_subtasks(task_id)
        report.scheduling = scheduling
        self.logger.info(f"Progress: {report.summary()}", task_id=task_id)
        return report

    async def finalize(self, task_id: str, causation_id: Optional[str] = None) -> Optional[Task]:
        """
        Summarize child results and complete the task. Claimed once per task.
        """
        if not await self.store.compare_and_set_metadata(task_id, "finalizing", None, True):
            return None

        task = await self.store.require_task(task_id)
        children = [
            child for child in await self.store.children_of(task_id)
            if child.state == TaskState.COMPLETED
        ]
        children.sort(key=lambda c: (c.metadata.get("original_index") or 0, c.created_at))
        results = "\n\n".join(f"{child.title}:\n{child.result or ''}" for child in children)

        try:
            response = await self.ask_oracle(
                OraclePrompt(
                    human_message=self.prompts.render(
                        "completion_summary", title=task.title, description=task.description, results=results,
                    ),
                    purpose="completion_summary",
                ),
                task=task,
                causation_id=causation_id,
            )
            summary = response.text
        except OracleInvocationFailure as e:
            self.logger.error(f"Summary unavailable, merging results directly: {e}", task_id=task_id)
            summary = f"Completed {len(children)} subtasks.\n\n{results}"

        try:
            return await self.task_manager.complete(task_id, summary, causation_id)
        except InvalidStateTransition as e:
            self.logger.warning(f"Could not complete task: {e}", task_id=task_id)
            await self.store.merge_metadata(task_id, {"finalizing": None})
            return None

    async def check_subtasks(self, task_id: str) -> SubtaskReport:
        children = await self.store.children_of(task_id)
        report = SubtaskReport(task_id=task_id, total=len(children))
        for child in children:
            report.by_state[child.state.value] = report.by_state.get(child.state.value, 0) + 1
            report.by_priority[child.priority.value] = report.by_priority.get(child.priority.value, 0) + 1
        if children:
            completed = report.by_state.get(TaskState.COMPLETED.value, 0)
            report.completion_percentage = completed * 100.0 / len(children)
        return report

    async def determine_agent_kind(self, subtask: Task) -> str:
        """
        Metadata hints first, then the oracle. Falls back to the generalist.
        """
        hinted = subtask.metadata.get("agent_type") or subtask.suggested_agent
        if hinted:
            return hinted
        if subtask.complexity == Complexity.COMPLEX:
            return AgentKind.COORDINATOR.value

        try:
            response = await self.ask_oracle(
                OraclePrompt(
                    human_message=self.prompts.render(
                        "agent_selection", title=subtask.title, description=subtask.description,
                    ),
                    purpose="agent_selection",
                ),
                task=subtask,
            )
        except OracleInvocationFailure as e:
            self.logger.error(f"Error determining agent type: {e}", task_id=subtask.id)
            return DEFAULT_WORKER_KIND.value

        match = RECOMMENDED_AGENT.search(response.text)
        return match.group(1) if match else DEFAULT_WORKER_KIND.value

    # ---- human responses ----

    async def apply_human_response(self, interaction_id: str, causation_id: Optional[str] = None) -> None:
        """
        Act on an answered interaction exactly once.
        """
        interaction = await self.store.get_interaction(interaction_id)
        if interaction is None or interaction.status not in (InteractionStatus.ANSWERED, InteractionStatus.RESOLVED):
            return
        if not await self.store.compare_and_set_metadata(interaction.task_id, f"interaction:{interaction.id}", None, "applied"):
            return

        response = (interaction.response or "").strip()

        if interaction.purpose == InteractionPurpose.DECOMPOSITION:
            await self.decompose(interaction.task_id, guidance=response or None, causation_id=causation_id)

        elif interaction.purpose == InteractionPurpose.SUBTASK_FAILURE and interaction.subtask_id:
            subtask = await self.store.get_task(interaction.subtask_id)
            if subtask is None or subtask.state != TaskState.FAILED or subtask.superseded:
                return
            if response.lower().startswith("skip"):
                await self.task_manager.skip(subtask.id, subtask.metadata.get("error_message") or "skipped by reviewer", causation_id)
            else:
                await self.task_manager.requeue(subtask.id, guidance=response or None, causation_id=causation_id)

        elif interaction.purpose == InteractionPurpose.AGENT_SELECTION and interaction.subtask_id:
            kind = AgentKind.resolve(response) or DEFAULT_WORKER_KIND
            await self.store.merge_metadata(interaction.subtask_id, {
                "suggested_agent": kind.value,
                "agent_escalation_id": None,
            })

    # ---- helpers ----

    async def _subtask_budget(self, task: Task) -> int:
        root = await self.store.root_of(task.id)
        used = await self.store.count_descendants(root.id)
        remaining = self.settings.max_total_subtasks_per_root - used
        return min(self.settings.max_subtasks_per_decomposition, remaining)

    async def _escalate_decomposition(self, task: Task, question: str, causation_id: Optional[str]) -> None:
        await self.humans.request_input(
            task.id,
            question,
            required=True,
            purpose=InteractionPurpose.DECOMPOSITION,
            causation_id=causation_id,
        )
