"""Recovery policies for failed subtasks."""

from typing import Awaitable, Callable, List, Optional
import re
import structlog

from ..config import Settings
from ..core.event_bus import EventBus
from ..core.human_interactions import HumanInteractionService
from ..core.store import TaskStore
from ..core.task_manager import TaskManager, event_metadata
from ..exceptions import OracleInvocationFailure
from ..llm.openrouter_client import OraclePrompt, OracleResponse
from ..llm.prompt_manager import PromptManager
from ..models.agent import AgentKind
from ..models.human_interaction import InteractionPurpose
from ..models.subtask import RecoveryAction
from ..models.task import Complexity, Task, TaskState

logger = structlog.get_logger()

ACTION_PATTERN = re.compile(r"ACTION:\s*\[?\s*(RETRY|REDEFINE|SPLIT|HUMAN|SKIP)\b", re.IGNORECASE)
DETAILS_PATTERN = re.compile(r"DETAILS:\s*(.*)", re.IGNORECASE | re.DOTALL)
REASON_PATTERN = re.compile(r"REASON:\s*(.*?)(?:\n|$)", re.IGNORECASE)

# placeholder written while the oracle is consulted, so only one caller recovers a failure
CLAIM_MARKER = "analyzing"

OracleCall = Callable[..., Awaitable[OracleResponse]]

def classify_recovery(text: Optional[str]) -> RecoveryAction:
    """
    Read the ACTION token from a failure analysis. Anything unrecognized
    goes to a human.
    """
    if not text:
        return RecoveryAction.HUMAN
    match = ACTION_PATTERN.search(text)
    if not match:
        return RecoveryAction.HUMAN
    return RecoveryAction(match.group(1).upper())

def _field(pattern: re.Pattern, text: str) -> str:
    match = pattern.search(text or "")
    return match.group(1).strip() if match else ""

class FailureRecovery:

    def __init__(
        self,
        store: TaskStore,
        task_manager: TaskManager,
        bus: EventBus,
        humans: HumanInteractionService,
        prompts: PromptManager,
        ask_oracle: OracleCall,
        settings: Settings,
    ):
        self.store = store
        self.task_manager = task_manager
        self.bus = bus
        self.humans = humans
        self.prompts = prompts
        self.ask_oracle = ask_oracle
        self.settings = settings
        self.logger = logger.bind(component="FailureRecovery")

    async def handle_failed_subtask(self, subtask_id: str, parent: Task, causation_id: Optional[str] = None) -> Optional[RecoveryAction]:
        """
        Choose and apply a recovery policy. Returns None when the failure was
        already claimed by another cycle or is no longer failed.
        """
        subtask = await self.store.require_task(subtask_id)
        if subtask.state != TaskState.FAILED or subtask.superseded:
            return None
        if not await self.store.compare_and_set_metadata(subtask.id, "recovery_action", None, CLAIM_MARKER):
            self.logger.debug(f"Failure of {subtask.id} already claimed")
            return None

        error = subtask.metadata.get("error_message") or "unknown error"
        retry_count = int(subtask.metadata.get("retry_count") or 0)

        try:
            response = await self.ask_oracle(
                OraclePrompt(
                    human_message=self.prompts.render(
                        "failure_analysis",
                        title=subtask.title,
                        description=subtask.description,
                        assigned_agent=subtask.metadata.get("assigned_agent", "Unknown"),
                        error=error,
                        parent_title=parent.title,
                        parent_description=parent.description,
                        retry_count=retry_count,
                    ),
                    purpose="failure_analysis",
                ),
                task=parent,
                causation_id=causation_id,
            )
            analysis = response.text
        except OracleInvocationFailure as e:
            self.logger.error(f"Failure analysis unavailable for {subtask.id}: {e}")
            analysis = ""

        action = classify_recovery(analysis)
        if action == RecoveryAction.RETRY and retry_count >= self.settings.max_subtask_retries:
            self.logger.info(f"Retry budget spent for {subtask.id}, escalating", retry_count=retry_count)
            action = RecoveryAction.HUMAN

        await self.store.merge_metadata(subtask.id, {"recovery_action": action.value})
        replacement_id = await self._apply(action, subtask, parent, error, analysis, causation_id)

        await self.bus.publish(
            "subtask.recovery_selected",
            {"subtask_id": subtask.id, "task_id": parent.id, "action": action.value, "replacement_id": replacement_id},
            metadata=await event_metadata(self.store, parent, causation_id),
        )
        self.logger.info(f"Recovery {action.value} for subtask {subtask.id}", parent_id=parent.id)
        return action

    async def _apply(
        self,
        action: RecoveryAction,
        subtask: Task,
        parent: Task,
        error: str,
        analysis: str,
        causation_id: Optional[str],
    ) -> Optional[str]:
        if action == RecoveryAction.RETRY:
            await self.task_manager.requeue(subtask.id, causation_id=causation_id)
            return None

        if action in (RecoveryAction.REDEFINE, RecoveryAction.SPLIT):
            replacement = await self.replace_subtask(subtask, error, _field(DETAILS_PATTERN, analysis), split=action == RecoveryAction.SPLIT)
            return replacement.id

        if action == RecoveryAction.SKIP:
            await self.task_manager.skip(subtask.id, error, causation_id=causation_id)
            return None

        reason = _field(REASON_PATTERN, analysis)
        question = (
            f"Subtask '{subtask.title}' failed: {error}\n"
            + (f"Analysis: {reason}\n" if reason else "")
            + "How should we proceed? Reply with guidance to retry it, or 'skip' to continue without it."
        )
        await self.humans.request_input(
            parent.id,
            question,
            required=True,
            purpose=InteractionPurpose.SUBTASK_FAILURE,
            subtask_id=subtask.id,
            causation_id=causation_id,
        )
        return None

    async def replace_subtask(self, subtask: Task, error: str, details: str, split: bool = False) -> Task:
        """
        Create a replacement for a failed subtask and point its dependents at
        the replacement. The original stays failed and is marked superseded.
        """
        description = f"{subtask.description}\n\nPrevious attempt failed: {error}"
        if details:
            description = f"{description}\n{details}"

        metadata = {
            "suggested_agent": subtask.suggested_agent or AgentKind.RESEARCHER.value,
            "complexity": subtask.complexity.value,
            "original_index": subtask.metadata.get("original_index"),
            "replaces": subtask.id,
        }
        title = f"{subtask.title} (revised)"
        if split:
            metadata["suggested_agent"] = AgentKind.COORDINATOR.value
            metadata["complexity"] = Complexity.COMPLEX.value
            title = f"{subtask.title} (split)"

        replacement = await self.task_manager.create_task(
            title=title,
            description=description,
            priority=subtask.priority,
            parent_id=subtask.parent_id,
            project_id=subtask.project_id,
            depends_on_task_ids=subtask.depends_on_task_ids,
            metadata=metadata,
        )
        await self.store.merge_metadata(subtask.id, {"superseded_by": replacement.id})
        rewired = await self._rewire_dependents(subtask, replacement.id)

        await self.bus.publish(
            "subtask.created",
            {
                "subtask_id": replacement.id,
                "parent_id": replacement.parent_id,
                "title": replacement.title,
                "description": replacement.description,
                "priority": replacement.priority.value,
                "agent_type": metadata["suggested_agent"],
                "complexity": metadata["complexity"],
                "depends_on": replacement.depends_on_task_ids,
            },
            metadata=await event_metadata(self.store, replacement),
        )
        self.logger.info(f"Subtask {subtask.id} superseded by {replacement.id}", rewired=len(rewired))
        return replacement

    async def _rewire_dependents(self, original: Task, replacement_id: str) -> List[str]:
        if not original.parent_id:
            return []
        rewired = []
        for sibling in await self.store.children_of(original.parent_id):
            if original.id not in sibling.depends_on_task_ids:
                continue
            deps = [replacement_id if dep == original.id else dep for dep in sibling.depends_on_task_ids]
            await self.store.update_task(sibling.id, depends_on_task_ids=deps)
            rewired.append(sibling.id)
        return rewired
