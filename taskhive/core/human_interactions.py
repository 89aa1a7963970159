"""Human input requests and interventions, and how they block and resume tasks."""

from typing import List, Optional
from datetime import datetime, timedelta
import structlog

from ..config import Settings
from ..exceptions import TaskhiveError
from ..models.human_interaction import (
    HumanInteraction,
    InteractionPurpose,
    InteractionStatus,
    InteractionType,
    Urgency,
)
from ..models.task import TaskState, utcnow
from .event_bus import EventBus
from .store import TaskStore
from .task_manager import TaskManager, event_metadata

logger = structlog.get_logger()

class HumanInteractionService:
    """
    A required interaction blocks only its owning task. Answering the one the
    task waits for moves it back to active; the coordinator picks the
    response up from the human_input.provided / human_interaction.resolved events.
    """

    def __init__(self, store: TaskStore, task_manager: TaskManager, bus: EventBus, settings: Settings):
        self.store = store
        self.task_manager = task_manager
        self.bus = bus
        self.settings = settings
        self.logger = logger.bind(component="HumanInteractionService")

    async def request_input(
        self,
        task_id: str,
        question: str,
        required: bool = True,
        purpose: InteractionPurpose = InteractionPurpose.GENERAL,
        subtask_id: Optional[str] = None,
        agent_activity_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> HumanInteraction:
        interaction = HumanInteraction(
            task_id=task_id,
            interaction_type=InteractionType.INPUT_REQUEST,
            required=required,
            purpose=purpose,
            question=question,
            subtask_id=subtask_id,
            agent_activity_id=agent_activity_id,
            expires_at=self._expiry(),
        )
        return await self._open(interaction, causation_id)

    async def request_intervention(
        self,
        task_id: str,
        description: str,
        urgency: Urgency = Urgency.HIGH,
        purpose: InteractionPurpose = InteractionPurpose.GENERAL,
        subtask_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> HumanInteraction:
        interaction = HumanInteraction(
            task_id=task_id,
            interaction_type=InteractionType.INTERVENTION,
            required=True,
            purpose=purpose,
            question=description,
            description=description,
            urgency=urgency,
            subtask_id=subtask_id,
        )
        return await self._open(interaction, causation_id)

    async def answer(self, interaction_id: str, response: str) -> Optional[HumanInteraction]:
        interaction = await self.store.update_interaction(
            interaction_id,
            InteractionStatus.PENDING,
            status=InteractionStatus.ANSWERED,
            response=response,
            responded_at=utcnow(),
        )
        if interaction is None:
            self.logger.warning(f"Interaction {interaction_id} is not pending, answer ignored")
            return None

        await self._release_task(interaction)
        await self._publish(
            "human_input.provided", interaction,
            {"response": response},
        )
        return interaction

    async def resolve(self, interaction_id: str, response: Optional[str] = None) -> Optional[HumanInteraction]:
        interaction = await self.store.update_interaction(
            interaction_id,
            InteractionStatus.PENDING,
            status=InteractionStatus.RESOLVED,
            response=response,
            responded_at=utcnow(),
        )
        if interaction is None:
            self.logger.warning(f"Interaction {interaction_id} is not pending, resolve ignored")
            return None

        await self._release_task(interaction)
        await self._publish("human_interaction.resolved", interaction, {"response": response})
        return interaction

    async def ignore(self, interaction_id: str) -> Optional[HumanInteraction]:
        """
        Only optional input requests can be ignored.
        """
        current = await self.store.get_interaction(interaction_id)
        if current is None:
            return None
        if current.required or not current.is_input_request:
            raise TaskhiveError(f"Interaction {interaction_id} is required and cannot be ignored")

        interaction = await self.store.update_interaction(
            interaction_id, InteractionStatus.PENDING,
            status=InteractionStatus.IGNORED, responded_at=utcnow(),
        )
        if interaction is not None:
            await self._publish("human_input.ignored", interaction, {})
        return interaction

    async def dismiss(self, interaction_id: str) -> Optional[HumanInteraction]:
        """
        Dismissing the interaction a task is blocked on fails that task,
        since nothing else can unblock it.
        """
        interaction = await self.store.update_interaction(
            interaction_id, InteractionStatus.PENDING,
            status=InteractionStatus.DISMISSED, responded_at=utcnow(),
        )
        if interaction is None:
            return None

        await self._publish("human_interaction.dismissed", interaction, {})

        task = await self.store.get_task(interaction.task_id)
        if task and task.metadata.get("waiting_for_interaction_id") == interaction.id:
            successor = await self._next_blocking(task.id, exclude=interaction.id)
            if successor is not None:
                await self.store.merge_metadata(task.id, {"waiting_for_interaction_id": successor.id})
            elif task.state == TaskState.WAITING_ON_HUMAN:
                await self.task_manager.fail(task.id, "Required human interaction was dismissed")
        return interaction

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[HumanInteraction]:
        """
        Expire pending input requests past their deadline. A required request
        is escalated into a critical intervention the task then waits on.
        """
        now = now or utcnow()
        expired = []

        for pending in await self.store.list_interactions(status=InteractionStatus.PENDING):
            if not pending.is_expired(now):
                continue

            interaction = await self.store.update_interaction(
                pending.id, InteractionStatus.PENDING, status=InteractionStatus.EXPIRED,
            )
            if interaction is None:
                continue
            expired.append(interaction)
            await self._publish("human_input.expired", interaction, {})

            if not interaction.required:
                continue

            intervention = await self.request_intervention(
                interaction.task_id,
                f"Input request timed out without a response: {interaction.question}",
                urgency=Urgency.CRITICAL,
                purpose=interaction.purpose,
                subtask_id=interaction.subtask_id,
            )
            task = await self.store.get_task(interaction.task_id)
            if task and task.metadata.get("waiting_for_interaction_id") == interaction.id:
                await self.store.merge_metadata(task.id, {"waiting_for_interaction_id": intervention.id})
            await self._publish("human_input.timeout_escalated", interaction, {"intervention_id": intervention.id})
            self.logger.warning(f"Required input {interaction.id} expired, escalated to {intervention.id}")

        return expired

    async def pending_for(self, task_id: str) -> List[HumanInteraction]:
        return await self.store.list_interactions(task_id=task_id, status=InteractionStatus.PENDING)

    # ---- helpers ----

    async def _open(self, interaction: HumanInteraction, causation_id: Optional[str]) -> HumanInteraction:
        interaction = await self.store.insert_interaction(interaction)
        await self._publish(
            "human_input.requested", interaction,
            {
                "question": interaction.question,
                "required": interaction.required,
                "purpose": interaction.purpose.value,
                "subtask_id": interaction.subtask_id,
            },
            causation_id,
        )

        if interaction.required:
            await self._block_task(interaction, causation_id)
        return interaction

    async def _block_task(self, interaction: HumanInteraction, causation_id: Optional[str]) -> None:
        task = await self.store.require_task(interaction.task_id)

        if task.state == TaskState.PENDING:
            task = await self.task_manager.activate(task.id, causation_id)

        if task.state == TaskState.ACTIVE:
            await self.task_manager.wait_on_human(task.id, interaction.id, causation_id)
        elif task.state == TaskState.WAITING_ON_HUMAN:
            if not task.metadata.get("waiting_for_interaction_id"):
                await self.store.merge_metadata(task.id, {"waiting_for_interaction_id": interaction.id})
        else:
            self.logger.warning(
                f"Task {task.id} is {task.state.value}, required interaction {interaction.id} does not block it"
            )

    async def _release_task(self, interaction: HumanInteraction) -> None:
        task = await self.store.get_task(interaction.task_id)
        if task is None or task.state != TaskState.WAITING_ON_HUMAN:
            return
        if task.metadata.get("waiting_for_interaction_id") != interaction.id:
            return

        successor = await self._next_blocking(task.id, exclude=interaction.id)
        if successor is not None:
            await self.store.merge_metadata(task.id, {"waiting_for_interaction_id": successor.id})
            self.logger.info(f"Task {task.id} still blocked on {successor.id}")
            return

        await self.task_manager.resume_from_human(task.id, interaction.id)

    async def _next_blocking(self, task_id: str, exclude: str) -> Optional[HumanInteraction]:
        for candidate in await self.pending_for(task_id):
            if candidate.required and candidate.id != exclude:
                return candidate
        return None

    async def _publish(self, event_type: str, interaction: HumanInteraction, data: dict, causation_id: Optional[str] = None) -> None:
        task = await self.store.get_task(interaction.task_id)
        metadata = await event_metadata(self.store, task, causation_id) if task else None
        payload = {"interaction_id": interaction.id, "task_id": interaction.task_id, **data}
        await self.bus.publish(event_type, payload, metadata=metadata)

    def _expiry(self) -> Optional[datetime]:
        minutes = self.settings.human_input_timeout_minutes
        if not minutes:
            return None
        return utcnow() + timedelta(minutes=minutes)
