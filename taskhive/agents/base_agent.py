from abc import ABC, abstractmethod
from typing import Optional
import structlog

from ..core.event_bus import EventBus
from ..core.store import TaskStore
from ..core.task_manager import TaskManager, event_metadata
from ..core.work_queue import WorkItem
from ..llm.openrouter_client import OraclePrompt, OracleResponse, ReasoningOracle
from ..llm.prompt_manager import PromptManager
from ..models.task import Task

logger = structlog.get_logger()

class BaseAgent(ABC):
    """
    Base class for everything that processes work items.
    """

    def __init__(
        self,
        store: TaskStore,
        bus: EventBus,
        task_manager: TaskManager,
        oracle: ReasoningOracle,
        prompts: PromptManager,
        agent_type: str,
    ):
        self.store = store
        self.bus = bus
        self.task_manager = task_manager
        self.oracle = oracle
        self.prompts = prompts
        self.agent_type = agent_type
        self.logger = logger.bind(agent_type=agent_type)

    async def ask_oracle(
        self,
        prompt: OraclePrompt,
        task: Optional[Task] = None,
        causation_id: Optional[str] = None,
    ) -> OracleResponse:
        """
        Invoke the oracle and record token usage. OracleInvocationFailure
        propagates to the caller.
        """
        response = await self.oracle.invoke(prompt)

        metadata = await event_metadata(self.store, task, causation_id) if task else None
        await self.bus.publish(
            "llm_call.completed",
            {
                "model": response.model or "unknown",
                "input_tokens": response.input_token_count,
                "output_tokens": response.output_token_count,
                "purpose": prompt.purpose,
            },
            metadata=metadata,
        )
        return response

    @abstractmethod
    async def run(self, item: WorkItem) -> None:
        """
        Process one work item
        """
        pass
