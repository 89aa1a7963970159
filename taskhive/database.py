from supabase import create_client, Client
from typing import Optional, Any, Dict, List
from datetime import datetime
import structlog

from .config import Settings, get_settings
from .core.store import TaskStore
from .exceptions import InvalidStateTransition, TaskNotFound
from .models.agent import AgentActivity
from .models.event import Event
from .models.human_interaction import HumanInteraction, InteractionStatus
from .models.task import Task, TaskState, utcnow

logger = structlog.get_logger()

TASKS = "tasks"
EVENTS = "events"
INTERACTIONS = "human_interactions"
ACTIVITIES = "agent_activities"

# optimistic metadata writes retry this many times before giving up
METADATA_WRITE_ATTEMPTS = 5

# Global Supabase client instance
supabase: Optional[Client] = None

async def init_supabase(settings: Optional[Settings] = None) -> Client:
    """Initialize Supabase client"""
    global supabase
    settings = settings or get_settings()

    if not settings.supabase_url or not settings.supabase_key:
        raise ValueError("Supabase URL and Key must be set in environment")

    try:
        supabase = create_client(
            settings.supabase_url,
            settings.supabase_key
        )

        # Test connection
        supabase.table(TASKS).select("id", count="exact").limit(1).execute()
        logger.info("Supabase connected successfully")

        return supabase

    except Exception as e:
        logger.error(f"Failed to connect to Supabase: {e}")
        raise


def get_supabase() -> Client:
    """Get Supabase client instance"""
    if supabase is None:
        raise RuntimeError("Supabase not initialized. Call init_supabase() first.")
    return supabase

def _row(model) -> Dict[str, Any]:
    return model.model_dump(mode="json")

def _json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value

class SupabaseStore(TaskStore):
    """
    TaskStore over Supabase tables. State transitions are conditional
    updates filtered on the expected state; metadata writes are optimistic
    on updated_at.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client
        self.logger = logger.bind(component="SupabaseStore")

    @property
    def client(self) -> Client:
        return self._client or get_supabase()

    def _table(self, name: str):
        return self.client.table(name)

    # ---- tasks ----

    async def create_task(self, task: Task) -> Task:
        response = self._table(TASKS).insert(_row(task)).execute()
        return Task.model_validate(response.data[0]) if response.data else task

    async def get_task(self, task_id: str) -> Optional[Task]:
        response = self._table(TASKS).select("*").eq("id", task_id).execute()
        return Task.model_validate(response.data[0]) if response.data else None

    async def get_tasks(self, task_ids: List[str]) -> List[Task]:
        if not task_ids:
            return []
        response = self._table(TASKS).select("*").in_("id", list(task_ids)).execute()
        return [Task.model_validate(row) for row in response.data or []]

    async def update_task(self, task_id: str, **fields: Any) -> Task:
        if "state" in fields:
            raise ValueError("Task state can only change through transition()")
        updates = {k: _json(v) for k, v in fields.items()}
        updates["updated_at"] = utcnow().isoformat()
        response = self._table(TASKS).update(updates).eq("id", task_id).execute()
        if not response.data:
            raise TaskNotFound(task_id)
        return Task.model_validate(response.data[0])

    async def merge_metadata(self, task_id: str, patch: Dict[str, Any]) -> Task:
        for _ in range(METADATA_WRITE_ATTEMPTS):
            current = await self.require_task(task_id)
            updated = await self._write_metadata(current, {**current.metadata, **patch})
            if updated is not None:
                return updated
        raise RuntimeError(f"Metadata of task {task_id} kept changing, merge abandoned")

    async def compare_and_set_metadata(self, task_id: str, key: str, expected: Any, value: Any) -> bool:
        for _ in range(METADATA_WRITE_ATTEMPTS):
            current = await self.require_task(task_id)
            if current.metadata.get(key) != expected:
                return False
            if await self._write_metadata(current, {**current.metadata, key: value}) is not None:
                return True
        return False

    async def _write_metadata(self, current: Task, metadata: Dict[str, Any]) -> Optional[Task]:
        response = (
            self._table(TASKS)
            .update({"metadata": metadata, "updated_at": utcnow().isoformat()})
            .eq("id", current.id)
            .eq("updated_at", current.updated_at.isoformat())
            .execute()
        )
        return Task.model_validate(response.data[0]) if response.data else None

    async def transition(
        self,
        task_id: str,
        expected: TaskState,
        to_state: TaskState,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Task:
        changes = {k: _json(v) for k, v in (updates or {}).items()}
        changes.update(state=to_state.value, updated_at=utcnow().isoformat())

        response = (
            self._table(TASKS)
            .update(changes)
            .eq("id", task_id)
            .eq("state", expected.value)
            .execute()
        )
        if response.data:
            return Task.model_validate(response.data[0])

        current = await self.require_task(task_id)
        raise InvalidStateTransition(
            task_id, current.state.value, to_state.value,
            reason=f"expected state {expected.value}",
        )

    async def children_of(self, task_id: str) -> List[Task]:
        response = self._table(TASKS).select("*").eq("parent_id", task_id).order("created_at").execute()
        return [Task.model_validate(row) for row in response.data or []]

    # ---- events ----

    async def insert_event(self, event: Event) -> Event:
        self._table(EVENTS).insert(_row(event)).execute()
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        response = self._table(EVENTS).select("*").eq("id", event_id).execute()
        return Event.model_validate(response.data[0]) if response.data else None

    async def mark_event_processed(self, event_id: str, processed_at: datetime) -> None:
        (
            self._table(EVENTS)
            .update({"processed_at": processed_at.isoformat()})
            .eq("id", event_id)
            .is_("processed_at", "null")
            .execute()
        )

    async def list_events(self, event_type: Optional[str] = None, task_id: Optional[str] = None) -> List[Event]:
        query = self._table(EVENTS).select("*")
        if event_type:
            query = query.eq("event_type", event_type)
        if task_id:
            query = query.eq("metadata->>task_id", task_id)
        response = query.order("created_at").execute()
        return [Event.model_validate(row) for row in response.data or []]

    # ---- human interactions ----

    async def insert_interaction(self, interaction: HumanInteraction) -> HumanInteraction:
        response = self._table(INTERACTIONS).insert(_row(interaction)).execute()
        return HumanInteraction.model_validate(response.data[0]) if response.data else interaction

    async def get_interaction(self, interaction_id: str) -> Optional[HumanInteraction]:
        response = self._table(INTERACTIONS).select("*").eq("id", interaction_id).execute()
        return HumanInteraction.model_validate(response.data[0]) if response.data else None

    async def update_interaction(
        self,
        interaction_id: str,
        expected_status: InteractionStatus,
        **fields: Any,
    ) -> Optional[HumanInteraction]:
        response = (
            self._table(INTERACTIONS)
            .update({k: _json(v) for k, v in fields.items()})
            .eq("id", interaction_id)
            .eq("status", expected_status.value)
            .execute()
        )
        return HumanInteraction.model_validate(response.data[0]) if response.data else None

    async def list_interactions(
        self,
        task_id: Optional[str] = None,
        status: Optional[InteractionStatus] = None,
    ) -> List[HumanInteraction]:
        query = self._table(INTERACTIONS).select("*")
        if task_id:
            query = query.eq("task_id", task_id)
        if status:
            query = query.eq("status", status.value)
        response = query.order("created_at").execute()
        return [HumanInteraction.model_validate(row) for row in response.data or []]

    # ---- agent activities ----

    async def create_activity(self, activity: AgentActivity) -> AgentActivity:
        response = self._table(ACTIVITIES).insert(_row(activity)).execute()
        return AgentActivity.model_validate(response.data[0]) if response.data else activity

    async def get_activity(self, activity_id: str) -> Optional[AgentActivity]:
        response = self._table(ACTIVITIES).select("*").eq("id", activity_id).execute()
        return AgentActivity.model_validate(response.data[0]) if response.data else None

    async def update_activity(self, activity_id: str, **fields: Any) -> AgentActivity:
        response = (
            self._table(ACTIVITIES)
            .update({k: _json(v) for k, v in fields.items()})
            .eq("id", activity_id)
            .execute()
        )
        if not response.data:
            raise KeyError(f"Agent activity not found: {activity_id}")
        return AgentActivity.model_validate(response.data[0])
