from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import re
import uuid

from .task import utcnow

class AgentKind(str, Enum):
    """
    Closed set of worker variants a subtask can be assigned to.
    """
    RESEARCHER = "ResearcherAgent"
    WEB_RESEARCHER = "WebResearcherAgent"
    CODE_RESEARCHER = "CodeResearcherAgent"
    WRITER = "WriterAgent"
    ANALYZER = "AnalyzerAgent"
    COORDINATOR = "CoordinatorAgent"

    @classmethod
    def resolve(cls, name: Optional[str]) -> Optional["AgentKind"]:
        """
        Match an oracle-suggested name to a known kind, or None.
        Accepts "WriterAgent", "writer", "web_researcher" and similar spellings.
        """
        if not name:
            return None
        compact = re.sub(r"[^a-z]", "", str(name).lower())
        if not compact.endswith("agent"):
            compact = f"{compact}agent"
        for kind in cls:
            if kind.value.lower() == compact:
                return kind
        return None

    @property
    def queue_name(self) -> str:
        return "coordinator" if self is AgentKind.COORDINATOR else "agents"

DEFAULT_WORKER_KIND = AgentKind.RESEARCHER

class ActivityStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

class AgentActivity(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    agent_kind: AgentKind
    parent_id: Optional[str] = None
    status: ActivityStatus = ActivityStatus.PENDING
    purpose: str = ""
    result: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
