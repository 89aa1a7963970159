from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum
import uuid

from .task import utcnow

class InteractionType(str, Enum):
    INPUT_REQUEST = "input_request"
    INTERVENTION = "intervention"

class InteractionStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    DISMISSED = "dismissed"
    EXPIRED = "expired"

class InteractionPurpose(str, Enum):
    DECOMPOSITION = "decomposition"
    SUBTASK_FAILURE = "subtask_failure"
    AGENT_SELECTION = "agent_selection"
    GENERAL = "general"

class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

class HumanInteraction(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    interaction_type: InteractionType = InteractionType.INPUT_REQUEST
    required: bool = False
    status: InteractionStatus = InteractionStatus.PENDING
    purpose: InteractionPurpose = InteractionPurpose.GENERAL
    question: Optional[str] = None
    description: Optional[str] = None
    urgency: Optional[Urgency] = None
    subtask_id: Optional[str] = None
    agent_activity_id: Optional[str] = None
    response: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == InteractionStatus.PENDING

    @property
    def is_input_request(self) -> bool:
        return self.interaction_type == InteractionType.INPUT_REQUEST

    @property
    def is_intervention(self) -> bool:
        return self.interaction_type == InteractionType.INTERVENTION

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.is_input_request and self.expires_at is not None and self.expires_at <= now
