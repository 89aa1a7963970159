from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
import uuid

from .task import utcnow

class EventMetadata(BaseModel):
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    task_id: Optional[str] = None
    agent_activity_id: Optional[str] = None
    project_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

class Event(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    @property
    def namespace(self) -> str:
        return self.event_type.split(".", 1)[0]
