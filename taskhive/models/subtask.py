from pydantic import BaseModel, Field
from typing import List
from enum import Enum

from .task import TaskPriority, Complexity

class SubtaskRecord(BaseModel):
    """
    One subtask parsed from an oracle decomposition.
    dependency_indices are 1-based positions in the parsed list.
    """
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    priority: TaskPriority = TaskPriority.NORMAL
    agent_type: str = "ResearcherAgent"
    dependency_indices: List[int] = Field(default_factory=list)
    complexity: Complexity = Complexity.SIMPLE

class RecoveryAction(str, Enum):
    RETRY = "RETRY"
    REDEFINE = "REDEFINE"
    SPLIT = "SPLIT"
    HUMAN = "HUMAN"
    SKIP = "SKIP"
