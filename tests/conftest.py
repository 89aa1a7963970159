"""Shared fixtures: an in-memory Hive driven by a scripted oracle."""

from typing import Callable, Dict, List, Optional, Union

import pytest

from taskhive.config import Settings
from taskhive.exceptions import OracleInvocationFailure
from taskhive.llm.openrouter_client import OraclePrompt, OracleResponse, ReasoningOracle
from taskhive.main import Hive
from taskhive.models.task import Task, TaskPriority

Script = Union[str, Exception, List[Union[str, Exception]], Callable[[OraclePrompt], str]]

REPORT_DECOMPOSITION = """Here is the plan.

Subtask 1: Gather sources
Description: Collect background material for the report.
Priority: high
Agent: ResearcherAgent
Dependencies: None
Complexity: simple
---
Subtask 2: Analyze figures
Description: Analyze the figures the report relies on.
Priority: normal
Agent: AnalyzerAgent
Dependencies: None
Complexity: simple
---
Subtask 3: Write the report
Description: Write the report from the gathered sources and the analysis.
Priority: normal
Agent: WriterAgent
Dependencies: 1, 2
Complexity: simple
"""


class ScriptedOracle(ReasoningOracle):
    """Answers by prompt purpose. Lists are consumed in order, then the default applies."""

    def __init__(self, scripts: Optional[Dict[str, Script]] = None, default: str = "Done."):
        self.scripts: Dict[str, Script] = dict(scripts or {})
        self.default = default
        self.calls: List[OraclePrompt] = []

    async def invoke(self, prompt: OraclePrompt) -> OracleResponse:
        self.calls.append(prompt)
        script = self.scripts.get(prompt.purpose)

        if isinstance(script, list):
            answer = script.pop(0) if script else self.default
        elif callable(script):
            answer = script(prompt)
        elif script is None:
            answer = self.default
        else:
            answer = script

        if isinstance(answer, Exception):
            raise answer
        return OracleResponse(text=answer, input_token_count=12, output_token_count=34, model="scripted")

    def calls_for(self, purpose: str) -> List[OraclePrompt]:
        return [call for call in self.calls if call.purpose == purpose]


def first_line_result(prompt: OraclePrompt) -> str:
    return f"Result of {prompt.human_message.splitlines()[0]}"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, openrouter_api_key="test-key", log_format="console")


@pytest.fixture
def oracle() -> ScriptedOracle:
    return ScriptedOracle({"worker": first_line_result, "completion_summary": "Final synthesized report"})


@pytest.fixture
def hive(settings, oracle) -> Hive:
    return Hive(settings=settings, oracle=oracle)


@pytest.fixture
def make_task(hive):
    async def _make(title: str = "Parent task", parent: Optional[Task] = None, **kwargs) -> Task:
        kwargs.setdefault("priority", TaskPriority.NORMAL)
        return await hive.task_manager.create_task(
            title=title,
            description=kwargs.pop("description", f"{title} description"),
            parent_id=parent.id if parent else None,
            **kwargs,
        )
    return _make


@pytest.fixture
def oracle_down() -> OracleInvocationFailure:
    return OracleInvocationFailure("oracle unavailable")


@pytest.fixture
def build_hive():
    """Hive with its own oracle script and settings overrides."""
    def _build(scripts: Optional[Dict[str, Script]] = None, **overrides) -> Hive:
        base = {"worker": first_line_result, "completion_summary": "Final synthesized report"}
        base.update(scripts or {})
        config = Settings(_env_file=None, openrouter_api_key="test-key", log_format="console", **overrides)
        return Hive(settings=config, oracle=ScriptedOracle(base))
    return _build


@pytest.fixture
def report_decomposition() -> str:
    return REPORT_DECOMPOSITION
