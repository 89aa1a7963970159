"""Parse free-text oracle decompositions into SubtaskRecords.

Oracle output is loosely formatted, so several strategies are tried in order
and the first one that yields at least one record wins:

1. ``DelimiterSplitStrategy``: sections separated by ``---``, ``***``, ``===``
   or ``Subtask N:`` headers.
2. ``NumberedHeadingStrategy``: sections start at numbered heading lines such
   as ``Subtask 1:``, ``1.``, ``2)`` or ``### 3``.
3. ``TitleScanStrategy``: capitalised lines treated as titles, each followed
   by a description and priority.

A section must yield a title, a description and a priority to become a record.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import re
import structlog

from ..exceptions import DecompositionParseFailure
from ..models.agent import AgentKind, DEFAULT_WORKER_KIND
from ..models.subtask import SubtaskRecord
from ..models.task import Complexity, TaskPriority

logger = structlog.get_logger()

SECTION_DELIMITER = re.compile(r"---|\*{3}|={3}|Subtask\s+\d+:")
NUMBERED_HEADING = re.compile(r"^[ \t]*(?:Subtask\s+\d+:|#+[ \t]*\d+[.):]?[ \t]+|\d+[.)][ \t]+)", re.MULTILINE)
TITLE_LINE = re.compile(r"(?:^|\n)(?:Subtask\s+\d+:)?[ \t]*([A-Z][\w \t,]+)(?=\n|$)")

TITLE_FIELD = re.compile(r"[ \t]*(?:Subtask\s+\d+:|#+[ \t]*\d+[.):]?|\d+[.)])?\s*(.*?)(?:\r?\n|$)")
DESCRIPTION_FIELD = re.compile(r"Description:\s*(.*?)(?:Priority:|Agent:|Dependencies:|Complexity:|$)", re.DOTALL | re.IGNORECASE)
PRIORITY_FIELD = re.compile(r"Priority:?\s*(high|normal|low)", re.IGNORECASE)
AGENT_FIELD = re.compile(r"Agent:?\s*([A-Za-z]+Agent)")
DEPENDENCIES_FIELD = re.compile(r"Dependencies:?\s*(None|\d+(?:,\s*\d+)*)", re.IGNORECASE)
COMPLEXITY_FIELD = re.compile(r"Complexity:?\s*(simple|moderate|complex)", re.IGNORECASE)

def parse_dependency_indices(raw: Optional[str]) -> List[int]:
    if not raw or raw.strip().lower() == "none":
        return []
    return [int(part) for part in re.split(r",\s*", raw.strip()) if part.strip().isdigit()]

def normalize_agent_type(raw: Optional[str], complexity: Complexity) -> str:
    """
    Complex work always goes to a coordinator. Names outside the known set
    fall back to the generalist researcher.
    """
    if complexity == Complexity.COMPLEX:
        return AgentKind.COORDINATOR.value
    kind = AgentKind.resolve(raw)
    return kind.value if kind else DEFAULT_WORKER_KIND.value

def record_from_section(section: str) -> Optional[SubtaskRecord]:
    """
    Build a record from one section, or None when a required field is missing.
    """
    title_match = TITLE_FIELD.search(section)
    description_match = DESCRIPTION_FIELD.search(section)
    priority_match = PRIORITY_FIELD.search(section)
    if not (title_match and description_match and priority_match):
        return None

    title = title_match.group(1).strip()
    description = description_match.group(1).strip()
    if not title or not description:
        return None

    complexity_match = COMPLEXITY_FIELD.search(section)
    complexity = Complexity.normalize(complexity_match.group(1)) if complexity_match else Complexity.SIMPLE

    agent_match = AGENT_FIELD.search(section)
    deps_match = DEPENDENCIES_FIELD.search(section)

    return SubtaskRecord(
        title=title,
        description=description,
        priority=TaskPriority.normalize(priority_match.group(1)),
        agent_type=normalize_agent_type(agent_match.group(1) if agent_match else None, complexity),
        dependency_indices=parse_dependency_indices(deps_match.group(1) if deps_match else None),
        complexity=complexity,
    )

class ParseStrategy(ABC):
    name: str = "base"

    @abstractmethod
    def sections(self, text: str) -> List[str]:
        ...

    def parse(self, text: str) -> List[SubtaskRecord]:
        records = []
        for section in self.sections(text):
            record = record_from_section(section)
            if record is not None:
                records.append(record)
        return records

class DelimiterSplitStrategy(ParseStrategy):
    name = "delimiter_split"

    def sections(self, text: str) -> List[str]:
        parts = [part for part in SECTION_DELIMITER.split(text) if part.strip()]
        # a single section means the delimiters were absent
        return parts if len(parts) > 1 else []

class NumberedHeadingStrategy(ParseStrategy):
    name = "numbered_heading"

    def sections(self, text: str) -> List[str]:
        starts = [match.start() for match in NUMBERED_HEADING.finditer(text)]
        return [text[start:end] for start, end in zip(starts, starts[1:] + [len(text)])]

class TitleScanStrategy(ParseStrategy):
    """
    Last resort: capitalised lines start a new section. Records found this
    way carry no agent, dependency or complexity hints.
    """
    name = "title_scan"

    def sections(self, text: str) -> List[str]:
        matches = list(TITLE_LINE.finditer(text))
        sections = []
        for index, match in enumerate(matches):
            end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
            sections.append(text[match.start(1):end])
        return sections

    def parse(self, text: str) -> List[SubtaskRecord]:
        records = []
        for section in self.sections(text):
            title = section.split("\n", 1)[0].strip()
            description_match = DESCRIPTION_FIELD.search(section)
            priority_match = PRIORITY_FIELD.search(section)
            if not (title and description_match and priority_match):
                continue
            description = description_match.group(1).strip()
            if not description:
                continue
            records.append(SubtaskRecord(
                title=title,
                description=description,
                priority=TaskPriority.normalize(priority_match.group(1)),
            ))
        return records

DEFAULT_STRATEGIES: Sequence[ParseStrategy] = (
    DelimiterSplitStrategy(),
    NumberedHeadingStrategy(),
    TitleScanStrategy(),
)

def parse_subtasks(text: str, strategies: Sequence[ParseStrategy] = DEFAULT_STRATEGIES) -> List[SubtaskRecord]:
    """
    Returns at least one record or raises DecompositionParseFailure.
    """
    if not text or not text.strip():
        raise DecompositionParseFailure("Decomposition output is empty")

    for strategy in strategies:
        records = strategy.parse(text)
        if records:
            logger.info(f"Parsed {len(records)} subtasks", strategy=strategy.name)
            return records

    logger.warning("No subtasks parsed from decomposition", preview=text[:500])
    raise DecompositionParseFailure("No subtasks could be parsed from the decomposition output")
