from typing import Any, Dict, Optional
import re
import structlog
from pathlib import Path

logger = structlog.get_logger()

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

# Used when a template file is missing from the installed package.
FALLBACK_PROMPTS: Dict[str, str] = {
    "decomposition": (
        "Break the task below into 2-6 subtasks.\n\n"
        "Task: {title}\nDescription: {description}\n{guidance}\n\n"
        "For each subtask write:\nSubtask N: <title>\nDescription: <what to do>\n"
        "Priority: high|normal|low\nAgent: <AgentType>\nDependencies: None or comma separated subtask numbers\n"
        "Complexity: simple|moderate|complex"
    ),
    "failure_analysis": (
        "A subtask failed.\nTitle: {title}\nDescription: {description}\nError: {error}\n\n"
        "Answer with ACTION: RETRY|REDEFINE|SPLIT|HUMAN|SKIP and REASON: <why>."
    ),
    "completion_summary": "Summarize the results of the task '{title}':\n\n{results}",
    "agent_selection": (
        "Pick one agent for this subtask.\nTitle: {title}\nDescription: {description}\n\n"
        "RECOMMENDED AGENT: <AgentType>"
    ),
    "worker": "You are a {role}. Complete the task thoroughly and report your findings.",
}

BLANK_RUN = re.compile(r"\n{3,}")

class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""

class PromptManager:
    """
    Prompt templates kept as markdown files, one per oracle purpose.
    Heading lines document the template and are stripped on load.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = Path(prompts_dir) if prompts_dir else PROMPTS_DIR
        self._prompts_cache: Dict[str, str] = {}

        logger.info(f"PromptManager initialized with prompts dir: {self.prompts_dir}")

    def load_prompt(self, prompt_name: str) -> str:
        """
        Template text for prompt_name, cached after the first read.
        """
        cached = self._prompts_cache.get(prompt_name)
        if cached is not None:
            return cached

        prompt_file = self.prompts_dir / f"{prompt_name}.md"
        if prompt_file.exists():
            template = self._process_prompt_content(prompt_file.read_text(encoding="utf-8"))
            logger.debug(f"Loaded prompt: {prompt_name}")
        elif prompt_name in FALLBACK_PROMPTS:
            logger.warning(f"Prompt file not found, using fallback: {prompt_file}")
            template = FALLBACK_PROMPTS[prompt_name]
        else:
            logger.error(f"Prompt file not found: {prompt_file}")
            raise FileNotFoundError(f"Prompt file not found: {prompt_name}.md")

        self._prompts_cache[prompt_name] = template
        return template

    def render(self, prompt_name: str, **values: Any) -> str:
        """
        Fill {placeholders}; missing values render as empty strings.
        """
        template = self.load_prompt(prompt_name)
        return template.format_map(_Defaults({k: "" if v is None else v for k, v in values.items()}))

    def _process_prompt_content(self, content: str) -> str:
        body = [line for line in content.split("\n") if not line.startswith("#")]
        return BLANK_RUN.sub("\n\n", "\n".join(body).strip())

    def reload_prompts(self):
        """
        Clear cache and reload all prompts.
        """
        self._prompts_cache.clear()
        logger.info("Prompt cache cleared")

_prompt_manager: Optional[PromptManager] = None

def get_prompt_manager() -> PromptManager:
    """
    Get or create prompt manager instance.
    """
    global _prompt_manager

    if _prompt_manager is None:
        _prompt_manager = PromptManager()

    return _prompt_manager
