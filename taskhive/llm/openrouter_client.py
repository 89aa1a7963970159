from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import structlog
from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from ..config import Settings, get_settings
from ..exceptions import OracleInvocationFailure

logger = structlog.get_logger()

class OraclePrompt(BaseModel):
    system_prompt: str = ""
    human_message: str
    purpose: str = "general"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None

class OracleResponse(BaseModel):
    text: str
    input_token_count: int = 0
    output_token_count: int = 0
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class ReasoningOracle(ABC):
    """
    Black-box text generation. Always fallible: implementations raise
    OracleInvocationFailure when no answer could be produced.
    """

    @abstractmethod
    async def invoke(self, prompt: OraclePrompt) -> OracleResponse:
        ...

class OpenRouterOracle(ReasoningOracle):
    """
    OpenRouter LLM client using LangChain with OpenAI compatibility
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        model_name: Optional[str] = None,
        llm: Optional[Any] = None,
        retry_wait: Optional[Any] = None,
    ):
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.default_model

        if llm is None:
            if not self.settings.openrouter_api_key:
                raise ValueError("OPENROUTER_API_KEY must be set in environment")
            llm = self._build_llm(self.model_name)
        self.llm = llm
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=4, max=10)

        logger.info("OpenRouter oracle initialized", model=self.model_name)

    def _build_llm(self, model_name: str) -> ChatOpenAI:
        return ChatOpenAI(
            model=model_name,
            openai_api_key=self.settings.openrouter_api_key,
            openai_api_base=self.settings.openrouter_base_url,
            temperature=self.settings.oracle_temperature,
            max_tokens=self.settings.oracle_max_tokens,
            timeout=self.settings.oracle_timeout,
        )

    async def invoke(self, prompt: OraclePrompt) -> OracleResponse:
        """
        Retry transient failures with exponential backoff, then give up
        with OracleInvocationFailure.
        """
        messages = []
        if prompt.system_prompt:
            messages.append(SystemMessage(content=prompt.system_prompt))
        messages.append(HumanMessage(content=prompt.human_message))

        overrides: Dict[str, Any] = {}
        if prompt.temperature is not None:
            overrides["temperature"] = prompt.temperature
        if prompt.max_tokens:
            overrides["max_tokens"] = prompt.max_tokens
        if prompt.model:
            overrides["model"] = prompt.model

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.oracle_retry_attempts),
                wait=self.retry_wait,
                reraise=False,
            ):
                with attempt:
                    response = await self.llm.ainvoke(messages, **overrides)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"OpenRouter API call failed: {cause}", purpose=prompt.purpose)
            raise OracleInvocationFailure(f"Oracle call failed after retries: {cause}") from cause

        usage = getattr(response, "usage_metadata", None) or {}
        text = response.content if isinstance(response.content, str) else str(response.content)

        return OracleResponse(
            text=text,
            input_token_count=int(usage.get("input_tokens", 0) or 0),
            output_token_count=int(usage.get("output_tokens", 0) or 0),
            model=prompt.model or self.model_name,
        )

