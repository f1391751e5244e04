from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence, runtime_checkable

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from ..core.config import LLMSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class LLMUnavailableError(RuntimeError):
    """Raised when the chat model could not produce a reply."""


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        ...


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def _extract_content(result: Any) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content)


@dataclass
class LLMService:
    """LangChain chat model client used for intent classification and answer composition."""

    settings: LLMSettings
    _client: Any
    model: str
    default_system_prompt: str = "You are a careful shopping assistant. Answer only from the provided sources."

    @classmethod
    def from_settings(cls, settings: LLMSettings, *, client: Any | None = None) -> "LLMService":
        if client is None:
            client = ChatOllama(
                model=settings.model,
                base_url=settings.host.rstrip("/"),
                temperature=settings.temperature,
                num_predict=settings.max_output_tokens,
            )
        return cls(settings=settings, _client=client, model=settings.model)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        client = self._client
        options: dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            # Ollama names the output token cap num_predict
            options["num_predict"] = max_tokens
        if options and hasattr(client, "bind"):
            client = client.bind(**options)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_attempts),
                wait=wait_exponential(multiplier=self.settings.retry_backoff_seconds, max=10.0),
                reraise=False,
            ):
                with attempt:
                    result = await client.ainvoke(messages)
        except RetryError as exc:
            last = exc.last_attempt.exception() if exc.last_attempt else exc
            logger.error(
                "llm_generation_failed",
                error=str(last),
                model=self.model,
                attempts=self.settings.max_attempts,
            )
            raise LLMUnavailableError(f"model '{self.model}' failed after {self.settings.max_attempts} attempts") from last
        return _extract_content(result)
