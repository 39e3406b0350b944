from anthropic import AsyncAnthropic, APIError, RateLimitError
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union
import asyncio
import httpx

from buildloop.core.config import settings
from buildloop.core.exceptions import GenerationError, GenerationRateLimitError
from buildloop.core.logging_config import logger
from buildloop.schemas.session import ChatMessage

HistoryItem = Union[ChatMessage, Dict[str, str]]


@dataclass
class ToolCall:
    """One tool invocation made by the model during a generation"""
    name: str
    input: Dict[str, Any]
    is_error: bool = False


@dataclass
class GenerationResult:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Toolset(Protocol):
    """Tools the model may call; execute returns a tool_result block"""

    schemas: List[Dict[str, Any]]

    async def execute(self, name: str, tool_input: Dict[str, Any], tool_use_id: str) -> Dict[str, Any]: ...


class GenerationAdapter(Protocol):
    async def generate(
        self,
        history: Sequence[HistoryItem],
        system_prompt: str,
        tools: Optional[Toolset] = None
    ) -> GenerationResult: ...

    def stream(self, history: Sequence[HistoryItem], system_prompt: str) -> AsyncIterator[str]: ...


def to_provider_messages(history: Sequence[HistoryItem], system_prompt: str = ""):
    """
    Convert role-tagged history into (system, messages) for the Messages API.

    System entries are folded into the system prompt and consecutive
    messages with the same role are merged, since the API requires
    alternating turns.
    """
    system_parts = [system_prompt] if system_prompt else []
    messages: List[Dict[str, Any]] = []

    for item in history:
        if isinstance(item, ChatMessage):
            role, content = item.role.value, item.content
        else:
            role, content = item["role"], item["content"]

        if role == "system":
            system_parts.append(content)
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})

    return "\n\n".join(system_parts), messages


class ClaudeClient:
    """Claude API client with a tool-use loop and rate-limit retries"""

    def __init__(self, api_key: str = None, model: str = None):
        client_kwargs = {"api_key": api_key or settings.ANTHROPIC_API_KEY}

        if settings.ANTHROPIC_BASE_URL and settings.ANTHROPIC_BASE_URL.strip():
            client_kwargs["base_url"] = settings.ANTHROPIC_BASE_URL.strip()
            logger.info(f"Using custom Claude API base URL: {settings.ANTHROPIC_BASE_URL}")

        request_timeout = float(settings.CLAUDE_REQUEST_TIMEOUT)
        client_kwargs["timeout"] = httpx.Timeout(
            connect=float(settings.CLAUDE_CONNECT_TIMEOUT),
            read=request_timeout,
            write=request_timeout,
            pool=request_timeout
        )
        # Rate limits are retried here with our own backoff
        client_kwargs["max_retries"] = 0

        self.async_client = AsyncAnthropic(**client_kwargs)
        self.model = model or settings.CLAUDE_MODEL
        self.max_attempts = settings.CLAUDE_RATE_LIMIT_RETRIES
        self.backoff = settings.CLAUDE_RATE_LIMIT_BACKOFF

    def _retry_delay(self, attempt: int) -> float:
        """Linear backoff: 2s, 4s, ..."""
        return self.backoff * attempt

    async def _create(self, **params):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.async_client.messages.create(**params)
            except RateLimitError:
                if attempt >= self.max_attempts:
                    logger.error(f"Claude API rate limited, giving up after {attempt} attempts")
                    raise GenerationRateLimitError(attempt)
                delay = self._retry_delay(attempt)
                logger.warning(
                    f"Claude API rate limited (attempt {attempt}/{self.max_attempts}), retrying in {delay:.1f}s",
                    extra={"event_type": "claude_api_retry", "attempt": attempt, "retry_delay": delay}
                )
                await asyncio.sleep(delay)
            except APIError as e:
                logger.error(f"Claude API error: {type(e).__name__}: {e}")
                raise GenerationError(f"Model provider error: {e}", provider_error=type(e).__name__)

    async def generate(
        self,
        history: Sequence[HistoryItem],
        system_prompt: str,
        tools: Optional[Toolset] = None
    ) -> GenerationResult:
        """
        Run one generation, executing tool calls until the model ends its turn.

        Args:
            history: Role-tagged conversation, oldest first
            system_prompt: Instructions prepended to any system history
            tools: Optional toolset; when given the model may call it

        Returns:
            GenerationResult with all text produced across tool iterations
        """
        system, messages = to_provider_messages(history, system_prompt)
        result = GenerationResult(text="")
        text_parts: List[str] = []

        params: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": settings.CLAUDE_MAX_TOKENS,
            "temperature": settings.CLAUDE_TEMPERATURE,
            "system": system,
            "messages": messages,
        }
        if tools is not None:
            params["tools"] = tools.schemas

        max_iterations = settings.CLAUDE_MAX_TOOL_ITERATIONS if tools is not None else 1
        for iteration in range(max_iterations):
            response = await self._create(**params)
            result.input_tokens += response.usage.input_tokens
            result.output_tokens += response.usage.output_tokens
            result.stop_reason = response.stop_reason

            for block in response.content:
                if block.type == "text" and block.text:
                    text_parts.append(block.text)

            if response.stop_reason != "tool_use" or tools is None:
                break

            messages.append({"role": "assistant", "content": response.content})
            tool_results = []
            for block in response.content:
                if block.type != "tool_use":
                    continue
                tool_result = await tools.execute(block.name, block.input, block.id)
                result.tool_calls.append(ToolCall(
                    name=block.name,
                    input=dict(block.input),
                    is_error=bool(tool_result.get("is_error"))
                ))
                tool_results.append(tool_result)
            messages.append({"role": "user", "content": tool_results})
        else:
            logger.warning(f"Claude tool loop hit the iteration cap ({max_iterations})")

        result.text = "\n".join(text_parts)
        logger.log_agent_event(
            "claude",
            f"generation complete (stop={result.stop_reason}, tool_calls={len(result.tool_calls)})",
            tokens_used=result.total_tokens
        )
        return result

    async def stream(self, history: Sequence[HistoryItem], system_prompt: str) -> AsyncIterator[str]:
        """
        Stream text chunks with tools disabled.

        Rate limits are retried only until the first chunk has been yielded.
        """
        system, messages = to_provider_messages(history, system_prompt)
        for attempt in range(1, self.max_attempts + 1):
            has_yielded = False
            try:
                async with self.async_client.messages.stream(
                    model=self.model,
                    max_tokens=settings.CLAUDE_MAX_TOKENS,
                    temperature=settings.CLAUDE_TEMPERATURE,
                    system=system,
                    messages=messages
                ) as stream:
                    async for text in stream.text_stream:
                        has_yielded = True
                        yield text
                    final_message = await stream.get_final_message()

                logger.log_agent_event(
                    "claude",
                    f"stream complete (stop={final_message.stop_reason})",
                    tokens_used=final_message.usage.input_tokens + final_message.usage.output_tokens
                )
                return
            except RateLimitError:
                if has_yielded or attempt >= self.max_attempts:
                    raise GenerationRateLimitError(attempt)
                delay = self._retry_delay(attempt)
                logger.warning(f"Claude stream rate limited (attempt {attempt}/{self.max_attempts}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
            except APIError as e:
                logger.error(f"Claude stream error: {type(e).__name__}: {e}")
                raise GenerationError(f"Model provider error: {e}", provider_error=type(e).__name__)
