"""
LLM Client - Abstraction over LLM backends.

The conversation loop only depends on the ModelProvider protocol:

    generate(prompt, system_text=None) -> str
    chat(messages, tools=None, on_token=None) -> ChatResponse

LLMClient implements it for any OpenAI-compatible API (OpenAI, vLLM,
Ollama, OpenRouter, ...). Provider-specific translation stays here; the
loop treats every provider the same way.

Includes timeout and retry logic for resilience against API hangs, and
maps "input too large" rejections to ContextLengthExceededError so the
loop can retry with a smaller window.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from relaymind.config import LLMConfig
from relaymind.errors import ContextLengthExceededError, LLMError
from relaymind.types import Message, ToolCall

logger = logging.getLogger(__name__)

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 180.0  # LLM responses can take a while
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

# Retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0

CONTEXT_LENGTH_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "too many tokens",
    "request too large",
    "prompt is too long",
)

TokenCallback = Callable[[str], None]


class ChatResponse:
    """
    Response from a chat completion request.

    content is None when the model produced no text (tool calls only).
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None = None,
        finish_reason: str = "stop",
        raw_response: dict[str, Any] | None = None,
    ) -> None:
        self.content = content
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.raw_response = raw_response or {}

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        choice = data["choices"][0]
        message = choice["message"]

        tool_calls = [ToolCall.from_dict(tc) for tc in message.get("tool_calls") or []]

        return cls(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response includes tool calls."""
        return len(self.tool_calls) > 0


class ModelProvider(Protocol):
    """What the core needs from a model provider."""

    def generate(self, prompt: str, system_text: str | None = None) -> str: ...

    def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        on_token: TokenCallback | None = None,
    ) -> ChatResponse: ...


def is_context_length_error(status_code: int, body: str) -> bool:
    """Whether an HTTP error means the request exceeded the model's input size."""
    if status_code not in (400, 413, 422):
        return False
    lowered = body.lower()
    return any(marker in lowered for marker in CONTEXT_LENGTH_MARKERS)


class LLMClient:
    """
    Client for OpenAI-compatible LLM APIs.

    This is a synchronous client; the agent loop blocks on each model call
    and resumes when it completes or times out.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client with configuration.

        Args:
            config: LLM configuration (model, API key, etc.)
            max_retries: Maximum number of retries for timeout/network errors
            retry_delay: Seconds to wait before retrying after a timeout
            transport: Optional httpx transport (used to stub the network in tests)
        """
        self.config = config or LLMConfig.from_env()
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_READ_TIMEOUT,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def generate(self, prompt: str, system_text: str | None = None) -> str:
        """Single-shot completion without tools."""
        messages: list[Message] = []
        if system_text:
            messages.append(Message(role="system", content=system_text))
        messages.append(Message(role="user", content=prompt))
        return self.chat(messages).content or ""

    def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        on_token: TokenCallback | None = None,
    ) -> ChatResponse:
        """
        Send a chat completion request with automatic retry on timeout.

        Args:
            messages: The conversation window
            tools: Optional list of OpenAI-format tool definitions
            on_token: Optional callback receiving streamed text deltas

        Returns:
            ChatResponse with the assistant's response

        Raises:
            ContextLengthExceededError: The provider rejected the input size
            LLMError: If all retries are exhausted or a non-retryable error occurs
        """
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
        if on_token is not None:
            payload["stream"] = True

        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                time.sleep(self.retry_delay)

            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt + 1})")

            try:
                if on_token is not None:
                    return self._chat_stream(payload, on_token)
                response = self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                return ChatResponse.from_api_response(response.json())

            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e
                continue

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                body = _response_text(e.response)

                if is_context_length_error(status, body):
                    raise ContextLengthExceededError(f"HTTP {status}: {body}") from e

                if status == 429:
                    retry_after = e.response.headers.get("Retry-After")
                    wait_time = self.retry_delay
                    if retry_after:
                        try:
                            wait_time = float(retry_after)
                        except ValueError:
                            pass
                    logger.warning(f"Rate limited. Waiting {wait_time}s")
                    time.sleep(wait_time)
                    last_error = e
                    continue

                if status == 503:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                    last_error = e
                    continue

                logger.error(f"HTTP error: {status} - {body}")
                raise LLMError(f"HTTP {status}: {body}") from e

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e
                continue

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(f"Request failed after {self.max_retries + 1} attempts: {last_error}") from last_error

    def _chat_stream(self, payload: dict[str, Any], on_token: TokenCallback) -> ChatResponse:
        """Consume a server-sent-events completion, forwarding text deltas."""
        content_parts: list[str] = []
        partial_calls: dict[int, dict[str, Any]] = {}
        finish_reason = "stop"

        with self._client.stream("POST", "/chat/completions", json=payload) as response:
            if response.is_error:
                response.read()
            response.raise_for_status()

            for line in response.iter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream chunk: {data[:80]}")
                    continue
                if not chunk.get("choices"):
                    continue

                choice = chunk["choices"][0]
                delta = choice.get("delta") or {}

                text = delta.get("content")
                if text:
                    content_parts.append(text)
                    on_token(text)

                for tc in delta.get("tool_calls") or []:
                    slot = partial_calls.setdefault(tc.get("index", 0), {"id": "", "name": "", "arguments": ""})
                    if tc.get("id"):
                        slot["id"] = tc["id"]
                    function = tc.get("function") or {}
                    if function.get("name"):
                        slot["name"] += function["name"]
                    if function.get("arguments"):
                        slot["arguments"] += function["arguments"]

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]

        tool_calls = [
            ToolCall.from_dict({
                "id": slot["id"],
                "function": {"name": slot["name"], "arguments": slot["arguments"]},
            })
            for _, slot in sorted(partial_calls.items())
        ]

        return ChatResponse(
            content="".join(content_parts) or None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            raw_response={"streamed": True},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""
