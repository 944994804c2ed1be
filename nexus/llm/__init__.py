"""Anthropic Messages API provider - direct HTTP calls via httpx."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

import httpx

from nexus.exceptions import LLMAPIError, LLMError
from nexus.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com"


@dataclass(frozen=True)
class TextBlock:
    """Plain text content block."""

    text: str
    type: str = "text"

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation issued by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool invocation, keyed to its request id."""

    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = "tool_result"

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            data["is_error"] = True
        return data


@dataclass(frozen=True)
class UnknownBlock:
    """Any block type this client does not act on (thinking, images, ...)."""

    type: str
    raw: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return dict(self.raw)


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, UnknownBlock]


def parse_content_block(data: Any) -> ContentBlock:
    """Decode a raw JSON content block into a tagged block.

    Unrecognized or malformed blocks become :class:`UnknownBlock`.
    """
    if not isinstance(data, dict):
        return UnknownBlock(type="invalid")
    block_type = str(data.get("type", ""))
    if block_type == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if block_type == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=raw_input if isinstance(raw_input, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id") or ""),
            content=str(data.get("content") or ""),
            is_error=bool(data.get("is_error", False)),
        )
    return UnknownBlock(type=block_type or "unknown", raw=dict(data))


@dataclass
class Message:
    """A message in the outgoing request."""

    role: str  # "user", "assistant"
    content: str | list[ContentBlock]

    def to_api(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_api() for block in self.content]}


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class Usage:
    """Token usage of one API call."""

    input_tokens: int = 0
    output_tokens: int = 0


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        *,
        model: str,
        system: str = "",
        tools: list[ToolDefinition] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[bytes]:
        """Start a streaming call and yield raw response body chunks."""

    async def close(self) -> None:
        return None


class AnthropicProvider(LLMProvider):
    """Direct Anthropic Messages API provider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        api_version: str = "2023-06-01",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Anthropic provider.

        Args:
            api_key: API key sent in the ``x-api-key`` header
            base_url: API base URL
            api_version: Value of the ``anthropic-version`` header
            max_tokens: Default max tokens to generate
            timeout: HTTP timeout in seconds
            client: Optional preconfigured HTTP client
        """
        self.api_key = api_key
        self.base_url = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def build_request_body(
        self,
        messages: list[Message],
        *,
        model: str,
        system: str = "",
        tools: list[ToolDefinition] | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Build the JSON body of a streaming Messages API call."""
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": [message.to_api() for message in messages],
            "stream": True,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = [tool.to_api() for tool in tools]
        return body

    async def stream(
        self,
        messages: list[Message],
        *,
        model: str,
        system: str = "",
        tools: list[ToolDefinition] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream a completion as raw server-sent-event bytes."""
        url = f"{self.base_url}/v1/messages"
        body = self.build_request_body(
            messages,
            model=model,
            system=system,
            tools=tools,
            max_tokens=max_tokens,
        )

        try:
            log.debug("Calling Anthropic", model=model, msg_count=len(messages), tools=len(tools or []))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Anthropic API error {response.status_code}: {_error_message(error_text)}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Anthropic HTTP error: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def _error_message(body: str) -> str:
    """Extract ``error.message`` from an API error body when present."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or "empty response"
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message") or body)
    return body


def create_provider(
    provider: str = "anthropic",
    api_key: str = "",
    base_url: str | None = None,
    api_version: str = "2023-06-01",
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only ``anthropic`` is supported)
        api_key: API key
        base_url: Optional base URL
        api_version: API version header value
        max_tokens: Default max tokens
        timeout: HTTP timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in ("anthropic", "claude"):
        return AnthropicProvider(
            api_key=api_key,
            base_url=base_url or ANTHROPIC_BASE_URL,
            api_version=api_version,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'anthropic'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider, creating it from config on first use.

    Raises:
        MissingCredentialError: when no API key is configured
    """
    global _provider
    if _provider is None:
        from nexus.config import get_config

        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            api_key=cfg.require_api_key(),
            base_url=cfg.model.base_url or None,
            api_version=cfg.model.api_version,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.timeout,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
