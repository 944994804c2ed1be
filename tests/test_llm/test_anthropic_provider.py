import json

import httpx
import pytest

import nexus.config as config_module
import nexus.llm as llm_module
from nexus.config import Config
from nexus.exceptions import LLMAPIError, MissingCredentialError
from nexus.llm import (
    AnthropicProvider,
    Message,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
    UnknownBlock,
    create_provider,
    get_provider,
    parse_content_block,
)

SSE_BODY = (
    b'event: message_start\ndata: {"type": "message_start", "message": {"usage": {"input_tokens": 9}}}\n\n'
    b'event: content_block_delta\ndata: {"type": "content_block_delta", "index": 0, '
    b'"delta": {"type": "text_delta", "text": "hello"}}\n\n'
)


def _provider(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(api_key="sk-test", base_url="https://api.example.test/", client=client)


async def _collect(provider: AnthropicProvider, **kwargs) -> bytes:
    chunks = []
    async for chunk in provider.stream(**kwargs):
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.asyncio
async def test_stream_sends_expected_request_and_yields_body():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=SSE_BODY, headers={"content-type": "text/event-stream"})

    provider = _provider(handler)
    tool = ToolDefinition(
        name="execute_remote_command",
        description="Run a command",
        parameters={"type": "object", "properties": {}},
    )

    body = await _collect(
        provider,
        messages=[Message(role="user", content="check disk")],
        model="claude-sonnet-4-5-20250929",
        system="You are Nexus.",
        tools=[tool],
        max_tokens=256,
    )
    await provider.close()

    assert body == SSE_BODY
    assert seen["url"] == "https://api.example.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "claude-sonnet-4-5-20250929"
    assert seen["body"]["max_tokens"] == 256
    assert seen["body"]["system"] == "You are Nexus."
    assert seen["body"]["messages"] == [{"role": "user", "content": "check disk"}]
    assert seen["body"]["tools"][0]["name"] == "execute_remote_command"
    assert "input_schema" in seen["body"]["tools"][0]


@pytest.mark.asyncio
async def test_request_omits_empty_system_and_tools():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"")

    provider = _provider(handler)
    await _collect(provider, messages=[Message(role="user", content="hi")], model="m")

    assert "system" not in seen["body"]
    assert "tools" not in seen["body"]
    assert seen["body"]["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_api_error_status_is_mapped_with_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401,
            json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}},
        )

    provider = _provider(handler)

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(provider, messages=[Message(role="user", content="hi")], model="m")

    assert exc_info.value.status_code == 401
    assert "invalid x-api-key" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_failure_is_mapped_to_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(provider, messages=[Message(role="user", content="hi")], model="m")

    assert exc_info.value.status_code is None
    assert "connection refused" in str(exc_info.value)


def test_create_provider_supports_claude_alias():
    provider = create_provider(provider="claude", api_key="sk-test")

    assert isinstance(provider, AnthropicProvider)
    assert provider.base_url == "https://api.anthropic.com"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError):
        create_provider(provider="ollama", api_key="x")


def test_get_provider_without_credential_is_configuration_error(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setattr(config_module, "_config", Config())
    monkeypatch.setattr(llm_module, "_provider", None)

    with pytest.raises(MissingCredentialError) as exc_info:
        get_provider()

    assert "ANTHROPIC_API_KEY" in str(exc_info.value)


def test_parse_content_block_variants():
    assert parse_content_block({"type": "text", "text": "hi"}) == TextBlock(text="hi")
    assert parse_content_block(
        {"type": "tool_use", "id": "t1", "name": "x", "input": {"a": 1}}
    ) == ToolUseBlock(id="t1", name="x", input={"a": 1})

    unknown = parse_content_block({"type": "thinking", "thinking": "..."})
    assert isinstance(unknown, UnknownBlock)
    assert unknown.type == "thinking"
    assert isinstance(parse_content_block("garbage"), UnknownBlock)


def test_message_with_blocks_serializes_for_api():
    message = Message(
        role="user",
        content=[ToolResultBlock(tool_use_id="t1", content="boom", is_error=True)],
    )

    assert message.to_api() == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "boom", "is_error": True}],
    }
