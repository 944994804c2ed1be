"""Incremental parser for the Messages API server-sent event stream.

The stream is a sequence of newline-delimited records. Only ``data:``
records carry events; everything else (``event:`` names, comments, blank
keep-alives, ``[DONE]``) is skipped. A record may arrive split across any
number of network reads, so bytes are buffered until a newline is seen
and only complete lines are decoded.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from nexus.llm import ToolUseBlock, Usage, parse_content_block
from nexus.logging import get_logger

log = get_logger(__name__)

STOP_REASON_TOOL_USE = "tool_use"


@dataclass
class PendingToolCall:
    """A tool invocation whose arguments are still streaming in."""

    index: int
    id: str
    name: str
    json_parts: list[str] = field(default_factory=list)

    def arguments(self) -> dict[str, Any]:
        raw = "".join(self.json_parts).strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            log.warning("Discarding malformed tool arguments", tool=self.name, call_id=self.id, error=str(e))
            return {}
        if not isinstance(parsed, dict):
            log.warning("Tool arguments are not an object", tool=self.name, call_id=self.id)
            return {}
        return parsed

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.id, name=self.name, input=self.arguments())


@dataclass
class StreamResult:
    """Everything one streaming call produced."""

    text: str = ""
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    error: str | None = None
    malformed_lines: int = 0

    @property
    def wants_tools(self) -> bool:
        """Whether generation stopped to wait for tool results."""
        return bool(self.tool_calls) and self.stop_reason == STOP_REASON_TOOL_USE


def _token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _block_index(event: dict[str, Any]) -> int | None:
    index = event.get("index")
    if isinstance(index, bool) or not isinstance(index, int):
        return None
    return index


class StreamEventParser:
    """Reduce a stream of events into answer text, tool calls and usage.

    One parser instance serves exactly one streaming HTTP call.
    """

    def __init__(self):
        self._pending = bytearray()
        self._text_parts: list[str] = []
        # Insertion order is call order: the order blocks were started in.
        self._tool_calls: dict[int, PendingToolCall] = {}
        self.stop_reason: str | None = None
        self.usage = Usage()
        self.error: str | None = None
        self.malformed_lines = 0

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one network chunk.

        Returns:
            Text deltas completed by this chunk, in order
        """
        self._pending.extend(chunk)
        deltas: list[str] = []
        while True:
            newline = self._pending.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._pending[:newline])
            del self._pending[: newline + 1]
            delta = self._process_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> StreamResult:
        """Flush any unterminated final line and assemble the result."""
        if self._pending:
            line = bytes(self._pending)
            self._pending.clear()
            self._process_line(line)

        return StreamResult(
            text="".join(self._text_parts),
            tool_calls=[pending.to_block() for pending in self._tool_calls.values()],
            stop_reason=self.stop_reason,
            usage=Usage(
                input_tokens=self.usage.input_tokens,
                output_tokens=self.usage.output_tokens,
            ),
            error=self.error,
            malformed_lines=self.malformed_lines,
        )

    def _process_line(self, raw: bytes) -> str | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.malformed_lines += 1
            log.debug("Skipping malformed stream line", line=payload[:200])
            return None
        if not isinstance(event, dict):
            self.malformed_lines += 1
            return None
        return self.handle_event(event)

    def handle_event(self, event: dict[str, Any]) -> str | None:
        """Apply one decoded event; returns a text delta to forward, if any."""
        event_type = event.get("type")

        if event_type == "message_start":
            message = event.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                tokens = _token_count(usage.get("input_tokens"))
                if tokens is not None:
                    self.usage.input_tokens += tokens

        elif event_type == "content_block_start":
            index = _block_index(event)
            block = parse_content_block(event.get("content_block"))
            if index is not None and isinstance(block, ToolUseBlock):
                self._tool_calls[index] = PendingToolCall(index=index, id=block.id, name=block.name)

        elif event_type == "content_block_delta":
            delta = event.get("delta")
            if not isinstance(delta, dict):
                return None
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text")
                if isinstance(text, str) and text:
                    self._text_parts.append(text)
                    return text
            elif delta_type == "input_json_delta":
                pending = self._tool_calls.get(_block_index(event))
                fragment = delta.get("partial_json")
                if pending is not None and isinstance(fragment, str):
                    pending.json_parts.append(fragment)

        elif event_type == "message_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
                self.stop_reason = delta["stop_reason"]
            usage = event.get("usage")
            if isinstance(usage, dict):
                tokens = _token_count(usage.get("output_tokens"))
                if tokens is not None:
                    self.usage.output_tokens += tokens

        elif event_type == "error":
            error = event.get("error")
            if isinstance(error, dict):
                self.error = str(error.get("message") or error.get("type") or "stream error")
            else:
                self.error = "stream error"
            log.warning("Stream reported an error", error=self.error)

        return None
